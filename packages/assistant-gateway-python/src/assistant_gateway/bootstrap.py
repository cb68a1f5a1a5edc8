"""
Bootstrap（配置发现 + 依赖装配）。

设计目标：
- 编排核心本身无隐式 I/O：`TurnPipeline` 只使用注入的 `GatewayServices`；
- 本模块提供可选入口：发现 overlay、按配置创建各 store（可选快照目录）。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, Optional

from assistant_gateway.config.loader import GatewayConfig, load_config
from assistant_gateway.orchestrator.services import GatewayServices
from assistant_gateway.orchestrator.state import OrchestratorState
from assistant_gateway.safety.approvals import ApprovalGate
from assistant_gateway.safety.leases import ApprovalLeases
from assistant_gateway.state.job_queue import InMemoryJobQueue
from assistant_gateway.state.paged_responses import PagedResponseStore
from assistant_gateway.state.run_ledger import RunLedger
from assistant_gateway.state.run_spec_store import RunSpecStore

CONFIG_PATHS_ENV = "ASSISTANT_GATEWAY_CONFIG_PATHS"


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（保序，去空项）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/gateway.yaml`（存在时）
    2) `ASSISTANT_GATEWAY_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []
    default_overlay = ws / "config" / "gateway.yaml"
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = str((env if env is not None else os.environ).get(CONFIG_PATHS_ENV) or "")
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        overlays.append(pp.resolve() if pp.is_absolute() else (ws / pp).resolve())

    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p not in seen:
            seen.add(p)
            uniq.append(p)
    return uniq


def load_gateway_config(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    return load_config(discover_overlay_paths(workspace_root=workspace_root, env=env))


def build_services(config: GatewayConfig, **collaborators: Any) -> GatewayServices:
    """
    按配置创建内置 store 并装配 `GatewayServices`。

    参数：
    - config：网关配置；`state.dir` 非空时各 store 使用该目录下的 JSON 快照
    - collaborators：透传给 `GatewayServices` 的外部协作方（planner / generation / notifications ...）
    """

    state_dir = Path(config.state.dir).resolve() if config.state.dir else None

    def _path(name: str) -> Optional[Path]:
        return state_dir / name if state_dir is not None else None

    return GatewayServices(
        config=config,
        jobs=collaborators.pop("jobs", None) or InMemoryJobQueue(state_path=_path("jobs.json")),
        approvals=ApprovalGate(ttl_sec=config.approvals.ttl_sec, state_path=_path("approvals.json")),
        run_specs=RunSpecStore(state_path=_path("run_specs.json")),
        state=OrchestratorState(leases=ApprovalLeases(ttl_sec=config.approvals.lease_ttl_sec)),
        ledger=RunLedger(
            state_path=_path("runs.json"),
            max_runs=config.ledger.max_runs,
            retention_days=config.ledger.retention_days,
        ),
        paged_responses=PagedResponseStore(state_path=_path("paged_responses.json")),
        **collaborators,
    )
