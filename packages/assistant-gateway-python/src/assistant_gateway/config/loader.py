"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；内置默认配置总是作为第一层。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from assistant_gateway.config.defaults import load_default_config_dict

ApprovalMode = Literal["strict", "balanced", "relaxed"]
FileWriteApprovalMode = Literal["per_action", "session", "always"]
QueueMode = Literal["steer", "collect", "followup"]
SearchProviderName = Literal["searxng", "openai", "brave", "perplexity", "brightdata", "auto"]


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ToolPolicyConfig(BaseModel):
    """
    能力策略输入（tool policy engine 的唯一配置来源）。

    说明：
    - `approval_mode` 决定基础审批要求；`file_write_approval_mode` 只影响 file-write 的审批生命周期；
    - `file_write_approval_scope` 决定 lease key 取 auth 身份还是渠道 session id。
    """

    model_config = ConfigDict(extra="forbid")

    approval_mode: ApprovalMode = "balanced"
    approval_default: bool = True
    web_search_enabled: bool = True
    web_search_require_approval: bool = False
    web_search_provider: SearchProviderName = "auto"
    file_write_enabled: bool = True
    file_write_require_approval: bool = True
    file_write_notes_only: bool = True
    file_write_notes_dir: str = "notes"
    file_write_approval_mode: FileWriteApprovalMode = "per_action"
    file_write_approval_scope: Literal["auth", "channel"] = "auth"
    shell_enabled: bool = False
    wasm_enabled: bool = False


class ApprovalsConfig(BaseModel):
    """审批 token 与 lease 的有效期。"""

    model_config = ConfigDict(extra="forbid")

    ttl_sec: int = Field(default=600, ge=1)
    lease_ttl_sec: Optional[int] = Field(default=None, ge=1)


class LedgerConfig(BaseModel):
    """Run ledger 的保留策略。"""

    model_config = ConfigDict(extra="forbid")

    max_runs: int = Field(default=6000, ge=1)
    retention_days: int = Field(default=21, ge=1)


class WorkspaceConfig(BaseModel):
    """workspace 根目录与生成文件子目录。"""

    model_config = ConfigDict(extra="forbid")

    dir: str = "./workspace"
    generated_subdir: str = "notes/generated"


class PipelineConfig(BaseModel):
    """Turn pipeline 行为开关。"""

    model_config = ConfigDict(extra="forbid")

    default_queue_mode: QueueMode = "steer"
    planner_min_confidence: float = Field(default=0.65, ge=0.0, le=1.0)
    paging_enabled: bool = True


class WorkerConfig(BaseModel):
    """
    Worker 轮询与外部调用预算。

    说明：
    - `search_timeout_sec` 是单次 search 调用的超时；
    - `time_budget_sec` 是同一 job 内所有外部调用（含重试）共享的总预算。
    """

    model_config = ConfigDict(extra="forbid")

    worker_id: str = "worker-1"
    poll_interval_ms: int = Field(default=500, ge=10)
    search_timeout_sec: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=1, ge=0, le=5)
    time_budget_sec: float = Field(default=60.0, gt=0)


class StateConfig(BaseModel):
    """持久化快照目录；为空表示仅内存。"""

    model_config = ConfigDict(extra="forbid")

    dir: Optional[str] = None


class GatewayConfig(BaseModel):
    """网关编排核心的完整配置。"""

    model_config = ConfigDict(extra="forbid")

    policy: ToolPolicyConfig = Field(default_factory=ToolPolicyConfig)
    approvals: ApprovalsConfig = Field(default_factory=ApprovalsConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    state: StateConfig = Field(default_factory=StateConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并返回 dict（空文件视为 `{}`）。"""

    text = path.read_text(encoding="utf-8")
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return obj


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> GatewayConfig:
    """
    在内置默认配置之上合并多个 dict，返回校验后的 `GatewayConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = load_default_config_dict()
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return GatewayConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> GatewayConfig:
    """
    加载并合并多个配置文件，返回校验后的 `GatewayConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
