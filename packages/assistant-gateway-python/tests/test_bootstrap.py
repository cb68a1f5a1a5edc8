from __future__ import annotations

import asyncio
from pathlib import Path

from assistant_gateway.bootstrap import (
    CONFIG_PATHS_ENV,
    build_services,
    discover_overlay_paths,
    load_gateway_config,
)
from assistant_gateway.config.loader import load_config_dicts
from assistant_gateway.core.contracts import JobCreate
from assistant_gateway.state.job_queue import InMemoryJobQueue


def test_discover_overlays_default_then_env(tmp_path: Path) -> None:
    (tmp_path / "config").mkdir()
    default = tmp_path / "config" / "gateway.yaml"
    default.write_text("policy:\n  approval_mode: strict\n", encoding="utf-8")
    extra = tmp_path / "extra.yaml"
    extra.write_text("policy:\n  shell_enabled: true\n", encoding="utf-8")

    env = {CONFIG_PATHS_ENV: f" extra.yaml ; config/gateway.yaml,{extra}"}
    paths = discover_overlay_paths(workspace_root=tmp_path, env=env)
    assert paths == [default.resolve(), extra.resolve()]

    cfg = load_gateway_config(workspace_root=tmp_path, env=env)
    assert cfg.policy.approval_mode == "strict"
    assert cfg.policy.shell_enabled is True


def test_discover_without_overlays(tmp_path: Path) -> None:
    assert discover_overlay_paths(workspace_root=tmp_path, env={}) == []


def test_build_services_persists_under_state_dir(tmp_path: Path) -> None:
    cfg = load_config_dicts([{"state": {"dir": str(tmp_path / "state")}, "approvals": {"ttl_sec": 30, "lease_ttl_sec": 120}}])
    services = build_services(cfg)
    assert services.ledger is not None and services.paged_responses is not None
    assert services.state.leases.ttl_sec == 120

    async def _run() -> None:
        await services.jobs.create_job(JobCreate(type="chat_turn", payload={"text": "hi"}))
        await services.jobs.flush()  # type: ignore[attr-defined]

    asyncio.run(_run())
    assert (tmp_path / "state" / "jobs.json").exists()


def test_build_services_accepts_injected_queue() -> None:
    queue = InMemoryJobQueue()
    services = build_services(load_config_dicts([]), jobs=queue)
    assert services.jobs is queue
