from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from assistant_gateway.safety.approvals import (
    ApprovalGate,
    FileWriteApproval,
    RunSpecApproval,
    ShellExecApproval,
    WebSearchApproval,
)
from assistant_gateway.safety.leases import ApprovalLeases
from assistant_gateway.workflows.run_spec import build_research_run_spec


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def test_create_and_consume_is_single_use() -> None:
    async def _run() -> None:
        gate = ApprovalGate(ttl_sec=60)
        rec = await gate.create(session_id="s1", payload=WebSearchApproval(query="best tea"))
        assert len(rec.token) == 8
        assert rec.action == "web_search"

        assert await gate.consume(session_id="s2", token=rec.token) is None
        got = await gate.consume(session_id="s1", token=rec.token)
        assert got is not None and got.token == rec.token
        assert await gate.consume(session_id="s1", token=rec.token) is None

    asyncio.run(_run())


def test_payload_dict_is_validated_as_tagged_union() -> None:
    async def _run() -> None:
        gate = ApprovalGate()
        rec = await gate.create(
            session_id="s1", payload={"action": "file_write", "relative_path": "notes/a.md", "text": "hi"}
        )
        assert isinstance(rec.payload, FileWriteApproval)
        with pytest.raises(ValidationError):
            await gate.create(session_id="s1", payload={"action": "launch_rockets"})

    asyncio.run(_run())


def test_expired_records_are_pruned() -> None:
    async def _run() -> None:
        clock = _Clock()
        gate = ApprovalGate(ttl_sec=10, clock=clock)
        rec = await gate.create(session_id="s1", payload=ShellExecApproval(command="ls"))
        clock.advance(10)
        assert await gate.peek_latest("s1") is not None
        clock.advance(1)
        assert await gate.consume(session_id="s1", token=rec.token) is None
        assert await gate.list_pending() == []

    asyncio.run(_run())


def test_latest_operations_are_session_scoped_and_newest_first() -> None:
    async def _run() -> None:
        gate = ApprovalGate()
        first = await gate.create(session_id="s1", payload=WebSearchApproval(query="one"))
        other = await gate.create(session_id="s2", payload=WebSearchApproval(query="other"))
        second = await gate.create(session_id="s1", payload=WebSearchApproval(query="two"))

        listed = await gate.list_by_session("s1")
        assert [r.token for r in listed] == [second.token, first.token]
        assert [r.token for r in await gate.list_pending()] == [second.token, other.token, first.token]

        peeked = await gate.peek_latest("s1")
        assert peeked is not None and peeked.token == second.token
        discarded = await gate.discard_latest("s1")
        assert discarded is not None and discarded.token == second.token
        consumed = await gate.consume_latest("s1")
        assert consumed is not None and consumed.token == first.token
        assert await gate.consume_latest("s1") is None
        assert (await gate.peek_latest("s2")).token == other.token  # type: ignore[union-attr]

    asyncio.run(_run())


def test_consume_latest_if_checks_and_consumes_in_one_step() -> None:
    async def _run() -> None:
        gate = ApprovalGate()

        def _not_override(rec: object) -> bool:
            payload = getattr(rec, "payload")
            return not (isinstance(payload, ShellExecApproval) and payload.override_rule_id)

        assert await gate.consume_latest_if("s1", _not_override) == (None, False)

        write = await gate.create(session_id="s1", payload=FileWriteApproval(relative_path="notes/a.md", text="a"))
        # override 在同一轮 gather 中先入队：检查看到的就是它
        override, (seen, consumed) = await asyncio.gather(
            gate.create(session_id="s1", payload=ShellExecApproval(command="sudo reboot", override_rule_id="privilege_escalation")),
            gate.consume_latest_if("s1", _not_override),
        )
        assert seen is not None and seen.token == override.token
        assert consumed is False
        assert [r.token for r in await gate.list_by_session("s1")] == [override.token, write.token]

        assert await gate.consume(session_id="s1", token=override.token) is not None
        seen, consumed = await gate.consume_latest_if("s1", _not_override)
        assert consumed is True and seen is not None and seen.token == write.token
        assert await gate.list_by_session("s1") == []

    asyncio.run(_run())


def test_list_limits_are_clamped() -> None:
    async def _run() -> None:
        gate = ApprovalGate()
        for i in range(3):
            await gate.create(session_id="s1", payload=WebSearchApproval(query=f"q{i}"))
        assert len(await gate.list_by_session("s1", limit=0)) == 1
        assert len(await gate.list_pending(limit=1000)) == 3

    asyncio.run(_run())


def test_run_spec_payload_survives_snapshot_reload(tmp_path: Path) -> None:
    path = tmp_path / "approvals.json"
    spec = build_research_run_spec(run_id="r1", query="compare note apps", session_id="s1")

    async def _create() -> str:
        gate = ApprovalGate(state_path=path)
        rec = await gate.create(
            session_id="s1",
            payload=RunSpecApproval(run_spec_run_id="r1", run_spec=spec, pending_step_ids=["write", "send"]),
        )
        await gate.flush()
        return rec.token

    token = asyncio.run(_create())
    assert path.exists()

    async def _reload() -> None:
        gate = ApprovalGate(state_path=path)
        rec = await gate.consume(session_id="s1", token=token)
        assert rec is not None
        assert isinstance(rec.payload, RunSpecApproval)
        assert rec.payload.run_spec.steps[2].id == "write"
        assert rec.payload.pending_step_ids == ["write", "send"]

    asyncio.run(_reload())


def test_leases_grant_has_revoke_and_expire() -> None:
    clock = _Clock()
    leases = ApprovalLeases(ttl_sec=30, clock=clock)
    leases.grant("auth-1", "file_write")
    leases.grant("auth-1", "shell_exec")
    assert leases.has("auth-1", "file_write") is True
    assert leases.has("auth-2", "file_write") is False

    assert leases.revoke("auth-1", "shell_exec") == 1
    assert leases.has("auth-1", "shell_exec") is False

    clock.advance(31)
    assert leases.has("auth-1", "file_write") is False
    assert leases.revoke("auth-1") == 0
