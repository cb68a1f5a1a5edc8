from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from assistant_gateway.bootstrap import build_services
from assistant_gateway.config.loader import load_config_dicts
from assistant_gateway.core.collaborators import TaskItem
from assistant_gateway.core.contracts import Notification, PlannerDecision
from assistant_gateway.core.errors import InboundValidationError
from assistant_gateway.orchestrator import PhaseEvent, TurnPipeline
from assistant_gateway.orchestrator.pipeline import GENERIC_ERROR_REPLY
from assistant_gateway.orchestrator.routing import NO_MODEL_REPLY, split_pages


class _FakeGeneration:
    def __init__(self, text: Optional[str] = "Hello from the model.") -> None:
        self.text = text
        self.prompts: List[str] = []

    async def generate_text(self, session_id: str, prompt: str, *, auth_preference: str = "auto") -> Optional[str]:
        self.prompts.append(prompt)
        return self.text


class _BlockingGeneration:
    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def generate_text(self, session_id: str, prompt: str, *, auth_preference: str = "auto") -> Optional[str]:
        self.entered.set()
        await self.release.wait()
        return "finally done"


class _FakeNotifications:
    def __init__(self) -> None:
        self.items: List[Notification] = []

    async def enqueue(self, notification: Notification) -> None:
        self.items.append(notification)


class _FakeConversations:
    def __init__(self) -> None:
        self.rows: List[Tuple[str, str, str, Dict[str, Any]]] = []

    async def append(self, session_id: str, direction: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.rows.append((session_id, direction, text, dict(metadata or {})))


class _FakeTasks:
    def __init__(self) -> None:
        self.items: List[TaskItem] = []

    async def add(self, session_id: str, text: str) -> TaskItem:
        item = TaskItem(id=f"t{len(self.items) + 1}", text=text)
        self.items.append(item)
        return item

    async def list(self, session_id: str) -> List[TaskItem]:
        return list(self.items)

    async def done(self, session_id: str, task_id: str) -> Optional[TaskItem]:
        for idx, item in enumerate(self.items):
            if item.id == task_id:
                self.items[idx] = TaskItem(id=item.id, text=item.text, done=True)
                return self.items[idx]
        return None


class _FailingPlanner:
    async def plan(self, session_id: str, message: str, *, auth_preference: str = "auto", has_active_job: bool = False) -> PlannerDecision:
        raise RuntimeError("planner offline")


class _CommandPlanner:
    async def plan(self, session_id: str, message: str, *, auth_preference: str = "auto", has_active_job: bool = False) -> PlannerDecision:
        return PlannerDecision(intent="command", confidence=0.9)


class _BrokenQueue:
    async def create_job(self, job: Any) -> Any:
        raise RuntimeError("queue unavailable")

    async def get_job(self, job_id: str) -> Any:
        return None


def _pipeline(tmp_path: Path, *, policy: Optional[Dict[str, Any]] = None, **collaborators: Any) -> TurnPipeline:
    cfg = load_config_dicts([{"workspace": {"dir": str(tmp_path)}, "policy": policy or {}}])
    return TurnPipeline(build_services(cfg, **collaborators))


def _msg(text: str, session_id: str = "chat-1", **metadata: Any) -> Dict[str, Any]:
    return {"sessionId": session_id, "text": text, "metadata": metadata}


def test_chat_turn_runs_all_phases_and_records_run(tmp_path: Path) -> None:
    async def _run() -> None:
        phases: List[str] = []

        def _hook(ev: PhaseEvent) -> None:
            if ev.kind == "phase":
                phases.append(ev.phase or "")

        conversations = _FakeConversations()
        pipeline = _pipeline(tmp_path, generation=_FakeGeneration(), conversations=conversations, hooks=[_hook])
        result = await pipeline.handle_inbound(_msg("tell me a short joke about cats"))

        assert (result.mode, result.response) == ("chat", "Hello from the model.")
        assert result.acquired is True and result.run_id
        assert phases == ["normalize", "session", "directives", "plan", "policy", "route", "persist", "dispatch"]

        ledger = pipeline.services.ledger
        assert ledger is not None
        run = await ledger.get_run(result.run_id)
        assert run is not None and run.status == "completed"
        assert [e.phase for e in run.events if e.type == "phase"] == [
            "session", "directives", "plan", "policy", "route", "persist", "dispatch"
        ]
        assert await ledger.active_run_id("chat-1") is None

        assert [(row[1], row[2]) for row in conversations.rows] == [
            ("inbound", "tell me a short joke about cats"),
            ("outbound", "Hello from the model."),
        ]
        assert conversations.rows[0][3]["runId"] == result.run_id
        assert pipeline.services.state.counters.turns == 1

    asyncio.run(_run())


def test_invalid_inbound_raises_without_side_effects(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, generation=_FakeGeneration())
        with pytest.raises(InboundValidationError):
            await pipeline.handle_inbound({"sessionId": "   ", "text": "hi"})
        ledger = pipeline.services.ledger
        assert ledger is not None and await ledger.list_runs() == []
        assert pipeline.services.state.counters.turns == 0

    asyncio.run(_run())


def test_no_generation_replies_with_fallback(tmp_path: Path) -> None:
    result = asyncio.run(_pipeline(tmp_path).handle_inbound(_msg("tell me a short joke about cats")))
    assert result.response == NO_MODEL_REPLY


def test_busy_session_steer_and_collect(tmp_path: Path) -> None:
    async def _run() -> None:
        gen = _BlockingGeneration()
        pipeline = _pipeline(tmp_path, generation=gen)

        first = asyncio.create_task(pipeline.handle_inbound(_msg("tell me a short joke about cats")))
        await gen.entered.wait()

        busy = await pipeline.handle_inbound(_msg("and another thing to consider"))
        assert busy.mode == "busy" and busy.acquired is False
        assert busy.active_run_id and busy.active_run_id != busy.run_id
        assert busy.response == (
            f"Session is busy with run {busy.active_run_id}. "
            "Wait for it to finish, or send with queueMode collect to queue this message."
        )

        queued = await pipeline.handle_inbound(_msg("and another thing to consider", queueMode="collect"))
        assert queued.mode == "async-job" and queued.job_id
        job = await pipeline.services.jobs.get_job(queued.job_id)
        assert job is not None and job.type == "chat_turn"
        assert job.payload["text"] == "and another thing to consider"
        assert job.payload["queueMode"] == "collect"
        assert job.payload["blockedRunId"] == queued.run_id

        ledger = pipeline.services.ledger
        assert ledger is not None
        blocked = await ledger.get_run(busy.run_id or "")
        assert blocked is not None and blocked.status == "blocked"

        gen.release.set()
        done = await first
        assert done.response == "finally done" and done.acquired is True

    asyncio.run(_run())


def test_idempotent_replay_returns_duplicate(tmp_path: Path) -> None:
    async def _run() -> None:
        gen = _FakeGeneration()
        pipeline = _pipeline(tmp_path, generation=gen)
        first = await pipeline.handle_inbound(_msg("tell me a short joke about cats", idempotencyKey="msg-1"))
        again = await pipeline.handle_inbound(_msg("tell me a short joke about cats", idempotencyKey="msg-1"))

        assert again.mode == "duplicate" and again.reused is True
        assert again.run_id == first.run_id and again.acquired is False
        assert again.response == f"Already handled this message in run {first.run_id}."
        assert len(gen.prompts) == 1

    asyncio.run(_run())


def test_commands_without_collaborators_and_with_tasks(tmp_path: Path) -> None:
    async def _run() -> None:
        bare = _pipeline(tmp_path)
        assert (await bare.handle_inbound(_msg("/task list"))).response == "Tasks are not configured."
        unknown = await bare.handle_inbound(_msg("/frobnicate now"))
        assert unknown.response == "Unknown command: /frobnicate. Try /policy or /task list."

        pipeline = _pipeline(tmp_path, tasks=_FakeTasks())
        added = await pipeline.handle_inbound(_msg("/task add buy coffee"))
        assert added.response == "Added task t1: buy coffee"
        await pipeline.handle_inbound(_msg("/task done t1"))
        listed = await pipeline.handle_inbound(_msg("/task list"))
        assert listed.mode == "command" and listed.response == "- [x] t1: buy coffee"

        policy = await pipeline.handle_inbound(_msg("/policy"))
        assert policy.response is not None and policy.response.startswith("Approval mode: balanced")

    asyncio.run(_run())


def test_web_search_approval_then_token_approve(tmp_path: Path) -> None:
    async def _run() -> None:
        notes = _FakeNotifications()
        pipeline = _pipeline(tmp_path, policy={"web_search_require_approval": True}, notifications=notes)

        asked = await pipeline.handle_inbound(_msg("/web rust release notes"))
        assert asked.mode == "approval" and asked.approval_token
        token = asked.approval_token
        assert asked.response == (
            f"Approval required for web search. Reply `approve {token}` (or yes) to continue, or `reject {token}` to cancel."
        )

        other_session = await pipeline.handle_inbound(_msg(f"approve {token}", session_id="chat-2"))
        assert other_session.response == f"No pending approval for token {token}."

        approved = await pipeline.handle_inbound(_msg(f"approve {token}"))
        assert approved.mode == "async-job" and approved.job_id
        assert approved.response == f"Approved action executed: web_search (queued job {approved.job_id})."
        job = await pipeline.services.jobs.get_job(approved.job_id)
        assert job is not None and job.payload["query"] == "rust release notes"
        assert notes.items[-1].text == f"Job {approved.job_id} queued."

        replay = await pipeline.handle_inbound(_msg(f"approve {token}"))
        assert replay.response == f"No pending approval for token {token}."

        status = await pipeline.handle_inbound(_msg("status"))
        assert status.response == f"Latest job {approved.job_id} is queued."

    asyncio.run(_run())


def test_file_write_is_notes_only_and_session_lease_skips_reapproval(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, policy={"file_write_approval_mode": "session"})

        outside = await pipeline.handle_inbound(_msg("/write ../escape.md nope"))
        assert outside.response == "That path is outside the workspace."
        not_notes = await pipeline.handle_inbound(_msg("/write todo.md nope"))
        assert not_notes.response == "File writes are restricted to 'notes/'."

        asked = await pipeline.handle_inbound(_msg("/write notes/today.md first line"))
        assert asked.mode == "approval"
        assert asked.response is not None and asked.response.startswith("Approval required for file write to workspace/notes/today.md.")

        wrote = await pipeline.handle_inbound(_msg("yes"))
        assert wrote.response == "Approved action executed: file_write (wrote workspace/notes/today.md)."

        direct = await pipeline.handle_inbound(_msg("/write notes/today.md second line"))
        assert direct.response == "Wrote workspace/notes/today.md."
        assert (tmp_path / "notes" / "today.md").read_text(encoding="utf-8") == "first line\nsecond line\n"

        revoked = await pipeline.handle_inbound(_msg("/approval revoke"))
        assert revoked.response == "Revoked 1 approval lease(s)."
        again = await pipeline.handle_inbound(_msg("/write notes/today.md third line"))
        assert again.mode == "approval"

    asyncio.run(_run())


def test_attachment_request_creates_run_spec_approval(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path)
        services = pipeline.services
        asked = await pipeline.handle_inbound(_msg("Research the best coffee grinders under $200 and send me a txt file"))
        assert asked.mode == "approval" and asked.approval_token
        assert asked.response is not None and asked.response.startswith(
            'Approval required to research "Research the best coffee grinders under $200 and send me a txt file"'
        )

        pending = await services.approvals.list_by_session("chat-1")
        assert len(pending) == 1 and pending[0].action == "run_spec"
        run_spec_run_id = pending[0].payload.run_spec_run_id  # type: ignore[union-attr]
        waiting = await services.run_specs.get(run_spec_run_id)
        assert waiting is not None and waiting.status == "awaiting_approval"
        assert waiting.spec.steps[3].input["sessionId"] == "chat-1"
        assert [e.type for e in waiting.events] == ["started", "approval_requested"]

        approved = await pipeline.handle_inbound(_msg("go ahead"))
        assert approved.mode == "async-job" and approved.job_id
        job = await services.jobs.get_job(approved.job_id)
        assert job is not None and job.type == "run_spec" and job.payload["runSpecRunId"] == run_spec_run_id

        queued = await services.run_specs.get(run_spec_run_id)
        assert queued is not None
        assert queued.status == "queued" and queued.job_id == approved.job_id
        assert queued.approved_step_ids == ["write", "send"]

    asyncio.run(_run())


def test_attachment_rejection_cancels_run_spec(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path)
        services = pipeline.services
        asked = await pipeline.handle_inbound(_msg("Research the best coffee grinders under $200 and send me a txt file"))
        pending = await services.approvals.list_by_session("chat-1")
        run_spec_run_id = pending[0].payload.run_spec_run_id  # type: ignore[union-attr]

        rejected = await pipeline.handle_inbound(_msg("no"))
        assert rejected.response == f"Rejected run_spec request {asked.approval_token}."
        record = await services.run_specs.get(run_spec_run_id)
        assert record is not None and record.status == "cancelled"
        assert await services.approvals.list_by_session("chat-1") == []

    asyncio.run(_run())


def test_attachment_with_relaxed_policy_queues_directly(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, policy={"approval_mode": "relaxed", "file_write_require_approval": False})
        result = await pipeline.handle_inbound(_msg("Research the best coffee grinders under $200 and send me a txt file"))
        assert result.mode == "async-job" and result.job_id
        assert result.response == f"I'm researching that and will send the file when it's ready (job {result.job_id})."

    asyncio.run(_run())


def test_shell_override_needs_explicit_token(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, policy={"shell_enabled": True})

        plain = await pipeline.handle_inbound(_msg("/shell ls -la"))
        assert plain.mode == "async-job"

        asked = await pipeline.handle_inbound(_msg("/shell sudo reboot"))
        token = asked.approval_token
        assert asked.mode == "approval" and token
        assert asked.response is not None and asked.response.startswith(
            "Command blocked by sandbox rule 'privilege_escalation'."
        )

        implicit = await pipeline.handle_inbound(_msg("yes"))
        assert implicit.mode == "approval"
        assert implicit.response == (
            f"This request overrides sandbox rule 'privilege_escalation'. Reply `approve {token}` to confirm it explicitly."
        )

        approved = await pipeline.handle_inbound(_msg(f"approve {token}"))
        assert approved.mode == "async-job" and approved.job_id
        job = await pipeline.services.jobs.get_job(approved.job_id)
        assert job is not None and job.payload["sandboxOverride"] == "privilege_escalation"

    asyncio.run(_run())


def test_long_replies_are_paged(tmp_path: Path) -> None:
    async def _run() -> None:
        long_text = "\n\n".join(ch * 1000 for ch in "ABC")
        pipeline = _pipeline(tmp_path, generation=_FakeGeneration(long_text))

        first = await pipeline.handle_inbound(_msg("tell me a long story about dragons"))
        assert first.response == "A" * 1000 + "\n\nReply #next for more (2 remaining)."
        second = await pipeline.handle_inbound(_msg("#next"))
        assert second.response == "B" * 1000 + "\n\nReply #next for more (1 remaining)."
        third = await pipeline.handle_inbound(_msg("more"))
        assert third.response == "C" * 1000
        empty = await pipeline.handle_inbound(_msg("#next"))
        assert empty.response == "No more pages."

    asyncio.run(_run())


def test_split_pages_hard_cuts_oversized_blocks() -> None:
    pages = split_pages("x" * 3200, limit=1500)
    assert [len(p) for p in pages] == [1500, 1500, 200]
    assert split_pages("short\n\nparas", limit=1500) == ["short\n\nparas"]


def test_planner_failure_falls_back_and_hook_failures_are_counted(tmp_path: Path) -> None:
    async def _run() -> None:
        def _bad_hook(ev: PhaseEvent) -> None:
            raise RuntimeError("hook down")

        pipeline = _pipeline(tmp_path, planner=_FailingPlanner(), generation=_FakeGeneration(), hooks=[_bad_hook])
        result = await pipeline.handle_inbound(_msg("tell me a short joke about cats"))
        counters = pipeline.services.state.counters
        assert result.response == "Hello from the model."
        assert counters.planner_failures == 1
        assert counters.hook_failures == 8

    asyncio.run(_run())


def test_collaborator_exception_ends_turn_with_generic_reply(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, jobs=_BrokenQueue())
        result = await pipeline.handle_inbound({"sessionId": "chat-1", "text": "please summarize my week", "requestJob": True})
        assert result.response == GENERIC_ERROR_REPLY
        ledger = pipeline.services.ledger
        assert ledger is not None
        run = await ledger.get_run(result.run_id or "")
        assert run is not None and run.status == "failed"
        assert run.failure_reason == "turn_error:RuntimeError"

    asyncio.run(_run())


def test_plain_yes_never_consumes_a_newer_shell_override(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, policy={"file_write_approval_mode": "session"})
        services = pipeline.services

        asked = await pipeline.handle_inbound(_msg("/write notes/today.md first line"))
        assert asked.mode == "approval" and asked.approval_token
        # 另一轮在 yes 到达之前创建了 override 审批
        override = await services.approvals.create(
            session_id="chat-1",
            payload={"action": "shell_exec", "command": "sudo reboot", "override_rule_id": "privilege_escalation"},
        )

        implicit = await pipeline.handle_inbound(_msg("yes"))
        assert implicit.mode == "approval" and implicit.approval_token == override.token
        assert implicit.response == (
            f"This request overrides sandbox rule 'privilege_escalation'. Reply `approve {override.token}` to confirm it explicitly."
        )
        assert [j.type for j in await services.jobs.list_jobs()] == []
        assert not (tmp_path / "notes" / "today.md").exists()
        pending = await services.approvals.list_by_session("chat-1")
        assert [r.token for r in pending] == [override.token, asked.approval_token]

    asyncio.run(_run())


def test_command_intent_on_blank_text_gets_generic_unknown_command(tmp_path: Path) -> None:
    async def _run() -> None:
        pipeline = _pipeline(tmp_path, planner=_CommandPlanner())
        blank = await pipeline.handle_inbound(_msg("   "))
        assert (blank.mode, blank.response) == ("command", "Unknown command. Try /policy or /task list.")

        named = await pipeline.handle_inbound(_msg("frobnicate now"))
        assert named.response == "Unknown command: frobnicate. Try /policy or /task list."

    asyncio.run(_run())
