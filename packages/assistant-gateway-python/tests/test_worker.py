from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from assistant_gateway.config.loader import GatewayConfig, load_config_dicts
from assistant_gateway.core.collaborators import ShellOutcome
from assistant_gateway.core.contracts import JobCreate, Notification, SearchResult
from assistant_gateway.core.errors import CallBudgetExceededError
from assistant_gateway.state.job_queue import InMemoryJobQueue
from assistant_gateway.state.run_spec_store import RunSpecStore
from assistant_gateway.worker import BudgetedCall, JobProcessor, Worker, run_worker_once
from assistant_gateway.workflows.run_spec import build_research_run_spec


class _FakeSearch:
    def __init__(self, result: Optional[SearchResult]) -> None:
        self.result = result
        self.calls: List[Tuple[str, str, str]] = []

    async def search(self, query: str, *, provider: str, auth_session_id: str, auth_preference: str = "auto") -> Optional[SearchResult]:
        self.calls.append((query, provider, auth_session_id))
        return self.result


class _FakeGeneration:
    def __init__(self, text: Optional[str] = "Sure thing.") -> None:
        self.text = text
        self.before_reply = None

    async def generate_text(self, session_id: str, prompt: str, *, auth_preference: str = "auto") -> Optional[str]:
        if self.before_reply is not None:
            await self.before_reply()
        return self.text


class _FakeNotifications:
    def __init__(self) -> None:
        self.items: List[Notification] = []

    async def enqueue(self, notification: Notification) -> None:
        self.items.append(notification)


class _FakeShell:
    def __init__(self, outcome: ShellOutcome) -> None:
        self.outcome = outcome
        self.calls: List[Tuple[str, str]] = []

    async def run(self, command: str, *, cwd: str) -> ShellOutcome:
        self.calls.append((command, cwd))
        return self.outcome


def _config(tmp_path: Path, **policy: Any) -> GatewayConfig:
    return load_config_dicts([{"workspace": {"dir": str(tmp_path)}, "policy": policy}])


def _processor(cfg: GatewayConfig, queue: InMemoryJobQueue, **kwargs: Any) -> JobProcessor:
    return JobProcessor(config=cfg, jobs=queue, run_specs=kwargs.pop("run_specs", RunSpecStore()), **kwargs)


# ---- BudgetedCall ----


def test_budgeted_call_retries_then_succeeds() -> None:
    attempts: List[int] = []

    async def _flaky() -> str:
        attempts.append(1)
        if len(attempts) < 2:
            raise RuntimeError("transient")
        return "ok"

    budget = BudgetedCall(timeout_sec=1, max_retries=1, time_budget_sec=5)
    assert asyncio.run(budget.run("search", _flaky)) == "ok"
    assert len(attempts) == 2


def test_budgeted_call_raises_last_error_after_retries() -> None:
    async def _always_fails() -> str:
        raise RuntimeError("down")

    budget = BudgetedCall(timeout_sec=1, max_retries=2, time_budget_sec=5)
    with pytest.raises(RuntimeError, match="down"):
        asyncio.run(budget.run("search", _always_fails))


def test_budgeted_call_stops_when_shared_budget_is_spent() -> None:
    now = [0.0]

    async def _slow_failure() -> str:
        now[0] += 10
        raise RuntimeError("slow")

    budget = BudgetedCall(timeout_sec=1, max_retries=3, time_budget_sec=5, clock=lambda: now[0])
    with pytest.raises(CallBudgetExceededError) as ei:
        asyncio.run(budget.run("search", _slow_failure))
    assert ei.value.code == "call_budget_exceeded"
    assert ei.value.retryable is True
    assert budget.remaining_sec == 0


def test_budgeted_call_times_out_single_attempt() -> None:
    async def _hang() -> str:
        await asyncio.sleep(5)
        return "late"

    budget = BudgetedCall(timeout_sec=0.01, max_retries=0, time_budget_sec=5)
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(budget.run("search", _hang))


# ---- JobProcessor + run_worker_once ----


def test_web_search_job_succeeds_and_announces_result(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        search = _FakeSearch(SearchResult(provider="brave", text="  Top results  "))
        notes = _FakeNotifications()
        processor = _processor(_config(tmp_path), queue, search=search, notifications=notes)
        job = await queue.create_job(
            JobCreate(type="web_search", payload={"sessionId": "chat-1", "authSessionId": "user-1", "query": "rust 2.0", "provider": "BRAVE"})
        )

        done = await run_worker_once(queue, processor, "w1")
        assert done is not None and done.id == job.id and done.status == "succeeded"
        assert done.result == {"summary": "web_search_completed", "responseText": "Top results", "provider": "brave"}
        assert done.progress is not None and done.progress.step == "web.search"
        assert search.calls == [("rust 2.0", "brave", "user-1")]
        assert [(n.session_id, n.text, n.status) for n in notes.items] == [("chat-1", "Top results", "succeeded")]

        assert await run_worker_once(queue, processor, "w1") is None

    asyncio.run(_run())


def test_web_search_empty_result_fails_job(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        notes = _FakeNotifications()
        processor = _processor(_config(tmp_path), queue, search=_FakeSearch(None), notifications=notes)
        job = await queue.create_job(JobCreate(type="web_search", payload={"sessionId": "chat-1", "query": "x"}))

        done = await run_worker_once(queue, processor, "w1")
        assert done is not None and done.status == "failed" and done.error is not None
        assert done.error.code == "web_search_empty"
        assert notes.items[-1].text == f"Job {job.id} failed: No web search results were returned."

    asyncio.run(_run())


def test_chat_turn_results(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        gen = _FakeGeneration("  Here is the follow-up.  ")
        processor = _processor(_config(tmp_path), queue, generation=gen)

        await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": "and then?"}))
        done = await run_worker_once(queue, processor, "w1")
        assert done is not None and done.result == {"summary": "chat_turn_completed", "responseText": "Here is the follow-up."}

        await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1"}))
        missing = await run_worker_once(queue, processor, "w1")
        assert missing is not None and missing.status == "succeeded"
        assert missing.result is not None and missing.result["summary"] == "chat_turn_missing_input"

        gen.text = "   "
        await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": "hello?"}))
        empty = await run_worker_once(queue, processor, "w1")
        assert empty is not None and empty.result is not None
        assert empty.result["responseText"] == "No model response is available for this follow-up turn."

    asyncio.run(_run())


def test_cancel_during_processing_keeps_result_and_marks_cancelled(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        gen = _FakeGeneration("partial answer")
        notes = _FakeNotifications()
        processor = _processor(_config(tmp_path), queue, generation=gen, notifications=notes)
        job = await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": "long task"}))

        async def _cancel() -> None:
            got = await queue.cancel_job(job.id)
            assert got is not None and got.status == "cancelling"

        gen.before_reply = _cancel
        done = await run_worker_once(queue, processor, "w1")
        assert done is not None and done.status == "cancelled"
        assert done.result is not None and done.result["responseText"] == "partial answer"
        assert notes.items[-1].text == f"Job {job.id} is cancelled."

    asyncio.run(_run())


def test_shell_job_respects_policy_and_sandbox(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        shell = _FakeShell(ShellOutcome(exit_code=1, output="x" * 4000))

        disabled = _processor(_config(tmp_path), queue, shell=shell)
        await queue.create_job(JobCreate(type="shell_exec", payload={"command": "ls"}))
        done = await run_worker_once(queue, disabled, "w1")
        assert done is not None and done.error is not None and done.error.code == "shell_disabled"

        enabled = _processor(_config(tmp_path, shell_enabled=True), queue, shell=shell)
        await queue.create_job(JobCreate(type="shell_exec", payload={"command": "sudo ls"}))
        blocked = await run_worker_once(queue, enabled, "w1")
        assert blocked is not None and blocked.error is not None and blocked.error.code == "sandbox_blocked"
        assert shell.calls == []

        await queue.create_job(
            JobCreate(type="shell_exec", payload={"command": "sudo ls", "sandboxOverride": "privilege_escalation"})
        )
        ran = await run_worker_once(queue, enabled, "w1")
        assert ran is not None and ran.status == "succeeded" and ran.result is not None
        assert ran.result["summary"] == "shell_exec_nonzero_exit"
        assert ran.result["exitCode"] == 1
        assert ran.result["responseText"].startswith("Command exited with code 1.\n")
        assert ran.result["responseText"].endswith("...[truncated]")
        assert shell.calls == [("sudo ls", str(tmp_path))]

        await queue.create_job(JobCreate(type="shell_exec", payload={"command": "sudo ls", "sandboxOverride": "fork_bomb"}))
        mismatched = await run_worker_once(queue, enabled, "w1")
        assert mismatched is not None and mismatched.status == "failed"

    asyncio.run(_run())


def test_run_spec_job_executes_stored_workflow(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        store = RunSpecStore()
        notes = _FakeNotifications()
        processor = _processor(
            _config(tmp_path),
            queue,
            run_specs=store,
            search=_FakeSearch(SearchResult(provider="searxng", text="grinder facts")),
            generation=_FakeGeneration("# Grinders\nBody"),
            notifications=notes,
        )
        spec = build_research_run_spec(run_id="r1", query="best grinders", file_name="grinders", session_id="chat-1")
        await store.put(run_id="r1", session_id="chat-1", spec=spec, status="queued", approved_step_ids=["write", "send"])
        job = await queue.create_job(JobCreate(type="run_spec", payload={"sessionId": "chat-1", "runSpecRunId": "r1"}))

        done = await run_worker_once(queue, processor, "w1")
        assert done is not None and done.status == "succeeded" and done.result is not None
        assert done.result["summary"] == "run_spec_completed"
        assert done.result["outputPath"] == "notes/generated/grinders.md"
        assert (tmp_path / "notes" / "generated" / "grinders.md").read_text(encoding="utf-8") == "# Grinders\nBody\n"
        assert [n.kind for n in notes.items] == ["file", "text"]

        rec = await store.get("r1")
        assert rec is not None and rec.status == "completed" and rec.job_id == job.id

    asyncio.run(_run())


def test_run_spec_job_failures(tmp_path: Path) -> None:
    async def _run() -> None:
        queue = InMemoryJobQueue()
        store = RunSpecStore()
        processor = _processor(
            _config(tmp_path),
            queue,
            run_specs=store,
            search=_FakeSearch(SearchResult(provider="brave", text="facts")),
            generation=_FakeGeneration(),
            notifications=_FakeNotifications(),
        )
        await queue.create_job(JobCreate(type="run_spec", payload={"runSpecRunId": "nope"}))
        missing = await run_worker_once(queue, processor, "w1")
        assert missing is not None and missing.error is not None and missing.error.code == "run_spec_missing"

        spec = build_research_run_spec(run_id="r2", query="best grinders", session_id="chat-1")
        await store.put(run_id="r2", session_id="chat-1", spec=spec, status="queued", approved_step_ids=["write"])
        await queue.create_job(JobCreate(type="run_spec", payload={"runSpecRunId": "r2"}))
        blocked = await run_worker_once(queue, processor, "w1")
        assert blocked is not None and blocked.error is not None
        assert blocked.error.code == "run_spec_approval_missing"
        assert blocked.error.message == "Run blocked: missing approval for step send."

    asyncio.run(_run())


def test_worker_loop_processes_until_stopped(tmp_path: Path) -> None:
    async def _run() -> int:
        queue = InMemoryJobQueue()
        stop = asyncio.Event()

        class _StopAfterTwo(_FakeNotifications):
            async def enqueue(self, notification: Notification) -> None:
                await super().enqueue(notification)
                if len(self.items) >= 2:
                    stop.set()

        processor = _processor(_config(tmp_path), queue, generation=_FakeGeneration(), notifications=_StopAfterTwo())
        for text in ("one", "two"):
            await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": text}))
        worker = Worker(queue=queue, processor=processor, worker_id="w1", poll_interval_ms=10)
        return await asyncio.wait_for(worker.run(stop), timeout=5)

    assert asyncio.run(_run()) == 2


def test_worker_loop_survives_queue_errors(tmp_path: Path) -> None:
    async def _run() -> None:
        class _FlakyQueue(InMemoryJobQueue):
            def __init__(self) -> None:
                super().__init__()
                self.complete_calls = 0

            async def complete_job(self, job_id: str, result: Dict[str, Any]) -> Any:
                self.complete_calls += 1
                if self.complete_calls == 1:
                    raise RuntimeError("store unavailable")
                return await super().complete_job(job_id, result)

        queue = _FlakyQueue()
        stop = asyncio.Event()

        class _StopOnFirst(_FakeNotifications):
            async def enqueue(self, notification: Notification) -> None:
                await super().enqueue(notification)
                stop.set()

        notes = _StopOnFirst()
        processor = _processor(_config(tmp_path), queue, generation=_FakeGeneration(), notifications=notes)
        first = await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": "one"}))
        second = await queue.create_job(JobCreate(type="chat_turn", payload={"sessionId": "chat-1", "text": "two"}))
        worker = Worker(queue=queue, processor=processor, worker_id="w1", poll_interval_ms=10)

        processed = await asyncio.wait_for(worker.run(stop), timeout=5)
        assert processed == 1
        assert queue.complete_calls == 2
        assert (await queue.get_job(first.id)).status == "running"  # type: ignore[union-attr]
        assert (await queue.get_job(second.id)).status == "succeeded"  # type: ignore[union-attr]
        assert len(notes.items) == 1

    asyncio.run(_run())
