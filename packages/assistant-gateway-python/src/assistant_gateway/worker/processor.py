"""
JobProcessor：按 job 类型分发 worker 侧执行。

说明：
- 处理成功返回 result dict（`summary` + `responseText` 等字段），失败抛 `JobProcessingError`
  （或协作方异常），由 `run_worker_once` 统一转成 job 失败；
- 外部调用（search / generation）统一通过 `BudgetedCall` 包装：单次超时、有限重试、共享总预算。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from assistant_gateway.config.loader import GatewayConfig
from assistant_gateway.core.collaborators import (
    GenerationService,
    JobQueue,
    NotificationSink,
    SearchService,
    ShellRunner,
)
from assistant_gateway.core.contracts import Job, Notification
from assistant_gateway.core.errors import JobProcessingError
from assistant_gateway.safety.sandbox import evaluate_shell_command
from assistant_gateway.safety.tool_policy import evaluate_tool_policy
from assistant_gateway.state.run_spec_store import RunSpecStore
from assistant_gateway.worker.budget import BudgetedCall, BudgetedGeneration, BudgetedSearch
from assistant_gateway.workflows.executor import execute_run_spec, normalize_provider

logger = logging.getLogger(__name__)

SHELL_OUTPUT_LIMIT = 3500


def _payload_str(job: Job, key: str) -> str:
    value = job.payload.get(key)
    return value.strip() if isinstance(value, str) else ""


class JobProcessor:
    """
    worker 侧 job 处理器。

    参数：
    - config：网关配置（worker 预算、workspace、策略）
    - jobs：job 队列（进度上报）
    - run_specs：RunSpec 记录存储
    - search / generation / notifications / shell：外部协作方（缺失时对应 job 类型失败）
    """

    def __init__(
        self,
        *,
        config: GatewayConfig,
        jobs: JobQueue,
        run_specs: RunSpecStore,
        search: Optional[SearchService] = None,
        generation: Optional[GenerationService] = None,
        notifications: Optional[NotificationSink] = None,
        shell: Optional[ShellRunner] = None,
        budget_factory: Optional[Callable[[], BudgetedCall]] = None,
    ) -> None:
        self._config = config
        self._jobs = jobs
        self._run_specs = run_specs
        self._search = search
        self._generation = generation
        self._notifications = notifications
        self._shell = shell
        self._budget_factory = budget_factory or self._default_budget

    def _default_budget(self) -> BudgetedCall:
        w = self._config.worker
        return BudgetedCall(timeout_sec=w.search_timeout_sec, max_retries=w.max_retries, time_budget_sec=w.time_budget_sec)

    async def announce(self, job: Job, *, status: str, text: str) -> None:
        """向 job 所属 session 发送状态文本（best-effort）。"""

        session_id = _payload_str(job, "sessionId")
        if not session_id or self._notifications is None or not text:
            return
        try:
            await self._notifications.enqueue(
                Notification(session_id=session_id, kind="text", text=text, job_id=job.id, status=status)
            )
        except Exception:
            logger.warning("job notification failed (job=%s)", job.id, exc_info=True)

    async def process(self, job: Job) -> Dict[str, Any]:
        handlers = {
            "run_spec": self._run_spec,
            "web_search": self._web_search,
            "chat_turn": self._chat_turn,
            "shell_exec": self._shell_exec,
        }
        handler = handlers.get(job.type)
        if handler is None:
            raise JobProcessingError("unsupported_job_type", f"Unsupported job type: {job.type}")
        return await handler(job)

    async def _report(self, job: Job, progress: Dict[str, Any]) -> None:
        await self._jobs.update_progress(job.id, progress)

    async def _run_spec(self, job: Job) -> Dict[str, Any]:
        run_id = _payload_str(job, "runSpecRunId")
        record = await self._run_specs.get(run_id) if run_id else None
        if record is None:
            raise JobProcessingError("run_spec_missing", "RunSpec payload is missing or invalid.")
        if self._search is None or self._generation is None or self._notifications is None:
            raise JobProcessingError("run_spec_collaborators_missing", "Search, generation and notifications are required.")

        session_id = _payload_str(job, "sessionId") or record.session_id
        auth_session_id = _payload_str(job, "authSessionId") or session_id
        await self._run_specs.put(
            run_id=run_id,
            session_id=record.session_id,
            spec=record.spec,
            status="running",
            approved_step_ids=record.approved_step_ids,
            job_id=job.id,
        )
        budget = self._budget_factory()
        result = await execute_run_spec(
            run_id=run_id,
            session_id=session_id,
            auth_session_id=auth_session_id,
            auth_preference=_payload_str(job, "authPreference") or "auto",
            run_spec=record.spec,
            approved_step_ids=record.approved_step_ids,
            workspace_dir=self._config.workspace.dir,
            search=BudgetedSearch(self._search, budget),
            generation=BudgetedGeneration(self._generation, budget),
            notifications=self._notifications,
            run_spec_store=self._run_specs,
            report_progress=lambda progress: self._report(job, progress),
            generated_subdir=self._config.workspace.generated_subdir,
        )
        if result.summary in ("run_spec_failed", "run_spec_approval_missing"):
            raise JobProcessingError(
                result.summary,
                result.response_text or result.summary,
                details={"outputPath": result.output_path, "provider": result.provider},
            )
        return {
            "summary": result.summary,
            "responseText": result.response_text,
            "outputPath": result.output_path,
            "provider": result.provider,
        }

    async def _web_search(self, job: Job) -> Dict[str, Any]:
        query = _payload_str(job, "query")
        if not query:
            raise JobProcessingError("web_search_missing_query", "Web search needs a query.")
        if self._search is None:
            raise JobProcessingError("web_search_unavailable", "Web search is not configured.")
        provider = normalize_provider(job.payload.get("provider")) or self._config.policy.web_search_provider
        session_id = _payload_str(job, "sessionId")
        await self._report(job, {"step": "web.search", "message": f"Searching via {provider}...", "percent": 10})
        budget = self._budget_factory()
        found = await BudgetedSearch(self._search, budget).search(
            query,
            provider=provider,
            auth_session_id=_payload_str(job, "authSessionId") or session_id,
            auth_preference=_payload_str(job, "authPreference") or "auto",
        )
        if found is None or not found.text.strip():
            raise JobProcessingError("web_search_empty", "No web search results were returned.")
        return {"summary": "web_search_completed", "responseText": found.text.strip(), "provider": found.provider}

    async def _chat_turn(self, job: Job) -> Dict[str, Any]:
        text = _payload_str(job, "text")
        if not text:
            return {"summary": "chat_turn_missing_input", "responseText": "Follow-up could not run: missing input text."}
        if self._generation is None:
            raise JobProcessingError("chat_turn_unavailable", "Text generation is not configured.")
        await self._report(job, {"step": "planning", "message": "Running queued follow-up turn..."})
        session_id = _payload_str(job, "authSessionId") or _payload_str(job, "sessionId")
        budget = self._budget_factory()
        generated = await BudgetedGeneration(self._generation, budget).generate_text(
            session_id, text, auth_preference=_payload_str(job, "authPreference") or "auto"
        )
        if not generated or not generated.strip():
            return {"summary": "chat_turn_no_response", "responseText": "No model response is available for this follow-up turn."}
        return {"summary": "chat_turn_completed", "responseText": generated.strip()}

    async def _shell_exec(self, job: Job) -> Dict[str, Any]:
        command = _payload_str(job, "command")
        decision = evaluate_tool_policy("shell.exec", self._config.policy)
        if not decision.allowed:
            raise JobProcessingError("shell_disabled", decision.reason or "Shell execution is disabled.")
        override = _payload_str(job, "sandboxOverride")
        verdict = evaluate_shell_command(command)
        if verdict.blocked and not (override and override == verdict.rule_id):
            raise JobProcessingError(
                "sandbox_blocked", f"Command blocked by sandbox rule '{verdict.rule_id}'.", details={"ruleId": verdict.rule_id}
            )
        if self._shell is None:
            raise JobProcessingError("shell_unavailable", "No shell runner is configured.")

        await self._report(job, {"step": "shell.exec", "message": f"Running: {command[:80]}"})
        # 不重试：整个预算作为单次超时
        w = self._config.worker
        budget = BudgetedCall(timeout_sec=w.time_budget_sec, max_retries=0, time_budget_sec=w.time_budget_sec)
        outcome = await budget.run("shell command", lambda: self._shell.run(command, cwd=self._config.workspace.dir))
        output = outcome.output if len(outcome.output) <= SHELL_OUTPUT_LIMIT else outcome.output[:SHELL_OUTPUT_LIMIT] + "\n...[truncated]"
        summary = "shell_exec_completed" if outcome.exit_code == 0 else "shell_exec_nonzero_exit"
        return {
            "summary": summary,
            "exitCode": outcome.exit_code,
            "responseText": f"Command exited with code {outcome.exit_code}.\n{output}".rstrip(),
        }
