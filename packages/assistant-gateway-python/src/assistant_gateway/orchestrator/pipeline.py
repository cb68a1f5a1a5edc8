"""
TurnPipeline：入站消息的多 phase 编排。

phase 顺序：normalize → session → directives → plan → policy → route → persist → dispatch

约束：
- 只有 `InboundValidationError`（normalize 阶段、尚未产生任何副作用）会抛给调用方；
- 其它协作方异常在边界处捕获：回合以通用回复结束，ledger run 以 `failed` 终止；
- ledger / hooks / 会话记录 / 通知都是 best-effort，失败只计数与记录日志。
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from assistant_gateway.orchestrator import actions
from assistant_gateway.orchestrator.directives import resolve_directives
from assistant_gateway.orchestrator.emitter import PhaseEmitter
from assistant_gateway.orchestrator.phases import (
    PHASE_MESSAGES,
    NormalizedInbound,
    lease_key_for,
    normalize_inbound,
    policy_snapshot,
    session_directives,
)
from assistant_gateway.orchestrator.routing import plan_turn, route_decision
from assistant_gateway.orchestrator.services import GatewayServices, TurnContext, TurnResult
from assistant_gateway.state.run_ledger import StartRunResult

logger = logging.getLogger(__name__)

GENERIC_ERROR_REPLY = "Something went wrong while handling that message. Please try again."


class TurnPipeline:
    """
    回合编排器。

    参数：
    - services：依赖容器（见 `GatewayServices`）
    """

    def __init__(self, services: GatewayServices) -> None:
        self._services = services

    @property
    def services(self) -> GatewayServices:
        return self._services

    async def _resolve_auth_session(self, channel_session_id: str) -> str:
        identity = self._services.identity
        if identity is None:
            return channel_session_id
        try:
            resolved = await identity.resolve_auth_session(channel_session_id)
        except Exception:
            self._services.state.counters.collaborator_failures += 1
            logger.warning("identity resolution failed (session=%s)", channel_session_id, exc_info=True)
            return channel_session_id
        return str(resolved or "").strip() or channel_session_id

    async def _build_context(self, normalized: NormalizedInbound) -> TurnContext:
        services = self._services
        inbound = normalized.inbound
        auth_session_id = await self._resolve_auth_session(inbound.session_id)
        directives = session_directives(inbound.metadata or {}, default_queue_mode=services.config.pipeline.default_queue_mode)
        emitter = PhaseEmitter(
            session_id=inbound.session_id,
            counters=services.state.counters,
            ledger=services.ledger,
            hooks=services.hooks,
        )
        return TurnContext(
            inbound=inbound,
            text=(inbound.text or "").strip(),
            provider=normalized.provider,
            source=normalized.source,
            channel=normalized.channel,
            auth_session_id=auth_session_id,
            auth_preference=directives["auth_preference"],
            queue_mode=directives["queue_mode"],
            idempotency_key=directives["idempotency_key"],
            emitter=emitter,
            lease_key=lease_key_for(
                services.config.policy, auth_session_id=auth_session_id, channel_session_id=inbound.session_id
            ),
        )

    async def _start_run(self, ctx: TurnContext) -> Optional[StartRunResult]:
        ledger = self._services.ledger
        if ledger is None:
            return None
        try:
            started = await ledger.start_run(
                session_key=ctx.auth_session_id,
                queue_mode=ctx.queue_mode,
                idempotency_key=ctx.idempotency_key,
                provider=ctx.provider or None,
                tool_policy_snapshot=policy_snapshot(self._services.config.policy),
            )
        except Exception:
            # 账本不可用时回合照常进行，只是没有 run 记录
            self._services.state.counters.ledger_failures += 1
            logger.warning("start_run failed (session=%s); continuing without a run", ctx.session_id, exc_info=True)
            return None
        if started.acquired and not started.reused:
            ctx.run_id = started.run.run_id
            ctx.emitter.run_id = started.run.run_id
        return started

    async def _session_guard(self, ctx: TurnContext, started: Optional[StartRunResult]) -> Optional[TurnResult]:
        """重放与忙碌冲突的处理；返回 None 表示继续后续 phase。"""

        if started is None:
            return None
        if started.reused:
            return TurnResult(
                accepted=True,
                mode="duplicate",
                response=f"Already handled this message in run {started.run.run_id}.",
                run_id=started.run.run_id,
                acquired=started.acquired,
                reused=True,
            )
        if started.acquired:
            return None

        active = started.active_run_id
        base = dict(run_id=started.run.run_id, active_run_id=active, acquired=False)
        if ctx.queue_mode == "steer":
            return TurnResult(
                accepted=True,
                mode="busy",
                response=f"Session is busy with run {active}. Wait for it to finish, or send with queueMode collect to queue this message.",
                **base,
            )
        job = await actions.enqueue_job(
            self._services, ctx, "chat_turn", ctx.job_payload(text=ctx.text, queueMode=ctx.queue_mode, blockedRunId=started.run.run_id)
        )
        return TurnResult(
            accepted=True,
            mode="async-job",
            response=f"Session is busy with run {active}. Queued your message as job {job.id}.",
            job_id=job.id,
            **base,
        )

    async def _run_phases(self, ctx: TurnContext) -> TurnResult:
        await ctx.emitter.mark_phase("directives", PHASE_MESSAGES["directives"])
        direct = await resolve_directives(self._services, ctx)
        if direct is not None:
            return direct

        await ctx.emitter.mark_phase("plan", PHASE_MESSAGES["plan"])
        decision = await plan_turn(self._services, ctx)
        if decision.intent == "web_research" or decision.send_attachment:
            decision = decision.model_copy(update={"needs_worker": True})
        return await route_decision(self._services, ctx, decision)

    async def _persist(self, ctx: TurnContext, result: TurnResult) -> None:
        await ctx.emitter.mark_phase("persist", PHASE_MESSAGES["persist"])
        sink = self._services.conversations
        if sink is None:
            return
        meta: dict[str, Any] = {"source": ctx.source, "channel": ctx.channel, "runId": ctx.run_id, "mode": result.mode}
        try:
            if ctx.text:
                await sink.append(ctx.session_id, "inbound", ctx.text, meta)
            if result.response:
                await sink.append(ctx.session_id, "outbound", result.response, meta)
        except Exception:
            self._services.state.counters.collaborator_failures += 1
            logger.warning("conversation append failed (session=%s)", ctx.session_id, exc_info=True)

    async def _dispatch(self, ctx: TurnContext, failure: Optional[str]) -> None:
        await ctx.emitter.mark_phase(
            "dispatch", "Dispatch completed" if failure is None else "Dispatch ended with failure", {"failure": failure} if failure else None
        )
        ledger = self._services.ledger
        if ledger is None or not ctx.run_id:
            return
        try:
            await ledger.complete_run(ctx.run_id, "completed" if failure is None else "failed", failure)
        except Exception:
            self._services.state.counters.ledger_failures += 1
            logger.warning("complete_run failed (run=%s)", ctx.run_id, exc_info=True)

    async def handle_inbound(self, payload: Any) -> TurnResult:
        """
        处理一条入站消息。

        异常：
        - InboundValidationError：payload 非法（不创建 run、不调用任何协作方）
        """

        normalized = normalize_inbound(payload)
        self._services.state.counters.turns += 1
        ctx = await self._build_context(normalized)
        await ctx.emitter.mark_phase("normalize", "Inbound message normalized", {"source": ctx.source, "channel": ctx.channel})

        failure: Optional[str] = None
        try:
            started = await self._start_run(ctx)
            await ctx.emitter.mark_phase(
                "session",
                "Session resolved",
                {"authSessionId": ctx.auth_session_id, "queueMode": ctx.queue_mode, "authPreference": ctx.auth_preference},
            )
            result = await self._session_guard(ctx, started)
            if result is None:
                result = await self._run_phases(ctx)
        except Exception as exc:
            failure = f"turn_error:{type(exc).__name__}"
            logger.exception("turn failed (session=%s run=%s)", ctx.session_id, ctx.run_id)
            result = TurnResult(accepted=True, mode="chat", response=GENERIC_ERROR_REPLY)

        if result.run_id is None:
            result.run_id = ctx.run_id
        if result.acquired is None and ctx.run_id:
            result.acquired = True

        await self._persist(ctx, result)
        await self._dispatch(ctx, failure)
        return result
