"""
plan / policy / route 三个 phase。

说明：
- planner 失败时回落到启发式规划（计数 + 日志），回合不会因此失败；
- web_research 与 send_attachment 总是委派给 worker（忽略 planner 的 needs_worker 建议）；
- send_attachment 构造研究 RunSpec，结合策略与 lease 逐个评估带审批门的 step：
  仍有未放行的 step（或 web 搜索本身需要审批）时创建 RunSpec 审批，否则直接入队 run_spec job。
"""

from __future__ import annotations

import logging
from typing import List, Optional

from assistant_gateway.core.contracts import PlannerDecision
from assistant_gateway.core.utils import new_id
from assistant_gateway.orchestrator import actions
from assistant_gateway.orchestrator.planner import heuristic_plan
from assistant_gateway.orchestrator.services import GatewayServices, TurnContext, TurnResult
from assistant_gateway.safety.approvals import RunSpecApproval, WebSearchApproval
from assistant_gateway.safety.tool_policy import evaluate_tool_policy
from assistant_gateway.workflows.run_spec import build_research_run_spec

logger = logging.getLogger(__name__)

PAGE_CHARS = 1500
NO_MODEL_REPLY = "No model response is available right now."

# RunSpec step 类型 → 策略评估使用的 tool id
_STEP_TOOLS = {"file.write": "file.write", "channel.send_attachment": "file.send", "web.search": "web.search"}


async def _has_active_job(services: GatewayServices, session_id: str) -> bool:
    job_id = services.state.latest_job(session_id)
    if not job_id:
        return False
    job = await services.jobs.get_job(job_id)
    return job is not None and not job.is_terminal


async def plan_turn(services: GatewayServices, ctx: TurnContext) -> PlannerDecision:
    """plan phase：调用 planner；异常时回落到启发式。"""

    has_active_job = await _has_active_job(services, ctx.session_id)
    if services.planner is None:
        return heuristic_plan(ctx.text, has_active_job=has_active_job)
    try:
        return await services.planner.plan(
            ctx.session_id, ctx.text, auth_preference=ctx.auth_preference, has_active_job=has_active_job
        )
    except Exception:
        services.state.counters.planner_failures += 1
        logger.warning("planner failed (session=%s); using heuristic plan", ctx.session_id, exc_info=True)
        return heuristic_plan(ctx.text, has_active_job=has_active_job)


def split_pages(text: str, limit: int = PAGE_CHARS) -> List[str]:
    """按段落（其次按行、最后硬切）把长文本拆成不超过 `limit` 字符的页。"""

    pages: List[str] = []
    current = ""
    for block in text.split("\n\n"):
        pieces = [block] if len(block) <= limit else [block[i : i + limit] for i in range(0, len(block), limit)]
        for piece in pieces:
            candidate = f"{current}\n\n{piece}" if current else piece
            if len(candidate) <= limit:
                current = candidate
                continue
            if current:
                pages.append(current)
            current = piece
    if current:
        pages.append(current)
    return pages


async def _chat_reply(services: GatewayServices, ctx: TurnContext) -> TurnResult:
    text: Optional[str] = None
    if services.generation is not None:
        try:
            text = await services.generation.generate_text(ctx.session_id, ctx.text, auth_preference=ctx.auth_preference)
        except Exception:
            services.state.counters.collaborator_failures += 1
            logger.warning("generation failed (session=%s)", ctx.session_id, exc_info=True)
            text = None
    if not text or not text.strip():
        return actions.reply("chat", NO_MODEL_REPLY)

    text = text.strip()
    store = services.paged_responses
    if store is None or not services.config.pipeline.paging_enabled or len(text) <= PAGE_CHARS:
        return actions.reply("chat", text)
    pages = split_pages(text)
    await store.set_pages(ctx.session_id, pages[1:])
    remaining = len(pages) - 1
    return actions.reply("chat", f"{pages[0]}\n\nReply #next for more ({remaining} remaining).")


async def _route_research(services: GatewayServices, ctx: TurnContext, decision: PlannerDecision) -> TurnResult:
    policy = services.config.policy
    query = (decision.query or ctx.text).strip()
    provider = decision.provider or policy.web_search_provider
    search = evaluate_tool_policy("web.search", policy)
    if not search.allowed:
        return actions.reply("command", search.reason or "Web search is not allowed.")
    if search.requires_approval:
        return await actions.request_approval(
            services, ctx, WebSearchApproval(query=query, provider=provider), "Approval required for web search."
        )
    job = await actions.enqueue_job(services, ctx, "web_search", ctx.job_payload(query=query, provider=provider))
    return actions.reply(
        "async-job", f"I'm researching that now (job {job.id}). I'll send the results when ready.", job_id=job.id
    )


async def _route_attachment(services: GatewayServices, ctx: TurnContext, decision: PlannerDecision) -> TurnResult:
    policy = services.config.policy
    query = (decision.query or ctx.text).strip()
    provider = decision.provider or policy.web_search_provider
    run_spec_run_id = new_id()
    spec = build_research_run_spec(
        run_id=run_spec_run_id,
        query=query,
        provider=provider,
        file_format=decision.file_format or "md",
        file_name=decision.file_name,
        session_id=ctx.session_id,
    )

    search = evaluate_tool_policy("web.search", policy)
    if not search.allowed:
        return actions.reply("command", search.reason or "Web search is not allowed.")

    has_lease = services.state.leases.has(ctx.lease_key, "file_write")
    approved: List[str] = []
    pending: List[str] = []
    for step in spec.gated_steps():
        verdict = evaluate_tool_policy(_STEP_TOOLS.get(step.type, step.type), policy, has_lease=has_lease)
        if not verdict.allowed:
            return actions.reply("command", verdict.reason or f"Step {step.id} is not allowed.")
        (pending if verdict.requires_approval else approved).append(step.id)

    if pending or search.requires_approval:
        await services.run_specs.put(
            run_id=run_spec_run_id,
            session_id=ctx.session_id,
            spec=spec,
            status="awaiting_approval",
            approved_step_ids=approved,
        )
        await services.run_specs.append_event(
            run_spec_run_id,
            "approval_requested",
            message="Waiting for approval",
            payload={"pendingStepIds": pending, "searchApproval": search.requires_approval},
        )
        return await actions.request_approval(
            services,
            ctx,
            RunSpecApproval(
                run_spec_run_id=run_spec_run_id,
                run_spec=spec,
                approved_step_ids=approved,
                pending_step_ids=pending,
            ),
            f'Approval required to research "{query[:80]}" and send the result as a file.',
        )

    await services.run_specs.put(
        run_id=run_spec_run_id, session_id=ctx.session_id, spec=spec, status="queued", approved_step_ids=approved
    )
    job = await actions.enqueue_job(services, ctx, "run_spec", ctx.job_payload(runSpecRunId=run_spec_run_id))
    await services.run_specs.put(
        run_id=run_spec_run_id,
        session_id=ctx.session_id,
        spec=spec,
        status="queued",
        approved_step_ids=approved,
        job_id=job.id,
    )
    return actions.reply(
        "async-job", f"I'm researching that and will send the file when it's ready (job {job.id}).", job_id=job.id
    )


async def route_decision(services: GatewayServices, ctx: TurnContext, decision: PlannerDecision) -> TurnResult:
    """policy + route phase：把规划结果落到具体动作。"""

    await ctx.emitter.mark_phase(
        "policy", None, {"intent": decision.intent, "confidence": decision.confidence, "reason": decision.reason}
    )
    await ctx.emitter.mark_phase("route")

    if decision.intent == "command":
        parts = ctx.text.split()
        if not parts:
            return actions.reply("command", "Unknown command. Try /policy or /task list.")
        return actions.reply("command", f"Unknown command: {parts[0]}. Try /policy or /task list.")

    if decision.intent == "clarify":
        return actions.reply("chat", decision.question or "Can you clarify what you need?")

    if decision.intent == "status_query":
        status = await actions.status_reply(services, ctx.session_id)
        return actions.reply("command", status or "No active jobs for this chat.")

    if decision.intent == "web_research" or decision.send_attachment:
        if decision.send_attachment:
            return await _route_attachment(services, ctx, decision)
        return await _route_research(services, ctx, decision)

    if ctx.inbound.request_job or decision.needs_worker:
        job = await actions.enqueue_job(services, ctx, "chat_turn", ctx.job_payload(text=ctx.text))
        return actions.reply("async-job", f"Working on it as job {job.id}.", job_id=job.id)

    return await _chat_reply(services, ctx)
