"""
directives phase：在规划之前可以直接回答的输入。

解析顺序（命中即返回）：
1) 分页续读（`#next` / `next` / `more`）
2) 斜杠命令
3) 隐式审批（yes / no 作用于该 session 最新的待审批记录）
4) 状态查询（有最近 job 时）
"""

from __future__ import annotations

import re
from typing import Optional

from assistant_gateway.orchestrator import actions
from assistant_gateway.orchestrator.commands import parse_command
from assistant_gateway.orchestrator.planner import is_status_query
from assistant_gateway.orchestrator.services import GatewayServices, TurnContext, TurnResult
from assistant_gateway.safety.approvals import ApprovalRecord, ShellExecApproval

_NEXT_PAGE = frozenset({"#next", "next", "more"})
_YES_RE = re.compile(r"^(?:yes|y|yep|yeah|ok|okay|approve|approved|confirm|go ahead|do it)[.!]*$", re.IGNORECASE)
_NO_RE = re.compile(r"^(?:no|n|nope|reject|rejected|deny|cancel|stop)[.!]*$", re.IGNORECASE)


async def _paging(services: GatewayServices, ctx: TurnContext) -> Optional[TurnResult]:
    store = services.paged_responses
    if store is None or not services.config.pipeline.paging_enabled:
        return None
    lowered = ctx.text.strip().lower()
    if lowered not in _NEXT_PAGE:
        await store.clear(ctx.session_id)
        return None
    page = await store.pop_next(ctx.session_id)
    if page is None:
        return actions.reply("command", "No more pages.") if lowered == "#next" else None
    text = page.page
    if page.remaining > 0:
        text = f"{text}\n\nReply #next for more ({page.remaining} remaining)."
    return actions.reply("command", text)


def _implicitly_approvable(record: ApprovalRecord) -> bool:
    payload = record.payload
    return not (isinstance(payload, ShellExecApproval) and payload.override_rule_id)


async def _implicit_approval(services: GatewayServices, ctx: TurnContext) -> Optional[TurnResult]:
    text = ctx.text.strip()
    is_yes = bool(_YES_RE.match(text))
    is_no = not is_yes and bool(_NO_RE.match(text))
    if not is_yes and not is_no:
        return None
    if is_no:
        rejected = await services.approvals.discard_latest(ctx.session_id)
        if rejected is None:
            return None
        await actions.cancel_rejected(services, rejected)
        return actions.reply("command", f"Rejected {rejected.action} request {rejected.token}.")
    # 沙箱 override 只能用显式 token 批准
    record, consumed = await services.approvals.consume_latest_if(ctx.session_id, _implicitly_approvable)
    if record is None:
        return None
    if not consumed:
        rule_id = record.payload.override_rule_id  # type: ignore[union-attr]
        return actions.reply(
            "approval",
            f"This request overrides sandbox rule '{rule_id}'. Reply `approve {record.token}` to confirm it explicitly.",
            approval_token=record.token,
        )
    return await actions.execute_approval(services, ctx, record)


async def resolve_directives(services: GatewayServices, ctx: TurnContext) -> Optional[TurnResult]:
    """返回 None 表示需要进入 plan phase。"""

    paged = await _paging(services, ctx)
    if paged is not None:
        return paged

    cmd = parse_command(ctx.text)
    if cmd is not None:
        await ctx.emitter.note(f"Command {cmd.kind}", {"command": cmd.kind})
        return await actions.handle_command(services, ctx, cmd)

    approval = await _implicit_approval(services, ctx)
    if approval is not None:
        return approval

    if is_status_query(ctx.text):
        status = await actions.status_reply(services, ctx.session_id)
        if status is not None:
            return actions.reply("command", status)
    return None
