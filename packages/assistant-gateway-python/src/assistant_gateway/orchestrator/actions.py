"""
回合内可执行的动作：入队 job、创建/执行审批、workspace 文件写入、斜杠命令处理。

说明：
- 所有用户可见文本为英文；
- 通知（queued 提示、附件）是 best-effort：失败计数并记录日志，不影响回复。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from assistant_gateway.core.contracts import Job, JobCreate, Notification
from assistant_gateway.core.errors import WorkspaceBoundaryError
from assistant_gateway.core.workspace import resolve_within, workspace_relative
from assistant_gateway.orchestrator.commands import ParsedCommand
from assistant_gateway.orchestrator.services import GatewayServices, TurnContext, TurnResult
from assistant_gateway.safety.approvals import (
    ApprovalRecord,
    FileSendApproval,
    FileWriteApproval,
    RunSpecApproval,
    ShellExecApproval,
    WebSearchApproval,
)
from assistant_gateway.safety.sandbox import evaluate_shell_command
from assistant_gateway.safety.tool_policy import evaluate_tool_policy
from assistant_gateway.workflows.executor import MIME_TYPES

logger = logging.getLogger(__name__)


def approval_hint(token: str) -> str:
    return f"Reply `approve {token}` (or yes) to continue, or `reject {token}` to cancel."


def reply(mode: str, text: str, **fields: Any) -> TurnResult:
    return TurnResult(accepted=True, mode=mode, response=text, **fields)


async def notify(services: GatewayServices, notification: Notification) -> bool:
    """best-effort 出站通知；返回是否成功。"""

    if services.notifications is None:
        return False
    try:
        await services.notifications.enqueue(notification)
    except Exception:
        services.state.counters.collaborator_failures += 1
        logger.warning("notification enqueue failed (session=%s)", notification.session_id, exc_info=True)
        return False
    return True


async def enqueue_job(services: GatewayServices, ctx: TurnContext, job_type: str, payload: Dict[str, Any]) -> Job:
    """入队 job，记录 session 最近 job，镜像 `queued` 事件，并发送 best-effort 的 queued 通知。"""

    job = await services.jobs.create_job(JobCreate(type=job_type, payload=payload))  # type: ignore[arg-type]
    services.state.remember_job(ctx.session_id, job.id)
    await ctx.emitter.queued(f"Queued {job_type} job", {"jobId": job.id, "jobType": job_type})
    await notify(
        services,
        Notification(session_id=ctx.session_id, kind="text", text=f"Job {job.id} queued.", job_id=job.id, status="queued"),
    )
    return job


async def request_approval(services: GatewayServices, ctx: TurnContext, payload: Any, prompt: str) -> TurnResult:
    """创建审批记录并返回带 token 的回复。"""

    record = await services.approvals.create(session_id=ctx.session_id, payload=payload)
    await ctx.emitter.note(f"Approval requested for {record.action}", {"token": record.token, "action": record.action})
    return reply("approval", f"{prompt} {approval_hint(record.token)}", approval_token=record.token)


async def status_reply(services: GatewayServices, session_id: str) -> Optional[str]:
    """基于 session 最近 job 生成状态回复；没有 job 时返回 None。"""

    job_id = services.state.latest_job(session_id)
    if not job_id:
        return None
    job = await services.jobs.get_job(job_id)
    if job is None:
        return None
    return describe_job(job, prefix="Latest job")


def describe_job(job: Job, *, prefix: str = "Job") -> str:
    parts = [f"{prefix} {job.id} is {job.status}."]
    if job.progress is not None:
        pct = f" ({job.progress.percent:.0f}%)" if job.progress.percent is not None else ""
        parts.append(f"{job.progress.message}{pct}")
    if job.error is not None:
        parts.append(f"Error: {job.error.message}")
    return " ".join(parts)


def _notes_root(services: GatewayServices) -> Path:
    return services.workspace_dir / services.config.policy.file_write_notes_dir


def check_write_target(services: GatewayServices, relative_path: str) -> tuple[Optional[Path], Optional[str]]:
    """
    校验写入目标。

    返回：
    - (绝对路径, None)：允许写入
    - (None, 错误回复)：越界或违反 notes-only
    """

    policy = services.config.policy
    try:
        target = resolve_within(services.workspace_dir, relative_path)
    except WorkspaceBoundaryError:
        return None, "That path is outside the workspace."
    if policy.file_write_notes_only and not target.is_relative_to(_notes_root(services).resolve()):
        return None, f"File writes are restricted to '{policy.file_write_notes_dir.strip('/')}/'."
    return target, None


def append_workspace_file(services: GatewayServices, target: Path, text: str) -> str:
    """追加文本到 workspace 文件，返回相对 workspace 的路径。"""

    target.parent.mkdir(parents=True, exist_ok=True)
    body = text if text.endswith("\n") else f"{text}\n"
    with target.open("a", encoding="utf-8") as fh:
        fh.write(body)
    return workspace_relative(services.workspace_dir, target)


def _grant_session_lease(services: GatewayServices, ctx: TurnContext, capability: str) -> None:
    if services.config.policy.file_write_approval_mode == "session":
        services.state.leases.grant(ctx.lease_key, capability)


async def execute_approval(services: GatewayServices, ctx: TurnContext, record: ApprovalRecord) -> TurnResult:
    """执行已批准的动作（token 已被消费）。"""

    payload = record.payload
    await ctx.emitter.note(f"Approval granted for {record.action}", {"token": record.token})

    if isinstance(payload, WebSearchApproval):
        job = await enqueue_job(services, ctx, "web_search", ctx.job_payload(query=payload.query, provider=payload.provider))
        return reply("async-job", f"Approved action executed: web_search (queued job {job.id}).", job_id=job.id)

    if isinstance(payload, FileWriteApproval):
        target, error = check_write_target(services, payload.relative_path)
        if target is None:
            return reply("command", error or "File write rejected.")
        rel = append_workspace_file(services, target, payload.text)
        _grant_session_lease(services, ctx, "file_write")
        return reply("command", f"Approved action executed: file_write (wrote workspace/{rel}).")

    if isinstance(payload, FileSendApproval):
        return await _send_file(services, ctx, payload.relative_path, payload.caption, prefix="Approved action executed: file_send")

    if isinstance(payload, RunSpecApproval):
        for step_id in payload.pending_step_ids:
            await services.run_specs.grant_step_approval(payload.run_spec_run_id, step_id)
        _grant_session_lease(services, ctx, payload.capability)
        approved = list(payload.approved_step_ids) + [s for s in payload.pending_step_ids if s not in payload.approved_step_ids]
        job = await enqueue_job(services, ctx, "run_spec", ctx.job_payload(runSpecRunId=payload.run_spec_run_id))
        await services.run_specs.put(
            run_id=payload.run_spec_run_id,
            session_id=ctx.session_id,
            spec=payload.run_spec,
            status="queued",
            approved_step_ids=approved,
            job_id=job.id,
        )
        return reply("async-job", f"Approved action executed: run_spec (queued job {job.id}).", job_id=job.id)

    if isinstance(payload, ShellExecApproval):
        job = await enqueue_job(
            services,
            ctx,
            "shell_exec",
            ctx.job_payload(command=payload.command, sandboxOverride=payload.override_rule_id),
        )
        return reply("async-job", f"Approved action executed: shell_exec (queued job {job.id}).", job_id=job.id)

    return reply("command", f"Unsupported approval action: {record.action}.")


async def _send_file(
    services: GatewayServices, ctx: TurnContext, relative_path: str, caption: Optional[str], *, prefix: str
) -> TurnResult:
    try:
        target = resolve_within(services.workspace_dir, relative_path)
    except WorkspaceBoundaryError:
        return reply("command", "That path is outside the workspace.")
    rel = workspace_relative(services.workspace_dir, target)
    if not target.is_file():
        return reply("command", f"File not found: workspace/{rel}")
    ext = target.suffix.lstrip(".").lower()
    sent = await notify(
        services,
        Notification(
            session_id=ctx.session_id,
            kind="file",
            file_path=str(target),
            file_name=target.name,
            mime_type=MIME_TYPES.get(ext, "application/octet-stream"),
            caption=caption,
        ),
    )
    if not sent:
        return reply("command", "Attachments are not available right now.")
    return reply("command", f"{prefix} (queued workspace/{rel} as an attachment).")


async def _web_search_command(services: GatewayServices, ctx: TurnContext, query: str, provider: Optional[str]) -> TurnResult:
    policy = services.config.policy
    decision = evaluate_tool_policy("web.search", policy)
    if not decision.allowed:
        return reply("command", decision.reason or "Web search is not allowed.")
    chosen = provider or policy.web_search_provider
    if decision.requires_approval:
        return await request_approval(
            services, ctx, WebSearchApproval(query=query, provider=chosen), "Approval required for web search."
        )
    job = await enqueue_job(services, ctx, "web_search", ctx.job_payload(query=query, provider=chosen))
    return reply("async-job", f"Queued web search as job {job.id}.", job_id=job.id)


async def _file_write_command(services: GatewayServices, ctx: TurnContext, relative_path: str, text: str) -> TurnResult:
    policy = services.config.policy
    decision = evaluate_tool_policy(
        "file.write", policy, has_lease=services.state.leases.has(ctx.lease_key, "file_write")
    )
    if not decision.allowed:
        return reply("command", decision.reason or "File write is not allowed.")
    target, error = check_write_target(services, relative_path)
    if target is None:
        return reply("command", error or "File write rejected.")
    rel = workspace_relative(services.workspace_dir, target)
    if decision.requires_approval:
        return await request_approval(
            services,
            ctx,
            FileWriteApproval(relative_path=rel, text=text),
            f"Approval required for file write to workspace/{rel}.",
        )
    append_workspace_file(services, target, text)
    return reply("command", f"Wrote workspace/{rel}.")


async def _file_send_command(services: GatewayServices, ctx: TurnContext, relative_path: str, caption: Optional[str]) -> TurnResult:
    decision = evaluate_tool_policy(
        "file.send", services.config.policy, has_lease=services.state.leases.has(ctx.lease_key, "file_write")
    )
    if not decision.allowed:
        return reply("command", decision.reason or "File send is not allowed.")
    if decision.requires_approval:
        try:
            rel = workspace_relative(services.workspace_dir, resolve_within(services.workspace_dir, relative_path))
        except WorkspaceBoundaryError:
            return reply("command", "That path is outside the workspace.")
        return await request_approval(
            services,
            ctx,
            FileSendApproval(relative_path=rel, caption=caption),
            f"Approval required to send workspace/{rel}.",
        )
    return await _send_file(services, ctx, relative_path, caption, prefix="Sent")


async def _shell_command(services: GatewayServices, ctx: TurnContext, command: str) -> TurnResult:
    decision = evaluate_tool_policy("shell.exec", services.config.policy)
    if not decision.allowed:
        return reply("command", decision.reason or "Shell execution is not allowed.")
    verdict = evaluate_shell_command(command)
    if verdict.blocked:
        if verdict.rule_id == "empty_command":
            return reply("command", "Shell command is empty.")
        return await request_approval(
            services,
            ctx,
            ShellExecApproval(command=command, override_rule_id=verdict.rule_id),
            f"Command blocked by sandbox rule '{verdict.rule_id}'. Only an explicit token approval can override it once.",
        )
    if decision.requires_approval:
        return await request_approval(
            services, ctx, ShellExecApproval(command=command), "Approval required for shell command."
        )
    job = await enqueue_job(services, ctx, "shell_exec", ctx.job_payload(command=command))
    return reply("async-job", f"Queued shell command as job {job.id}.", job_id=job.id)


def _policy_summary(services: GatewayServices) -> str:
    p = services.config.policy
    on = lambda flag: "on" if flag else "off"  # noqa: E731
    lines = [
        f"Approval mode: {p.approval_mode} (default approvals {on(p.approval_default)})",
        f"Web search: {on(p.web_search_enabled)} via {p.web_search_provider}",
        f"File write: {on(p.file_write_enabled)}, approval {p.file_write_approval_mode} ({p.file_write_approval_scope} scope)"
        + (f", notes only under {p.file_write_notes_dir}/" if p.file_write_notes_only else ""),
        f"Shell: {on(p.shell_enabled)}",
        f"WASM: {on(p.wasm_enabled)}",
    ]
    return "\n".join(lines)


async def handle_command(services: GatewayServices, ctx: TurnContext, cmd: ParsedCommand) -> TurnResult:
    """执行斜杠命令。"""

    kind = cmd.kind
    sid = ctx.session_id

    if kind in ("task_add", "task_list", "task_done"):
        if services.tasks is None:
            return reply("command", "Tasks are not configured.")
        if kind == "task_add":
            item = await services.tasks.add(sid, cmd.text or "")
            return reply("command", f"Added task {item.id}: {item.text}")
        if kind == "task_list":
            items = await services.tasks.list(sid)
            if not items:
                return reply("command", "No tasks yet.")
            return reply("command", "\n".join(f"- [{'x' if t.done else ' '}] {t.id}: {t.text}" for t in items))
        done = await services.tasks.done(sid, cmd.target_id or "")
        return reply("command", f"Completed task {done.id}." if done else f"Task {cmd.target_id} not found.")

    if kind in ("note_add", "note_list"):
        if services.notes is None:
            return reply("command", "Notes are not configured.")
        if kind == "note_add":
            await services.notes.add(sid, cmd.text or "")
            return reply("command", "Saved note.")
        notes = await services.notes.list(sid)
        return reply("command", "\n".join(f"- {n}" for n in notes) if notes else "No notes yet.")

    if kind == "job_status":
        job = await services.jobs.get_job(cmd.target_id or "")
        return reply("command", describe_job(job) if job else f"Job {cmd.target_id} not found.")

    if kind == "job_cancel":
        job = await services.jobs.cancel_job(cmd.target_id or "")
        return reply("command", f"Job {job.id} is now {job.status}." if job else f"Job {cmd.target_id} not found.")

    if kind == "job_retry":
        job = await services.jobs.retry_job(cmd.target_id or "")
        if job is None:
            return reply("command", f"Job {cmd.target_id} cannot be retried.")
        services.state.remember_job(sid, job.id)
        return reply("async-job", f"Retry queued as job {job.id}.", job_id=job.id)

    if kind == "policy_status":
        return reply("command", _policy_summary(services))

    if kind == "approval_pending":
        records = await services.approvals.list_by_session(sid)
        if not records:
            return reply("command", "No pending approvals.")
        return reply("command", "\n".join(f"- {r.token}: {r.action} (expires {r.expires_at})" for r in records))

    if kind == "approval_revoke":
        revoked = services.state.leases.revoke(ctx.lease_key)
        return reply("command", f"Revoked {revoked} approval lease(s).")

    if kind == "web_search":
        return await _web_search_command(services, ctx, cmd.query or "", cmd.provider)

    if kind == "file_write":
        return await _file_write_command(services, ctx, cmd.relative_path or "", cmd.text or "")

    if kind == "file_send":
        return await _file_send_command(services, ctx, cmd.relative_path or "", cmd.caption)

    if kind == "shell":
        return await _shell_command(services, ctx, cmd.text or "")

    if kind == "approve":
        record = await services.approvals.consume(session_id=sid, token=cmd.token or "")
        if record is None:
            return reply("command", f"No pending approval for token {cmd.token}.")
        return await execute_approval(services, ctx, record)

    if kind == "reject":
        record = await services.approvals.consume(session_id=sid, token=cmd.token or "")
        if record is None:
            return reply("command", f"No pending approval for token {cmd.token}.")
        await cancel_rejected(services, record)
        return reply("command", f"Rejected {record.action} request {record.token}.")

    return reply("command", f"Unknown command: {kind}.")


async def cancel_rejected(services: GatewayServices, record: ApprovalRecord) -> None:
    """被拒绝的 RunSpec 审批：把 RunSpec 记录标记为 cancelled。"""

    if isinstance(record.payload, RunSpecApproval):
        await services.run_specs.set_status(record.payload.run_spec_run_id, "cancelled", message="Approval rejected")
