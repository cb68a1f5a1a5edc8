"""
RunSpec 执行器：按顺序执行 step，逐步记录状态机。

语义：
- 每个 step：审批检查 → running（attempts=1）→ 进度上报 → 按类型分发；
- 声明了 `approval.required` 但未出现在 `approved_step_ids` 中的 step：立即失败（不阻塞等待），
  该 step 不产生任何副作用；调用方在拿到更多审批后重新调用（从头执行）；
- 任一 step 失败：step 与整体标记 failed，返回结构化失败结果（含已产出的文件路径），不回滚已完成的副作用；
- 外部调用（search / generation）的超时、重试与总预算由调用方包装，本模块不处理。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from assistant_gateway.core.collaborators import GenerationService, NotificationSink, SearchService
from assistant_gateway.core.contracts import Notification
from assistant_gateway.core.errors import RunSpecStepError, WorkspaceBoundaryError
from assistant_gateway.core.workspace import resolve_within, workspace_relative
from assistant_gateway.state.run_spec_store import RunSpecStore
from assistant_gateway.workflows.run_spec import RunSpecStep, RunSpecV1, ensure_extension, sanitize_file_name

logger = logging.getLogger(__name__)

SEARCH_PROVIDERS = ("searxng", "openai", "brave", "perplexity", "brightdata", "auto")
FILE_FORMATS = ("md", "txt", "doc")
MIME_TYPES = {"md": "text/markdown", "txt": "text/plain", "doc": "application/msword"}
COMPOSE_SOURCE_LIMIT = 2400
DEFAULT_GENERATED_SUBDIR = "notes/generated"

ProgressReporter = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class RunSpecResult:
    """
    执行结果。

    字段：
    - summary：`run_spec_completed|run_spec_failed|run_spec_approval_missing`
    - response_text：可直接回复给用户的英文文本
    - output_path：已写出文件相对 workspace 的路径（部分失败时也会返回）
    """

    summary: str
    response_text: str
    output_path: Optional[str] = None
    provider: Optional[str] = None


@dataclass
class _ExecState:
    query: Optional[str] = None
    provider: Optional[str] = None
    text: Optional[str] = None
    file_format: Optional[str] = None
    file_path: Optional[Path] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None


def normalize_provider(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value if value in SEARCH_PROVIDERS else None


def normalize_file_format(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value if value in FILE_FORMATS else None


def _format_label(file_format: str) -> str:
    if file_format == "md":
        return "markdown"
    if file_format == "txt":
        return "plain text"
    return "word-friendly plain text"


async def compose_document(
    *,
    generation: GenerationService,
    auth_session_id: str,
    auth_preference: str,
    query: str,
    provider: str,
    source_text: str,
    file_format: str,
) -> str:
    """
    把搜索结果整理成可交付的文档。

    说明：
    - generation 失败或返回空文本时，使用确定性的模板兜底（不会让 compose step 失败）。
    """

    prompt = "\n".join(
        [
            "You are formatting research notes for delivery as a file attachment.",
            f"Output format: {_format_label(file_format)}.",
            "Keep it concise and practical.",
            "Include sections: Summary, Top options, Comparison, Sources.",
            "Do not invent sources; only use what is provided.",
            "",
            f"Query: {query}",
            f"Provider: {provider}",
            "",
            "Search results:",
            source_text,
        ]
    )
    try:
        generated = await generation.generate_text(auth_session_id, prompt, auth_preference=auth_preference)
    except Exception:
        logger.warning("compose generation failed; using template fallback", exc_info=True)
        generated = None
    text = (generated or "").strip()
    if text:
        return text
    return "\n".join(
        [
            f"Research notes for: {query}",
            f"Source provider: {provider}",
            "",
            "Summary:",
            source_text[:COMPOSE_SOURCE_LIMIT],
        ]
    )


async def execute_run_spec(
    *,
    run_id: str,
    session_id: str,
    auth_session_id: str,
    auth_preference: str,
    run_spec: RunSpecV1,
    approved_step_ids: Iterable[str],
    workspace_dir: str | Path,
    search: SearchService,
    generation: GenerationService,
    notifications: NotificationSink,
    run_spec_store: RunSpecStore,
    report_progress: ProgressReporter,
    generated_subdir: str = DEFAULT_GENERATED_SUBDIR,
) -> RunSpecResult:
    """
    执行一个 RunSpec。

    参数：
    - run_id：RunSpec store 中的记录 id
    - session_id：渠道 session（附件回发目标）
    - auth_session_id：外部调用使用的 auth 身份
    - approved_step_ids：已批准的 step id 集合
    - workspace_dir：workspace 根目录；生成文件落在 `<workspace>/<generated_subdir>` 下
    - report_progress：进度回调（`{"step", "message", "percent"}`）
    """

    approved = {str(x).strip() for x in approved_step_ids if str(x).strip()}
    workspace = Path(workspace_dir).resolve()
    state = _ExecState()
    total = len(run_spec.steps)

    await run_spec_store.set_status(run_id, "running", message=f"Running {total} steps")

    for index, step in enumerate(run_spec.steps):
        percent = round(index / max(1, total) * 100)

        if step.requires_approval and step.id not in approved:
            await run_spec_store.update_step(run_id, step.id, status="approval_required", message=f"Missing approval for {step.id}")
            await run_spec_store.set_status(run_id, "failed", message=f"approval_missing:{step.id}")
            return RunSpecResult(
                summary="run_spec_approval_missing",
                response_text=f"Run blocked: missing approval for step {step.id}.",
            )
        if step.requires_approval:
            await run_spec_store.update_step(run_id, step.id, status="approved", message="Approved")

        await run_spec_store.update_step(run_id, step.id, status="running", message=f"Executing {step.type}", attempts=1)
        await report_progress({"step": f"{step.type}:{step.id}", "message": f"Executing {step.name}...", "percent": percent})

        try:
            message, output = await _dispatch_step(
                step,
                state,
                session_id=session_id,
                auth_session_id=auth_session_id,
                auth_preference=auth_preference,
                workspace=workspace,
                generated_subdir=generated_subdir,
                search=search,
                generation=generation,
                notifications=notifications,
            )
        except Exception as exc:
            detail = exc.code if isinstance(exc, RunSpecStepError) else str(exc) or type(exc).__name__
            logger.info("run spec %s failed at step %s: %s", run_id, step.id, detail)
            await run_spec_store.update_step(run_id, step.id, status="failed", message=detail)
            await run_spec_store.set_status(run_id, "failed", message=detail)
            return RunSpecResult(
                summary="run_spec_failed",
                response_text=f"Run failed at step {step.id} ({step.type}): {detail}",
                output_path=workspace_relative(workspace, state.file_path) if state.file_path else None,
                provider=state.provider,
            )
        await run_spec_store.update_step(run_id, step.id, status="completed", message=message, output=output)

    await run_spec_store.set_status(run_id, "completed", message="All steps completed")
    await report_progress({"step": "run_spec.completed", "message": "Run complete.", "percent": 100})

    relative = workspace_relative(workspace, state.file_path) if state.file_path else None
    if relative and state.provider:
        text = f"Run complete via {state.provider}. Wrote workspace/{relative} and sent it as an attachment."
    else:
        text = "Run complete."
    return RunSpecResult(summary="run_spec_completed", response_text=text, output_path=relative, provider=state.provider)


async def _dispatch_step(
    step: RunSpecStep,
    state: _ExecState,
    *,
    session_id: str,
    auth_session_id: str,
    auth_preference: str,
    workspace: Path,
    generated_subdir: str,
    search: SearchService,
    generation: GenerationService,
    notifications: NotificationSink,
) -> tuple[str, Optional[Dict[str, Any]]]:
    """执行单个 step，返回 (完成消息, 输出)；失败抛 `RunSpecStepError` 或协作方异常。"""

    if step.type == "web.search":
        query = str(step.input.get("query") or "").strip()
        provider = normalize_provider(step.input.get("provider")) or "auto"
        if not query:
            raise RunSpecStepError("run_spec_missing_query")
        result = await search.search(query, provider=provider, auth_session_id=auth_session_id, auth_preference=auth_preference)
        if result is None or not result.text.strip():
            raise RunSpecStepError("run_spec_empty_search_result")
        state.query = query
        state.provider = result.provider
        state.text = result.text.strip()
        return f"Search done via {result.provider}", {"provider": result.provider}

    if step.type == "doc.compose":
        if not state.text or not state.query:
            raise RunSpecStepError("run_spec_missing_search_context")
        file_format = normalize_file_format(step.input.get("fileFormat")) or "md"
        state.text = await compose_document(
            generation=generation,
            auth_session_id=auth_session_id,
            auth_preference=auth_preference,
            query=state.query,
            provider=state.provider or "auto",
            source_text=state.text,
            file_format=file_format,
        )
        state.file_format = file_format
        return f"Drafted {file_format.upper()} document", None

    if step.type == "file.write":
        if not state.text:
            raise RunSpecStepError("run_spec_missing_document_text")
        file_format = normalize_file_format(step.input.get("fileFormat")) or state.file_format or "md"
        base = sanitize_file_name(step.input.get("fileName") if isinstance(step.input.get("fileName"), str) else "research_note")
        file_name = ensure_extension(base or "research_note", file_format)
        try:
            target = resolve_within(workspace, Path(generated_subdir) / file_name)
        except WorkspaceBoundaryError as exc:
            raise RunSpecStepError("run_spec_workspace_boundary_violation") from exc
        target.parent.mkdir(parents=True, exist_ok=True)
        content = state.text if state.text.endswith("\n") else f"{state.text}\n"
        target.write_text(content, encoding="utf-8")
        state.file_path = target
        state.file_name = file_name
        state.file_format = file_format
        return f"Wrote {file_name}", {"fileName": file_name}

    if step.type == "channel.send_attachment":
        if state.file_path is None or not state.file_name:
            raise RunSpecStepError("run_spec_missing_output_file")
        caption = str(step.input.get("caption") or f"Research doc: {state.query or 'result'}").strip()
        await notifications.enqueue(
            Notification(
                session_id=session_id,
                kind="file",
                file_path=str(state.file_path),
                file_name=state.file_name,
                mime_type=MIME_TYPES[state.file_format or "md"],
                caption=caption,
            )
        )
        state.caption = caption
        return f"Attachment queued ({state.file_name})", {"fileName": state.file_name}

    raise RunSpecStepError(f"run_spec_unsupported_step:{step.type}")
