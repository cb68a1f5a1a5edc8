"""
斜杠命令解析（确定性、零成本；在 planner 之前执行）。

支持：
- `/task add <text>` `/task list` `/task done <id>`
- `/note add <text>` `/note list`
- `/job status|cancel|retry <id>`
- `/policy`，`/approval`，`/approval pending`，`/approval revoke`
- `/web [--provider=<p>] <query>`
- `/write <path> <text>`，`/file write <path> <text>`，`/file send <path> [caption]`
- `/shell <command>`
- `approve <token>` / `/approve <token>`，`reject <token>` / `/reject <token>`
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_PROVIDER_FLAG_RE = re.compile(r"^--provider=(searxng|openai|brave|perplexity|brightdata)\s+", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedCommand:
    """
    解析结果。

    字段按 kind 使用：
    - text：task_add / note_add / file_write / shell
    - target_id：task_done / job_*
    - query / provider：web_search
    - relative_path / caption：file_write / file_send
    - token：approve / reject
    """

    kind: str
    text: Optional[str] = None
    target_id: Optional[str] = None
    query: Optional[str] = None
    provider: Optional[str] = None
    relative_path: Optional[str] = None
    caption: Optional[str] = None
    token: Optional[str] = None


def _rest(value: str, prefix: str) -> Optional[str]:
    """大小写不敏感地匹配前缀，返回去掉前缀后的非空剩余部分。"""

    if not value.lower().startswith(prefix):
        return None
    rest = value[len(prefix):].strip()
    return rest or None


def _split_path(payload: str) -> tuple[str, str]:
    head, _, tail = payload.partition(" ")
    return head.strip(), tail.strip()


_EXACT = {
    "/task list": "task_list",
    "/note list": "note_list",
    "/policy": "policy_status",
    "/approval": "approval_pending",
    "/approval pending": "approval_pending",
    "/approval revoke": "approval_revoke",
}

_WITH_ID = (
    ("/task done ", "task_done"),
    ("/job status ", "job_status"),
    ("/job cancel ", "job_cancel"),
    ("/job retry ", "job_retry"),
)


def parse_command(text: str) -> Optional[ParsedCommand]:
    """解析命令；不是命令（或参数缺失）时返回 None。"""

    value = str(text or "").strip()
    if not value:
        return None
    lowered = value.lower()

    kind = _EXACT.get(lowered)
    if kind is not None:
        return ParsedCommand(kind=kind)

    for prefix, kind in _WITH_ID:
        rest = _rest(value, prefix)
        if rest:
            return ParsedCommand(kind=kind, target_id=rest)

    for prefix, kind in (("/task add ", "task_add"), ("/note add ", "note_add"), ("/shell ", "shell")):
        rest = _rest(value, prefix)
        if rest:
            return ParsedCommand(kind=kind, text=rest)

    rest = _rest(value, "/web ")
    if rest:
        m = _PROVIDER_FLAG_RE.match(rest)
        provider = m.group(1).lower() if m else None
        query = rest[m.end():].strip() if m else rest
        if query:
            return ParsedCommand(kind="web_search", query=query, provider=provider)

    for prefix in ("/write ", "/file write "):
        rest = _rest(value, prefix)
        if rest:
            path, body = _split_path(rest)
            if path and body:
                return ParsedCommand(kind="file_write", relative_path=path, text=body)

    rest = _rest(value, "/file send ")
    if rest:
        path, caption = _split_path(rest)
        return ParsedCommand(kind="file_send", relative_path=path, caption=caption or None)

    for prefixes, kind in ((("/approve ", "approve "), "approve"), (("/reject ", "reject "), "reject")):
        for prefix in prefixes:
            rest = _rest(value, prefix)
            if rest:
                return ParsedCommand(kind=kind, token=rest)

    return None
