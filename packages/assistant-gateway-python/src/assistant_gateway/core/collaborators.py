"""
外部协作方接口（Protocol）。

说明：
- 编排核心只依赖这些窄接口，不实现 LLM、搜索后端、渠道传输或持久化队列；
- 所有方法均为 async；实现方可以抛异常，编排层负责在边界处捕获并转成用户可读文本。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from assistant_gateway.core.contracts import Job, JobCreate, Notification, PlannerDecision, SearchResult


@runtime_checkable
class JobQueue(Protocol):
    """持久化 job 队列。"""

    async def create_job(self, job: JobCreate) -> Job: ...

    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def cancel_job(self, job_id: str) -> Optional[Job]: ...

    async def retry_job(self, job_id: str) -> Optional[Job]: ...

    async def list_jobs(self, *, limit: int = 50) -> List[Job]: ...

    async def claim_next_queued_job(self, worker_id: str) -> Optional[Job]: ...

    async def update_progress(self, job_id: str, progress: Mapping[str, Any]) -> Optional[Job]: ...

    async def complete_job(self, job_id: str, result: Dict[str, Any]) -> Optional[Job]: ...

    async def fail_job(self, job_id: str, *, code: str, message: str, retryable: bool = False) -> Optional[Job]: ...

    async def mark_cancelled_after_run(self, job_id: str, partial_result: Optional[Dict[str, Any]] = None) -> Optional[Job]: ...

    async def status_counts(self) -> Dict[str, int]: ...


@runtime_checkable
class IdentityResolver(Protocol):
    """把渠道 session id 解析为持久 auth 身份（跨渠道别名统一 ledger 与 lease 的作用域）。"""

    async def resolve_auth_session(self, channel_session_id: str) -> str: ...


@runtime_checkable
class IntentPlanner(Protocol):
    async def plan(
        self,
        session_id: str,
        message: str,
        *,
        auth_preference: str = "auto",
        has_active_job: bool = False,
    ) -> PlannerDecision: ...


@runtime_checkable
class SearchService(Protocol):
    async def search(
        self,
        query: str,
        *,
        provider: str,
        auth_session_id: str,
        auth_preference: str = "auto",
    ) -> Optional[SearchResult]: ...


@runtime_checkable
class GenerationService(Protocol):
    """文本生成（LLM）。返回 None 表示没有可用回复。"""

    async def generate_text(self, session_id: str, prompt: str, *, auth_preference: str = "auto") -> Optional[str]: ...


@runtime_checkable
class NotificationSink(Protocol):
    async def enqueue(self, notification: Notification) -> None: ...


@runtime_checkable
class ConversationSink(Protocol):
    """会话记录（direction：inbound|outbound|system）。"""

    async def append(self, session_id: str, direction: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None: ...


@dataclass(frozen=True)
class TaskItem:
    id: str
    text: str
    done: bool = False


@runtime_checkable
class TaskStore(Protocol):
    async def add(self, session_id: str, text: str) -> TaskItem: ...

    async def list(self, session_id: str) -> List[TaskItem]: ...

    async def done(self, session_id: str, task_id: str) -> Optional[TaskItem]: ...


@runtime_checkable
class NoteStore(Protocol):
    async def add(self, session_id: str, text: str) -> None: ...

    async def list(self, session_id: str) -> List[str]: ...


@dataclass(frozen=True)
class PageResult:
    page: str
    remaining: int


@runtime_checkable
class PagedResponses(Protocol):
    """长回复分页（`#next` 逐页取出）。"""

    async def set_pages(self, session_id: str, pages: List[str]) -> None: ...

    async def pop_next(self, session_id: str) -> Optional[PageResult]: ...

    async def clear(self, session_id: str) -> None: ...


@dataclass(frozen=True)
class ShellOutcome:
    exit_code: int
    output: str


@runtime_checkable
class ShellRunner(Protocol):
    """在 workspace 内执行 shell 命令（隔离与资源限制由实现方负责）。"""

    async def run(self, command: str, *, cwd: str) -> ShellOutcome: ...
