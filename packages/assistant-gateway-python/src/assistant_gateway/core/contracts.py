"""
核心契约（入站消息、job、planner 决策、通知、搜索结果）。

说明：
- 入站 payload 来自渠道适配层，字段名可能是 camelCase；模型同时接受 snake_case 与 camelCase；
- 所有模型默认拒绝未知字段（渠道 origin 除外：适配层可能附带额外字段）。
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

AuthPreference = Literal["auto", "oauth", "api_key"]
FileFormat = Literal["md", "txt", "doc"]
JobStatus = Literal["queued", "running", "succeeded", "failed", "cancelling", "cancelled"]
JobType = Literal["chat_turn", "run_spec", "web_search", "shell_exec"]
PlannerIntent = Literal["chat", "web_research", "status_query", "clarify", "command"]

TERMINAL_JOB_STATUSES = frozenset({"succeeded", "failed", "cancelled"})


class ChannelOrigin(BaseModel):
    """渠道来源（用于回发通知与派生 source/channel）。"""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    channel_id: str
    channel_context_id: str
    provider: Optional[str] = None
    transport: Optional[str] = None
    message_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None


class InboundMessage(BaseModel):
    """入站消息（渠道附带的未知字段直接丢弃）。"""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    session_id: str = Field(min_length=1)
    text: Optional[str] = Field(default=None, min_length=1)
    request_job: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("session_id")
    @classmethod
    def _strip_session(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("session_id must not be blank")
        return stripped


class JobProgress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    at: str
    message: str
    step: Optional[str] = None
    percent: Optional[float] = Field(default=None, ge=0, le=100)
    phase: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class JobError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    retryable: bool = False


class JobCreate(BaseModel):
    """入队请求。"""

    model_config = ConfigDict(extra="forbid")

    type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5, ge=0, le=10)


class Job(BaseModel):
    """异步 job（由 worker 消费）。"""

    model_config = ConfigDict(extra="forbid")

    id: str
    type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5, ge=0, le=10)
    status: JobStatus = "queued"
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    retry_of: Optional[str] = None
    worker_id: Optional[str] = None
    progress: Optional[JobProgress] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[JobError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class PlannerDecision(BaseModel):
    """
    意图规划结果。

    说明：
    - `needs_worker` 只是 planner 的建议；编排层会把 web_research / send_attachment 强制委派给 worker。
    """

    model_config = ConfigDict(extra="forbid")

    intent: PlannerIntent
    confidence: float = Field(ge=0.0, le=1.0)
    needs_worker: bool = False
    query: Optional[str] = None
    question: Optional[str] = None
    provider: Optional[str] = None
    send_attachment: bool = False
    file_format: Optional[FileFormat] = None
    file_name: Optional[str] = None
    reason: str = ""


class SearchResult(BaseModel):
    """web 搜索结果（已由搜索后端汇总为文本）。"""

    model_config = ConfigDict(extra="forbid")

    provider: str
    text: str


class Notification(BaseModel):
    """出站通知（文本或文件附件）。"""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    kind: Literal["text", "file"] = "text"
    text: Optional[str] = None
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
