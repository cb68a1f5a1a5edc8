"""
编排器依赖容器与回合上下文。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from assistant_gateway.config.loader import GatewayConfig
from assistant_gateway.core.collaborators import (
    ConversationSink,
    GenerationService,
    IdentityResolver,
    IntentPlanner,
    JobQueue,
    NoteStore,
    NotificationSink,
    PagedResponses,
    TaskStore,
)
from assistant_gateway.core.contracts import InboundMessage
from assistant_gateway.orchestrator.emitter import PhaseEmitter, PhaseHook
from assistant_gateway.orchestrator.state import OrchestratorState
from assistant_gateway.safety.approvals import ApprovalGate
from assistant_gateway.state.run_ledger import RunLedger
from assistant_gateway.state.run_spec_store import RunSpecStore


@dataclass
class GatewayServices:
    """
    TurnPipeline 的全部依赖。

    说明：
    - `jobs / approvals / run_specs / config / state` 为必需项；
    - 其余协作方可为空：缺失时对应功能回复 "not configured" 或走降级路径。
    """

    config: GatewayConfig
    jobs: JobQueue
    approvals: ApprovalGate
    run_specs: RunSpecStore
    state: OrchestratorState = field(default_factory=OrchestratorState)
    ledger: Optional[RunLedger] = None
    identity: Optional[IdentityResolver] = None
    planner: Optional[IntentPlanner] = None
    generation: Optional[GenerationService] = None
    notifications: Optional[NotificationSink] = None
    conversations: Optional[ConversationSink] = None
    tasks: Optional[TaskStore] = None
    notes: Optional[NoteStore] = None
    paged_responses: Optional[PagedResponses] = None
    hooks: Sequence[PhaseHook] = ()

    @property
    def workspace_dir(self) -> Path:
        return Path(self.config.workspace.dir).resolve()


@dataclass
class TurnContext:
    """
    单个回合在各 phase 之间传递的上下文。

    字段：
    - session_id：渠道 session id（回复、分页、审批 token 的归属）
    - auth_session_id：持久 auth 身份（ledger session key）
    - lease_key：审批 lease 的 key（由 `file_write_approval_scope` 决定）
    """

    inbound: InboundMessage
    text: str
    provider: str
    source: str
    channel: str
    auth_session_id: str
    auth_preference: str
    queue_mode: str
    idempotency_key: Optional[str]
    emitter: PhaseEmitter
    lease_key: str
    run_id: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.inbound.session_id

    def job_payload(self, **extra: Any) -> Dict[str, Any]:
        """入队 job 的公共 payload 字段。"""

        payload: Dict[str, Any] = {
            "sessionId": self.session_id,
            "authSessionId": self.auth_session_id,
            "authPreference": self.auth_preference,
        }
        if self.run_id:
            payload["gatewayRunId"] = self.run_id
        payload.update(extra)
        return payload


@dataclass
class TurnResult:
    """
    `handle_inbound` 的返回值。

    mode：
    - chat：内联回复
    - command：斜杠命令 / 分页 / 状态查询
    - approval：已创建审批请求（`approval_token` 非空）
    - async-job：已入队（`job_id` 非空）
    - busy：session 正忙（steer），未排队
    - duplicate：幂等重放（`reused=True`）
    """

    accepted: bool
    mode: str
    response: Optional[str] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None
    active_run_id: Optional[str] = None
    acquired: Optional[bool] = None
    reused: bool = False
    approval_token: Optional[str] = None
