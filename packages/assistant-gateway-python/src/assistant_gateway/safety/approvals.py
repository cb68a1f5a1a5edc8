"""
Approval Gate：一次性、带 TTL 的审批 token。

说明：
- 每条审批记录携带强类型 payload（按 `action` 区分的 tagged union），消费方拿到的就是可执行的参数；
- token 单次有效：`consume*` 成功后记录即被删除；
- 每次访问都会先清理过期记录；未知/过期/跨会话的 token 一律返回 None（不是错误）；
- 状态通过 `SerialWriter` 单写者串行修改，可选 JSON 快照持久化。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from assistant_gateway.core.utils import clamp, format_rfc3339, parse_rfc3339, short_token, utc_now
from assistant_gateway.state.serial import SerialWriter, SnapshotFile
from assistant_gateway.workflows.run_spec import RunSpecV1

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_TTL_SEC = 600


class WebSearchApproval(BaseModel):
    """待审批的 web 搜索（批准后入队 `web_search` job）。"""

    model_config = ConfigDict(extra="forbid")

    action: Literal["web_search"] = "web_search"
    query: str = Field(min_length=1)
    provider: str = "auto"


class FileWriteApproval(BaseModel):
    """待审批的 workspace 文件写入（相对 workspace 根目录）。"""

    model_config = ConfigDict(extra="forbid")

    action: Literal["file_write"] = "file_write"
    relative_path: str = Field(min_length=1)
    text: str


class FileSendApproval(BaseModel):
    """待审批的 workspace 文件外发（作为渠道附件）。"""

    model_config = ConfigDict(extra="forbid")

    action: Literal["file_send"] = "file_send"
    relative_path: str = Field(min_length=1)
    caption: Optional[str] = None


class RunSpecApproval(BaseModel):
    """
    待审批的 RunSpec。

    字段：
    - run_spec_run_id：RunSpec store 中的 run id（状态为 awaiting_approval）
    - approved_step_ids：已由策略/lease 自动放行的 step
    - pending_step_ids：仍需人工批准的 step
    """

    model_config = ConfigDict(extra="forbid")

    action: Literal["run_spec"] = "run_spec"
    run_spec_run_id: str = Field(min_length=1)
    run_spec: RunSpecV1
    approved_step_ids: List[str] = Field(default_factory=list)
    pending_step_ids: List[str] = Field(default_factory=list)
    capability: str = "file_write"


class ShellExecApproval(BaseModel):
    """待审批的 shell 命令；`override_rule_id` 非空表示批准即解除该沙箱规则（仅本次）。"""

    model_config = ConfigDict(extra="forbid")

    action: Literal["shell_exec"] = "shell_exec"
    command: str
    override_rule_id: Optional[str] = None


ApprovalPayload = Annotated[
    Union[WebSearchApproval, FileWriteApproval, FileSendApproval, RunSpecApproval, ShellExecApproval],
    Field(discriminator="action"),
]

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(ApprovalPayload)


class ApprovalRecord(BaseModel):
    """审批记录（token 8 位，人类可在聊天中输入）。"""

    model_config = ConfigDict(extra="forbid")

    token: str
    session_id: str
    payload: ApprovalPayload
    created_at: str
    expires_at: str

    @property
    def action(self) -> str:
        return self.payload.action


class ApprovalGate:
    """
    审批 token 存储。

    参数：
    - ttl_sec：默认有效期（秒）
    - state_path：快照文件路径；None 表示仅内存
    - clock：返回当前 UTC 时间（测试可注入）
    """

    def __init__(
        self,
        *,
        ttl_sec: int = DEFAULT_APPROVAL_TTL_SEC,
        state_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ttl_sec = int(ttl_sec)
        self._clock = clock
        self._records: List[ApprovalRecord] = []
        snapshot = SnapshotFile(Path(state_path)) if state_path is not None else None
        if snapshot is not None:
            loaded = snapshot.load() or {}
            self._records = [ApprovalRecord.model_validate(x) for x in loaded.get("approvals") or []]
        self._writer = SerialWriter(snapshot=snapshot, encode=self._encode)

    def _encode(self) -> Dict[str, Any]:
        return {"approvals": [r.model_dump(mode="json") for r in self._records]}

    def _prune_expired(self) -> None:
        now = self._clock()
        kept: List[ApprovalRecord] = []
        for rec in self._records:
            expires = parse_rfc3339(rec.expires_at)
            if expires is not None and expires >= now:
                kept.append(rec)
        self._records = kept

    def _latest_index(self, session_id: str) -> Optional[int]:
        for idx in range(len(self._records) - 1, -1, -1):
            if self._records[idx].session_id == session_id:
                return idx
        return None

    async def create(self, *, session_id: str, payload: Any, ttl_sec: Optional[int] = None) -> ApprovalRecord:
        """
        创建审批记录。

        参数：
        - session_id：审批归属的会话（只有同一会话可以消费）
        - payload：tagged-union payload（模型实例或 dict）
        - ttl_sec：覆盖默认有效期
        """

        record_payload = _PAYLOAD_ADAPTER.validate_python(payload)
        ttl = int(ttl_sec if ttl_sec is not None else self._ttl_sec)

        def _op() -> ApprovalRecord:
            self._prune_expired()
            live = {r.token for r in self._records}
            token = short_token()
            while token in live:
                token = short_token()
            created = self._clock()
            rec = ApprovalRecord(
                token=token,
                session_id=session_id,
                payload=record_payload,
                created_at=format_rfc3339(created),
                expires_at=format_rfc3339(created + timedelta(seconds=ttl)),
            )
            self._records.append(rec)
            return rec

        rec = await self._writer.submit(_op)
        logger.debug("approval created: token=%s action=%s session=%s", rec.token, rec.action, session_id)
        return rec

    async def consume(self, *, session_id: str, token: str) -> Optional[ApprovalRecord]:
        """按 token 消费（单次有效）；token 必须属于该会话。"""

        wanted = str(token or "").strip()

        def _op() -> Optional[ApprovalRecord]:
            self._prune_expired()
            for idx, rec in enumerate(self._records):
                if rec.token == wanted and rec.session_id == session_id:
                    return self._records.pop(idx)
            return None

        return await self._writer.submit(_op)

    async def peek_latest(self, session_id: str) -> Optional[ApprovalRecord]:
        """查看会话最近创建的待审批记录（不消费）。"""

        def _op() -> Optional[ApprovalRecord]:
            self._prune_expired()
            idx = self._latest_index(session_id)
            return self._records[idx] if idx is not None else None

        return await self._writer.submit(_op)

    async def consume_latest(self, session_id: str) -> Optional[ApprovalRecord]:
        """消费会话最近创建的待审批记录。"""

        def _op() -> Optional[ApprovalRecord]:
            self._prune_expired()
            idx = self._latest_index(session_id)
            return self._records.pop(idx) if idx is not None else None

        return await self._writer.submit(_op)

    async def consume_latest_if(
        self, session_id: str, predicate: Callable[[ApprovalRecord], bool]
    ) -> Tuple[Optional[ApprovalRecord], bool]:
        """
        检查并消费会话最近的待审批记录（检查与消费在同一次写者操作内完成）。

        返回：
        - (record, consumed)：没有待审批记录时为 (None, False)；
          `predicate(record)` 为假时记录保留，返回 (record, False)
        """

        def _op() -> Tuple[Optional[ApprovalRecord], bool]:
            self._prune_expired()
            idx = self._latest_index(session_id)
            if idx is None:
                return None, False
            rec = self._records[idx]
            if not predicate(rec):
                return rec, False
            return self._records.pop(idx), True

        return await self._writer.submit(_op)

    async def discard_latest(self, session_id: str) -> Optional[ApprovalRecord]:
        """丢弃（拒绝）会话最近的待审批记录；语义等同 `consume_latest`。"""

        return await self.consume_latest(session_id)

    async def list_by_session(self, session_id: str, limit: int = 10) -> List[ApprovalRecord]:
        """列出会话的待审批记录（最新在前，limit 限制在 1..100）。"""

        bounded = clamp(limit, 1, 100)

        def _op() -> List[ApprovalRecord]:
            self._prune_expired()
            return [r for r in reversed(self._records) if r.session_id == session_id][:bounded]

        return await self._writer.submit(_op)

    async def list_pending(self, limit: int = 100) -> List[ApprovalRecord]:
        """列出所有会话的待审批记录（最新在前，limit 限制在 1..500）。"""

        bounded = clamp(limit, 1, 500)

        def _op() -> List[ApprovalRecord]:
            self._prune_expired()
            return list(reversed(self._records))[:bounded]

        return await self._writer.submit(_op)

    async def flush(self) -> None:
        """强制落盘。"""

        await self._writer.flush()
