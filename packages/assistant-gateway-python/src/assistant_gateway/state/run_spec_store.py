"""
RunSpec 执行记录存储（step 状态机 + 时间线）。

说明：
- 记录以 run id 为 key；`put` 对已存在的记录保留创建时间、step 状态与时间线（用于审批后重新入队）；
- 时间线事件 seq 从 1 开始严格递增；
- 未知 run id 的更新返回 None。
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from assistant_gateway.core.utils import format_rfc3339, utc_now
from assistant_gateway.state.serial import SerialWriter, SnapshotFile
from assistant_gateway.workflows.run_spec import RunSpecV1, StepStatus

RunSpecStatus = Literal["queued", "awaiting_approval", "running", "completed", "failed", "cancelled"]
TimelineEventType = Literal[
    "started", "step_status", "note", "approval_requested", "approval_granted", "completed", "failed", "cancelled"
]

_STEP_TERMINAL = frozenset({"completed", "failed", "cancelled", "skipped"})


class StepState(BaseModel):
    """单个 step 的执行状态。"""

    model_config = ConfigDict(extra="forbid")

    step_id: str
    status: StepStatus = "pending"
    attempts: int = 0
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    message: Optional[str] = None
    output: Optional[Dict[str, Any]] = None


class TimelineEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seq: int
    at: str
    type: TimelineEventType
    step_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class RunSpecRecord(BaseModel):
    """RunSpec 的一次执行记录。"""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    session_id: str
    job_id: Optional[str] = None
    status: RunSpecStatus
    spec: RunSpecV1
    approved_step_ids: List[str] = Field(default_factory=list)
    step_states: Dict[str, StepState] = Field(default_factory=dict)
    events: List[TimelineEvent] = Field(default_factory=list)
    created_at: str
    updated_at: str


def _unique_step_ids(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for value in values:
        normalized = str(value or "").strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        out.append(normalized)
    return out


def _initial_step_states(spec: RunSpecV1, approved: Iterable[str]) -> Dict[str, StepState]:
    approved_set = set(approved)
    states: Dict[str, StepState] = {}
    for step in spec.steps:
        status: StepStatus = "pending"
        if step.requires_approval:
            status = "approved" if step.id in approved_set else "approval_required"
        states[step.id] = StepState(step_id=step.id, status=status)
    return states


class RunSpecStore:
    """
    RunSpec 记录存储。

    参数：
    - state_path：快照文件路径；None 表示仅内存
    - clock：返回当前 UTC 时间（测试可注入）
    """

    def __init__(self, *, state_path: Optional[Path] = None, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._records: Dict[str, RunSpecRecord] = {}
        snapshot = SnapshotFile(Path(state_path)) if state_path is not None else None
        if snapshot is not None:
            loaded = snapshot.load() or {}
            for item in loaded.get("run_specs") or []:
                rec = RunSpecRecord.model_validate(item)
                self._records[rec.run_id] = rec
        self._writer = SerialWriter(snapshot=snapshot, encode=self._encode)

    def _encode(self) -> Dict[str, Any]:
        return {"run_specs": [r.model_dump(mode="json") for r in self._records.values()]}

    def _now(self) -> str:
        return format_rfc3339(self._clock())

    @staticmethod
    def _push_event(record: RunSpecRecord, at: str, event_type: str, **fields: Any) -> None:
        record.events.append(TimelineEvent(seq=len(record.events) + 1, at=at, type=event_type, **fields))  # type: ignore[arg-type]
        record.updated_at = at

    async def put(
        self,
        *,
        run_id: str,
        session_id: str,
        spec: RunSpecV1,
        status: str,
        approved_step_ids: Optional[List[str]] = None,
        job_id: Optional[str] = None,
    ) -> RunSpecRecord:
        """
        创建或覆盖 RunSpec 记录。

        说明：
        - 已存在时保留 created_at / step_states / events / job_id（未显式传入时）；
        - 已批准的 step 若仍是 pending/approval_required，则标记为 approved。
        """

        def _op() -> RunSpecRecord:
            existing = self._records.get(run_id)
            now = self._now()
            created_at = existing.created_at if existing else now
            approved = _unique_step_ids(
                approved_step_ids if approved_step_ids is not None else (existing.approved_step_ids if existing else [])
            )
            step_states = dict(existing.step_states) if existing else _initial_step_states(spec, approved)
            for step_id in approved:
                current = step_states.get(step_id)
                if current is not None and current.status in ("pending", "approval_required"):
                    step_states[step_id] = current.model_copy(
                        update={"status": "approved", "message": current.message or "Approved before execution"}
                    )
            events = list(existing.events) if existing else [
                TimelineEvent(seq=1, at=created_at, type="started", message="RunSpec created")
            ]
            record = RunSpecRecord(
                run_id=run_id,
                session_id=session_id,
                job_id=job_id if job_id is not None else (existing.job_id if existing else None),
                status=status,  # type: ignore[arg-type]
                spec=spec,
                approved_step_ids=approved,
                step_states=step_states,
                events=events,
                created_at=created_at,
                updated_at=now,
            )
            self._records[run_id] = record
            return record.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def get(self, run_id: str) -> Optional[RunSpecRecord]:
        def _op() -> Optional[RunSpecRecord]:
            rec = self._records.get(run_id)
            return rec.model_copy(deep=True) if rec is not None else None

        return await self._writer.submit(_op, mutates=False)

    async def set_status(
        self,
        run_id: str,
        status: str,
        *,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunSpecRecord]:
        """设置整体状态并追加对应时间线事件（终态映射为同名事件，其余为 note）。"""

        event_type = status if status in ("completed", "failed", "cancelled") else "note"

        def _op() -> Optional[RunSpecRecord]:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            rec.status = status  # type: ignore[assignment]
            self._push_event(rec, self._now(), event_type, message=message, payload=payload)
            return rec.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def append_event(
        self,
        run_id: str,
        event_type: str,
        *,
        step_id: Optional[str] = None,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunSpecRecord]:
        def _op() -> Optional[RunSpecRecord]:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            self._push_event(rec, self._now(), event_type, step_id=step_id, message=message, payload=payload)
            return rec.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def update_step(
        self,
        run_id: str,
        step_id: str,
        *,
        status: str,
        message: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        attempts: Optional[int] = None,
    ) -> Optional[RunSpecRecord]:
        """
        更新 step 状态并追加 `step_status` 事件。

        说明：
        - 首次进入 running 时记录 started_at；进入终态时记录 ended_at（并补齐 started_at）；
        - 未知 step id 不做修改，原样返回记录。
        """

        def _op() -> Optional[RunSpecRecord]:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            existing = rec.step_states.get(step_id)
            if existing is None:
                return rec.model_copy(deep=True)
            at = self._now()
            nxt = existing.model_copy(
                update={
                    "status": status,
                    "attempts": attempts if attempts is not None else existing.attempts,
                    "message": message if message is not None else existing.message,
                    "output": output if output is not None else existing.output,
                }
            )
            if status == "running" and not nxt.started_at:
                nxt.started_at = at
            if status in _STEP_TERMINAL:
                nxt.ended_at = at
                if not nxt.started_at:
                    nxt.started_at = at
            rec.step_states[step_id] = nxt
            self._push_event(rec, at, "step_status", step_id=step_id, message=message, payload={"status": status})
            return rec.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def grant_step_approval(self, run_id: str, step_id: str) -> Optional[RunSpecRecord]:
        """记录人工批准某个 step。"""

        def _op() -> Optional[RunSpecRecord]:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            if step_id not in rec.approved_step_ids:
                rec.approved_step_ids.append(step_id)
            step = rec.step_states.get(step_id)
            if step is not None and step.status in ("approval_required", "pending"):
                rec.step_states[step_id] = step.model_copy(update={"status": "approved", "message": "Approved by user"})
            self._push_event(rec, self._now(), "approval_granted", step_id=step_id, message="Step approved")
            return rec.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def flush(self) -> None:
        await self._writer.flush()
