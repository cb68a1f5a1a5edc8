"""
Run Ledger：每个 session 至多一个活跃 run，幂等重试，append-only 审计事件。

说明：
- `start_run` 的三种结果：
  1) (session_key, idempotency_key) 已存在 → 复用该 run（`reused=True`，`acquired` 表示该 run 是否仍未终止）
  2) session 已有活跃 run → 新建一条立即标记为 `blocked` 的记录（引用冲突 run id），不注册为活跃
  3) 否则新建并注册为该 session 的活跃 run（`acquired=True`）
- 事件 seq 在单个 run 内严格递增（run 启动事件占 seq 1）；
- 未知 run id 的事件追加/终止是静默 no-op（返回 None），账本簿记不得中断用户回合；
- 每次操作都在单写者队列中先执行保留期清理（prune）与容量裁剪（trim），对调用方是原子的。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from assistant_gateway.core.utils import clamp, format_rfc3339, new_id, parse_rfc3339, utc_now
from assistant_gateway.state.serial import SerialWriter, SnapshotFile

logger = logging.getLogger(__name__)

QueueMode = Literal["steer", "collect", "followup"]
RunStatus = Literal["running", "completed", "failed", "cancelled", "blocked"]
RunPhase = Literal[
    "normalize",
    "session",
    "directives",
    "plan",
    "policy",
    "route",
    "persist",
    "dispatch",
    "completed",
    "failed",
    "cancelled",
]
RunEventType = Literal[
    "started", "phase", "queued", "progress", "tool_event", "partial", "completed", "failed", "cancelled", "note"
]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "blocked"})

DEFAULT_MAX_RUNS = 6000
DEFAULT_RETENTION_DAYS = 21


class MemorySnippetRef(BaseModel):
    """run 启动时注入的记忆片段引用（只存来源与 hash）。"""

    model_config = ConfigDict(extra="forbid")

    source: str
    hash: str
    kind: Optional[Literal["fact", "preference", "todo", "decision"]] = None


class SkillsSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hash: str = "none"
    content: List[str] = Field(default_factory=list)


class MemorySnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: Optional[str] = None
    snippets: List[MemorySnippetRef] = Field(default_factory=list)


class RunSnapshot(BaseModel):
    """run 启动时冻结的输入快照（策略、skills、记忆）。"""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    run_id: str
    session_key: str
    idempotency_key: str
    model: Optional[str] = None
    provider: Optional[str] = None
    tool_policy_snapshot: Dict[str, Any] = Field(default_factory=dict)
    skills_snapshot: SkillsSnapshot = Field(default_factory=SkillsSnapshot)
    memory_snapshot: MemorySnapshot = Field(default_factory=MemorySnapshot)
    created_at: str


class RunEvent(BaseModel):
    """审计事件（append-only）。"""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    seq: int
    at: str
    type: RunEventType
    phase: Optional[RunPhase] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class RunRecord(BaseModel):
    """单次回合处理的账本记录。"""

    model_config = ConfigDict(extra="forbid")

    run_id: str
    parent_run_id: Optional[str] = None
    session_key: str
    queue_mode: QueueMode = "steer"
    status: RunStatus = "running"
    current_phase: RunPhase = "normalize"
    spec: RunSnapshot
    events: List[RunEvent] = Field(default_factory=list)
    created_at: str
    updated_at: str
    started_at: str
    ended_at: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StartRunResult(BaseModel):
    """`start_run` 返回值。"""

    model_config = ConfigDict(extra="forbid")

    acquired: bool
    run: RunRecord
    active_run_id: Optional[str] = None
    reused: bool = False


_TERMINAL_PHASE = {"completed": "completed", "failed": "failed", "cancelled": "cancelled"}


class RunLedger:
    """
    Run 账本。

    参数：
    - state_path：快照文件路径；None 表示仅内存
    - max_runs：容量上限（超出时先裁剪最旧的终止 run）
    - retention_days：保留期（超过保留期且非活跃的 run 被清理）
    - clock：返回当前 UTC 时间（测试可注入）
    """

    def __init__(
        self,
        *,
        state_path: Optional[Path] = None,
        max_runs: int = DEFAULT_MAX_RUNS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._max_runs = max(1, int(max_runs))
        self._retention = timedelta(days=max(1, int(retention_days)))
        self._clock = clock
        self._runs: List[RunRecord] = []
        self._active_by_session: Dict[str, str] = {}
        snapshot = SnapshotFile(Path(state_path)) if state_path is not None else None
        if snapshot is not None:
            loaded = snapshot.load() or {}
            self._runs = [RunRecord.model_validate(x) for x in loaded.get("runs") or []]
            self._active_by_session = {str(k): str(v) for k, v in (loaded.get("active_by_session") or {}).items()}
        self._writer = SerialWriter(snapshot=snapshot, encode=self._encode)

    def _encode(self) -> Dict[str, Any]:
        return {
            "runs": [r.model_dump(mode="json") for r in self._runs],
            "active_by_session": dict(self._active_by_session),
        }

    # ---- 单写者内部操作（只能在 SerialWriter 中调用） ----

    def _find(self, run_id: str) -> Optional[RunRecord]:
        for run in self._runs:
            if run.run_id == run_id:
                return run
        return None

    def _drop_dangling_active(self) -> None:
        known = {r.run_id for r in self._runs}
        for key in [k for k, v in self._active_by_session.items() if v not in known]:
            del self._active_by_session[key]

    def _prune(self) -> None:
        cutoff = self._clock() - self._retention
        active_ids = set(self._active_by_session.values())
        retained: List[RunRecord] = []
        for run in self._runs:
            created = parse_rfc3339(run.created_at)
            if created is None or created >= cutoff or not run.is_terminal or run.run_id in active_ids:
                retained.append(run)
        if len(retained) != len(self._runs):
            logger.debug("run ledger pruned %d expired runs", len(self._runs) - len(retained))
        self._runs = retained
        self._drop_dangling_active()

    def _trim(self) -> None:
        excess = len(self._runs) - self._max_runs
        if excess <= 0:
            return
        doomed: set[str] = set()
        for run in self._runs:
            if len(doomed) >= excess:
                break
            if run.is_terminal:
                doomed.add(run.run_id)
        for run in self._runs:
            if len(doomed) >= excess:
                break
            doomed.add(run.run_id)
        self._runs = [r for r in self._runs if r.run_id not in doomed]
        self._drop_dangling_active()

    def _build_run(
        self,
        *,
        session_key: str,
        queue_mode: str,
        idempotency_key: str,
        now: str,
        parent_run_id: Optional[str],
        model: Optional[str],
        provider: Optional[str],
        tool_policy_snapshot: Optional[Dict[str, Any]],
        skills_snapshot: Optional[Dict[str, Any]],
        memory_snapshot: Optional[Dict[str, Any]],
    ) -> RunRecord:
        run_id = new_id()
        spec = RunSnapshot(
            run_id=run_id,
            session_key=session_key,
            idempotency_key=idempotency_key,
            model=model,
            provider=provider,
            tool_policy_snapshot=dict(tool_policy_snapshot or {}),
            skills_snapshot=SkillsSnapshot.model_validate(skills_snapshot or {}),
            memory_snapshot=MemorySnapshot.model_validate(memory_snapshot or {}),
            created_at=now,
        )
        return RunRecord(
            run_id=run_id,
            parent_run_id=parent_run_id,
            session_key=session_key,
            queue_mode=queue_mode,  # type: ignore[arg-type]
            spec=spec,
            events=[RunEvent(run_id=run_id, seq=1, at=now, type="started", phase="normalize", message="Run started")],
            created_at=now,
            updated_at=now,
            started_at=now,
        )

    # ---- 对外 API ----

    async def start_run(
        self,
        *,
        session_key: str,
        queue_mode: str = "steer",
        idempotency_key: Optional[str] = None,
        parent_run_id: Optional[str] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        tool_policy_snapshot: Optional[Dict[str, Any]] = None,
        skills_snapshot: Optional[Dict[str, Any]] = None,
        memory_snapshot: Optional[Dict[str, Any]] = None,
    ) -> StartRunResult:
        """
        为 session 申请一个 run 槽位。

        参数：
        - session_key：会话 key（通常是 auth 身份）
        - queue_mode：冲突时的排队语义（只记录，不在此处生效）
        - idempotency_key：幂等 key；缺省时生成随机值（即不做去重）
        """

        key = str(session_key or "").strip()
        idem = str(idempotency_key or "").strip() or new_id()

        def _op() -> StartRunResult:
            self._prune()
            now = format_rfc3339(self._clock())

            for existing in reversed(self._runs):
                if existing.session_key == key and existing.spec.idempotency_key == idem:
                    return StartRunResult(
                        acquired=not existing.is_terminal,
                        run=existing.model_copy(deep=True),
                        active_run_id=self._active_by_session.get(key),
                        reused=True,
                    )

            build_kwargs = dict(
                session_key=key,
                queue_mode=queue_mode,
                idempotency_key=idem,
                now=now,
                parent_run_id=parent_run_id,
                model=model,
                provider=provider,
                tool_policy_snapshot=tool_policy_snapshot,
                skills_snapshot=skills_snapshot,
                memory_snapshot=memory_snapshot,
            )

            active_id = self._active_by_session.get(key)
            active = self._find(active_id) if active_id else None
            if active is not None and not active.is_terminal:
                blocked = self._build_run(**build_kwargs)
                blocked.status = "blocked"
                blocked.current_phase = "dispatch"
                blocked.ended_at = now
                blocked.failure_reason = f"session_busy:{active.run_id}"
                blocked.events.append(
                    RunEvent(
                        run_id=blocked.run_id,
                        seq=2,
                        at=now,
                        type="failed",
                        phase="dispatch",
                        message=f"Session is busy with run {active.run_id}.",
                        payload={"activeRunId": active.run_id},
                    )
                )
                self._runs.append(blocked)
                self._trim()
                return StartRunResult(acquired=False, run=blocked.model_copy(deep=True), active_run_id=active.run_id)

            run = self._build_run(**build_kwargs)
            self._runs.append(run)
            self._active_by_session[key] = run.run_id
            self._trim()
            return StartRunResult(acquired=True, run=run.model_copy(deep=True))

        return await self._writer.submit(_op)

    async def append_event(
        self,
        run_id: str,
        event_type: str,
        *,
        phase: Optional[str] = None,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunRecord]:
        """追加审计事件；带 phase 时同步更新 `current_phase`。未知 run 返回 None。"""

        def _op() -> Optional[RunRecord]:
            self._prune()
            run = self._find(run_id)
            if run is None:
                return None
            at = format_rfc3339(self._clock())
            run.events.append(
                RunEvent(
                    run_id=run_id,
                    seq=len(run.events) + 1,
                    at=at,
                    type=event_type,  # type: ignore[arg-type]
                    phase=phase,  # type: ignore[arg-type]
                    message=message,
                    payload=payload,
                )
            )
            if phase:
                run.current_phase = phase  # type: ignore[assignment]
            run.updated_at = at
            self._trim()
            return run.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def transition_phase(
        self,
        run_id: str,
        phase: str,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[RunRecord]:
        """记录 phase 迁移（`phase` 类型事件）。"""

        return await self.append_event(run_id, "phase", phase=phase, message=message, payload=payload)

    async def complete_run(self, run_id: str, status: str, message: Optional[str] = None) -> Optional[RunRecord]:
        """
        终止 run。

        约束：
        - status 只能是 completed|failed|cancelled（blocked 只由 `start_run` 产生）
        - 只有当该 run 仍是 session 的登记活跃 run 时才释放槽位（迟到的完成不得释放更新的 run）
        """

        if status not in _TERMINAL_PHASE:
            raise ValueError(f"complete_run status must be one of {sorted(_TERMINAL_PHASE)}; got: {status}")

        def _op() -> Optional[RunRecord]:
            self._prune()
            run = self._find(run_id)
            if run is None:
                return None
            at = format_rfc3339(self._clock())
            run.status = status  # type: ignore[assignment]
            run.updated_at = at
            run.ended_at = at
            run.current_phase = _TERMINAL_PHASE[status]  # type: ignore[assignment]
            if status == "failed" and message:
                run.failure_reason = message
            run.events.append(
                RunEvent(
                    run_id=run_id,
                    seq=len(run.events) + 1,
                    at=at,
                    type=status,  # type: ignore[arg-type]
                    phase=run.current_phase,
                    message=message,
                )
            )
            if self._active_by_session.get(run.session_key) == run.run_id:
                del self._active_by_session[run.session_key]
            self._trim()
            return run.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        def _op() -> Optional[RunRecord]:
            self._prune()
            run = self._find(run_id)
            return run.model_copy(deep=True) if run is not None else None

        return await self._writer.submit(_op, mutates=False)

    async def list_runs(self, *, session_key: Optional[str] = None, limit: int = 50) -> List[RunRecord]:
        """列出 run（最新在前，limit 限制在 1..500）。"""

        bounded = clamp(limit, 1, 500)

        def _op() -> List[RunRecord]:
            self._prune()
            rows = [r for r in reversed(self._runs) if session_key is None or r.session_key == session_key]
            return [r.model_copy(deep=True) for r in rows[:bounded]]

        return await self._writer.submit(_op, mutates=False)

    async def active_run_id(self, session_key: str) -> Optional[str]:
        """返回 session 当前登记的活跃 run id。"""

        def _op() -> Optional[str]:
            self._prune()
            return self._active_by_session.get(session_key)

        return await self._writer.submit(_op, mutates=False)

    async def flush(self) -> None:
        await self._writer.flush()
