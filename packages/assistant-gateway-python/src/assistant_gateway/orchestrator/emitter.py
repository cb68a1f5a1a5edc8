"""
PhaseEmitter：回合内 phase 迁移的统一出口。

说明：
- 每次 phase 迁移都经由同一出口，保证顺序一致：
  1) 先镜像到 Run Ledger（best-effort，失败计数 + 日志，不中断回合）
  2) 再调用 hooks（fail-open；hooks 可以是同步或 async 函数）
- 没有 run（ledger 未配置或申请失败）时只调用 hooks。
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from assistant_gateway.orchestrator.state import PipelineCounters
from assistant_gateway.state.run_ledger import RunLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseEvent:
    """一次 phase 迁移或回合内备注。"""

    session_id: str
    run_id: Optional[str]
    kind: str  # phase|note|queued
    phase: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


PhaseHook = Callable[[PhaseEvent], Union[None, Awaitable[None]]]


@dataclass
class PhaseEmitter:
    """
    单个回合的 phase 出口。

    字段：
    - session_id：渠道 session id
    - run_id：ledger run id（可为空）
    - ledger：Run Ledger（可为空）
    - hooks：可观测性 hooks
    - counters：失败计数（ledger/hook 失败时递增）
    """

    session_id: str
    counters: PipelineCounters
    ledger: Optional[RunLedger] = None
    run_id: Optional[str] = None
    hooks: Sequence[PhaseHook] = ()

    async def _call_hooks(self, ev: PhaseEvent) -> None:
        for hook in self.hooks or ():
            try:
                out = hook(ev)
                if inspect.isawaitable(out):
                    await out
            except Exception:
                # fail-open：hook 失败只影响可观测性
                self.counters.hook_failures += 1
                logger.warning("phase hook failed (phase=%s)", ev.phase, exc_info=True)

    async def _mirror(self, ev: PhaseEvent) -> None:
        if self.ledger is None or not self.run_id:
            return
        try:
            if ev.kind == "phase":
                await self.ledger.transition_phase(self.run_id, ev.phase or "", ev.message, ev.details or None)
            else:
                await self.ledger.append_event(
                    self.run_id, ev.kind, phase=ev.phase, message=ev.message, payload=ev.details or None
                )
        except Exception:
            self.counters.ledger_failures += 1
            logger.warning("ledger mirror failed (run=%s kind=%s)", self.run_id, ev.kind, exc_info=True)

    async def emit(self, ev: PhaseEvent) -> None:
        """统一出口：ledger 镜像 → hooks。"""

        logger.debug("phase event kind=%s phase=%s run=%s", ev.kind, ev.phase, self.run_id)
        await self._mirror(ev)
        await self._call_hooks(ev)

    async def mark_phase(self, phase: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        await self.emit(
            PhaseEvent(session_id=self.session_id, run_id=self.run_id, kind="phase", phase=phase, message=message, details=dict(details or {}))
        )

    async def note(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self.emit(PhaseEvent(session_id=self.session_id, run_id=self.run_id, kind="note", message=message, details=dict(details or {})))

    async def queued(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self.emit(
            PhaseEvent(session_id=self.session_id, run_id=self.run_id, kind="queued", phase="route", message=message, details=dict(details or {}))
        )
