"""
外部调用预算：单次超时 + 有限重试 + 同一 job 内共享的总时间预算。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from assistant_gateway.core.collaborators import GenerationService, SearchService
from assistant_gateway.core.contracts import SearchResult
from assistant_gateway.core.errors import CallBudgetExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BudgetedCall:
    """
    预算包装器（一个 job 一个实例）。

    参数：
    - timeout_sec：单次尝试的超时
    - max_retries：失败/超时后的额外重试次数
    - time_budget_sec：自创建起所有调用共享的总预算
    - clock：单调时钟（测试可注入）
    """

    def __init__(
        self,
        *,
        timeout_sec: float,
        max_retries: int,
        time_budget_sec: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout_sec = float(timeout_sec)
        self._max_retries = max(0, int(max_retries))
        self._budget_sec = float(time_budget_sec)
        self._clock = clock
        self._deadline = clock() + self._budget_sec

    @property
    def remaining_sec(self) -> float:
        return max(0.0, self._deadline - self._clock())

    async def run(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        执行 `fn()`；超时或异常时在预算内重试。

        异常：
        - CallBudgetExceededError：预算耗尽
        - 其它：重试次数用尽后抛出最后一次失败
        """

        attempt = 0
        while True:
            remaining = self.remaining_sec
            if remaining <= 0:
                raise CallBudgetExceededError(label, budget_sec=self._budget_sec)
            try:
                return await asyncio.wait_for(fn(), timeout=min(self._timeout_sec, remaining))
            except Exception as exc:
                if attempt >= self._max_retries:
                    if isinstance(exc, asyncio.TimeoutError) and self.remaining_sec <= 0:
                        raise CallBudgetExceededError(label, budget_sec=self._budget_sec) from exc
                    raise
                attempt += 1
                logger.info("%s attempt %d failed (%s); retrying", label, attempt, type(exc).__name__)


class BudgetedSearch:
    """把 SearchService 包装为受预算约束的版本（满足 SearchService 协议）。"""

    def __init__(self, inner: SearchService, budget: BudgetedCall) -> None:
        self._inner = inner
        self._budget = budget

    async def search(
        self,
        query: str,
        *,
        provider: str,
        auth_session_id: str,
        auth_preference: str = "auto",
    ) -> Optional[SearchResult]:
        return await self._budget.run(
            "web search",
            lambda: self._inner.search(
                query, provider=provider, auth_session_id=auth_session_id, auth_preference=auth_preference
            ),
        )


class BudgetedGeneration:
    """把 GenerationService 包装为受预算约束的版本。"""

    def __init__(self, inner: GenerationService, budget: BudgetedCall) -> None:
        self._inner = inner
        self._budget = budget

    async def generate_text(self, session_id: str, prompt: str, *, auth_preference: str = "auto") -> Optional[str]:
        return await self._budget.run(
            "text generation",
            lambda: self._inner.generate_text(session_id, prompt, auth_preference=auth_preference),
        )
