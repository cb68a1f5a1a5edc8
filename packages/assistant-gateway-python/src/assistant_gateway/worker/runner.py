"""
Worker 轮询循环：claim → process → complete / fail / cancelled-after-run。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from assistant_gateway.core.collaborators import JobQueue
from assistant_gateway.core.contracts import Job
from assistant_gateway.core.errors import JobProcessingError
from assistant_gateway.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


async def run_worker_once(queue: JobQueue, processor: JobProcessor, worker_id: str) -> Optional[Job]:
    """
    认领并处理一个 queued job。

    返回：
    - 处理后的 job（终态）；队列为空时返回 None

    说明：
    - 取消是协作式的：处理期间 job 被置为 `cancelling` 时，结果保留并标记为 cancelled；
    - processor 失败不会抛给调用方（记为 job failed）；队列自身的异常照常抛出，由 `Worker.run` 记录后继续轮询。
    """

    claimed = await queue.claim_next_queued_job(worker_id)
    if claimed is None:
        return None
    logger.info("worker %s claimed job %s (%s)", worker_id, claimed.id, claimed.type)

    try:
        result = await processor.process(claimed)
    except Exception as exc:
        if isinstance(exc, JobProcessingError):
            code, message, retryable = exc.code, exc.message, exc.retryable
        else:
            code, message, retryable = "processor_failure", str(exc) or type(exc).__name__, False
        logger.warning("job %s failed: %s: %s", claimed.id, code, message)
        latest = await queue.get_job(claimed.id)
        if latest is not None and latest.status == "cancelling":
            done = await queue.mark_cancelled_after_run(claimed.id)
            await processor.announce(claimed, status="cancelled", text=f"Job {claimed.id} is cancelled.")
            return done
        done = await queue.fail_job(claimed.id, code=code, message=message, retryable=retryable)
        await processor.announce(claimed, status="failed", text=f"Job {claimed.id} failed: {message}")
        return done

    latest = await queue.get_job(claimed.id)
    if latest is not None and latest.status == "cancelling":
        done = await queue.mark_cancelled_after_run(claimed.id, result)
        await processor.announce(claimed, status="cancelled", text=f"Job {claimed.id} is cancelled.")
        return done
    done = await queue.complete_job(claimed.id, result)
    await processor.announce(
        claimed, status="succeeded", text=str(result.get("responseText") or f"Job {claimed.id} succeeded.")
    )
    return done


class Worker:
    """
    轮询 worker。

    参数：
    - queue：job 队列
    - processor：job 处理器
    - worker_id：claim 时记录的 worker id
    - poll_interval_ms：队列为空时的等待间隔
    """

    def __init__(self, *, queue: JobQueue, processor: JobProcessor, worker_id: str = "worker-1", poll_interval_ms: int = 500) -> None:
        self._queue = queue
        self._processor = processor
        self._worker_id = worker_id
        self._poll_sec = max(0.01, poll_interval_ms / 1000.0)

    async def run(self, stop_event: asyncio.Event) -> int:
        """运行直到 `stop_event` 被设置；返回处理的 job 数。"""

        processed = 0
        while not stop_event.is_set():
            try:
                job = await run_worker_once(self._queue, self._processor, self._worker_id)
            except Exception:
                logger.exception("worker %s iteration failed", self._worker_id)
                job = None
            if job is not None:
                processed += 1
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_sec)
            except asyncio.TimeoutError:
                pass
        return processed
