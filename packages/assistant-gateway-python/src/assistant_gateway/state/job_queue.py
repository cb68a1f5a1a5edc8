"""
进程内 job 队列（`JobQueue` 协议的参考实现）。

说明：
- 领取顺序：priority 高者优先，同 priority 按入队顺序；
- 取消是协作式的：queued 直接 cancelled；running 进入 cancelling，由 worker 在当前 job 结束后标记 cancelled；
- 只有 failed/cancelled 的 job 可以 retry（生成新 job，`retry_of` 指向原 job）。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from assistant_gateway.core.contracts import Job, JobCreate, JobError, JobProgress
from assistant_gateway.core.utils import clamp, new_id, now_rfc3339
from assistant_gateway.state.serial import SerialWriter, SnapshotFile

_RETRYABLE_FROM = frozenset({"failed", "cancelled"})


class InMemoryJobQueue:
    """单写者 job 队列（可选 JSON 快照）。"""

    def __init__(self, *, state_path: Optional[Path] = None) -> None:
        self._jobs: Dict[str, Job] = {}
        snapshot = SnapshotFile(Path(state_path)) if state_path is not None else None
        if snapshot is not None:
            for item in (snapshot.load() or {}).get("jobs") or []:
                job = Job.model_validate(item)
                self._jobs[job.id] = job
        self._writer = SerialWriter(snapshot=snapshot, encode=self._encode)

    def _encode(self) -> Dict[str, Any]:
        return {"jobs": [j.model_dump(mode="json") for j in self._jobs.values()]}

    def _update(self, job_id: str, **changes: Any) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        changes.setdefault("updated_at", now_rfc3339())
        updated = job.model_copy(update=changes)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    def _insert(self, job_type: str, payload: Dict[str, Any], priority: int, retry_of: Optional[str] = None) -> Job:
        now = now_rfc3339()
        job = Job(
            id=new_id(),
            type=job_type,  # type: ignore[arg-type]
            payload=dict(payload),
            priority=priority,
            created_at=now,
            updated_at=now,
            retry_of=retry_of,
        )
        self._jobs[job.id] = job
        return job.model_copy(deep=True)

    async def create_job(self, job: JobCreate) -> Job:
        return await self._writer.submit(lambda: self._insert(job.type, job.payload, job.priority))

    async def get_job(self, job_id: str) -> Optional[Job]:
        def _op() -> Optional[Job]:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

        return await self._writer.submit(_op, mutates=False)

    async def list_jobs(self, *, limit: int = 50) -> List[Job]:
        """列出 job（最新在前）。"""

        bounded = clamp(limit, 1, 500)
        return await self._writer.submit(
            lambda: [j.model_copy(deep=True) for j in reversed(list(self._jobs.values()))][:bounded],
            mutates=False,
        )

    async def cancel_job(self, job_id: str) -> Optional[Job]:
        def _op() -> Optional[Job]:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            now = now_rfc3339()
            if job.status == "queued":
                return self._update(job_id, status="cancelled", ended_at=now, updated_at=now)
            if job.status == "running":
                return self._update(job_id, status="cancelling", updated_at=now)
            return job.model_copy(deep=True)

        return await self._writer.submit(_op)

    async def retry_job(self, job_id: str) -> Optional[Job]:
        """基于 failed/cancelled 的 job 创建重试 job；其它状态返回 None。"""

        def _op() -> Optional[Job]:
            job = self._jobs.get(job_id)
            if job is None or job.status not in _RETRYABLE_FROM:
                return None
            return self._insert(job.type, job.payload, job.priority, retry_of=job.id)

        return await self._writer.submit(_op)

    async def claim_next_queued_job(self, worker_id: str) -> Optional[Job]:
        def _op() -> Optional[Job]:
            queued = [j for j in self._jobs.values() if j.status == "queued"]
            if not queued:
                return None
            # dict 保持插入顺序；sorted 稳定
            chosen = sorted(queued, key=lambda j: -j.priority)[0]
            now = now_rfc3339()
            return self._update(chosen.id, status="running", started_at=now, updated_at=now, worker_id=worker_id)

        return await self._writer.submit(_op)

    async def update_progress(self, job_id: str, progress: Mapping[str, Any]) -> Optional[Job]:
        item = JobProgress.model_validate({"at": now_rfc3339(), **dict(progress)})
        return await self._writer.submit(lambda: self._update(job_id, progress=item))

    async def complete_job(self, job_id: str, result: Dict[str, Any]) -> Optional[Job]:
        def _op() -> Optional[Job]:
            now = now_rfc3339()
            return self._update(job_id, status="succeeded", ended_at=now, updated_at=now, result=dict(result))

        return await self._writer.submit(_op)

    async def fail_job(self, job_id: str, *, code: str, message: str, retryable: bool = False) -> Optional[Job]:
        err = JobError(code=code, message=message, retryable=bool(retryable))

        def _op() -> Optional[Job]:
            now = now_rfc3339()
            return self._update(job_id, status="failed", ended_at=now, updated_at=now, error=err)

        return await self._writer.submit(_op)

    async def mark_cancelled_after_run(self, job_id: str, partial_result: Optional[Dict[str, Any]] = None) -> Optional[Job]:
        def _op() -> Optional[Job]:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            now = now_rfc3339()
            result = dict(partial_result) if partial_result is not None else job.result
            return self._update(job_id, status="cancelled", ended_at=now, updated_at=now, result=result)

        return await self._writer.submit(_op)

    async def status_counts(self) -> Dict[str, int]:
        def _op() -> Dict[str, int]:
            counts = {s: 0 for s in ("queued", "running", "succeeded", "failed", "cancelling", "cancelled")}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts

        return await self._writer.submit(_op, mutates=False)

    async def flush(self) -> None:
        await self._writer.flush()
