"""
单写者（single-writer）状态执行器 + JSON 快照。

说明：
- 每个 store 持有一个 `SerialWriter`：内存状态只由一个 asyncio task 修改，
  所有读写操作通过 FIFO 队列按到达顺序逐个执行，因此 "prune → mutate" 之类的读改写序列不会交错；
- 持久化采用“队列排空时落盘”：连续到达的多次写入合并为一次快照写（tmp + os.replace 原子替换），
  避免每次调用都全量重写文件；`flush()` 可强制落盘；
- 跨进程共享同一快照文件不在支持范围内。

约束：
- 提交的操作必须是同步函数（不得 await），保证单个操作内部原子；
- 执行器惰性绑定到当前 running loop；loop 变化（例如多次 `asyncio.run`）时自动重建队列与 worker。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from assistant_gateway.core.errors import StateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SnapshotFile:
    """
    JSON 快照文件（整文件读写）。

    参数：
    - path：快照路径（父目录不存在时自动创建）
    """

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        """读取快照；文件不存在返回 None，内容损坏抛 `StateError`。"""

        if not self.path.exists():
            return None
        try:
            obj = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StateError(f"failed to read snapshot {self.path}: {exc}") from exc
        if not isinstance(obj, dict):
            raise StateError(f"snapshot root must be an object: {self.path}")
        return obj

    def save(self, obj: Dict[str, Any]) -> None:
        """原子写入快照（先写同目录临时文件，再 `os.replace`）。"""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)


_Job = Tuple[Callable[[], Any], bool, "asyncio.Future[Any]"]


class SerialWriter:
    """
    单写者执行器。

    参数：
    - snapshot：快照文件；None 表示仅内存
    - encode：把 store 的当前内存状态编码为可 JSON 序列化的 dict（仅在落盘时调用）
    """

    def __init__(self, *, snapshot: Optional[SnapshotFile] = None, encode: Optional[Callable[[], Dict[str, Any]]] = None) -> None:
        self._snapshot = snapshot
        self._encode = encode
        self._dirty = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional["asyncio.Queue[_Job]"] = None
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def dirty(self) -> bool:
        """是否存在尚未落盘的修改。"""

        return self._dirty

    def _ensure_worker(self) -> "asyncio.Queue[_Job]":
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._queue is None or self._task is None or self._task.done():
            self._loop = loop
            self._queue = asyncio.Queue()
            self._task = loop.create_task(self._run(self._queue))
        return self._queue

    async def _run(self, queue: "asyncio.Queue[_Job]") -> None:
        while True:
            op, mutates, fut = await queue.get()
            try:
                result = op()
            except Exception as exc:
                if not fut.done():
                    fut.set_exception(exc)
            else:
                if not fut.done():
                    fut.set_result(result)
            finally:
                if mutates:
                    self._dirty = True
                queue.task_done()
            if queue.empty():
                self._flush_now()

    def _flush_now(self) -> None:
        if self._snapshot is None or self._encode is None:
            self._dirty = False
            return
        if not self._dirty:
            return
        try:
            self._snapshot.save(self._encode())
        except Exception:
            # 落盘失败保留 dirty，下一次排空时重试；内存状态仍然有效
            logger.warning("snapshot write failed: %s", self._snapshot.path, exc_info=True)
            return
        self._dirty = False

    async def submit(self, op: Callable[[], T], *, mutates: bool = True) -> T:
        """
        提交一个同步操作，按 FIFO 顺序在单写者 task 中执行并返回其结果。

        参数：
        - op：无参同步函数（闭包捕获参数）
        - mutates：是否修改了状态（只读操作传 False，不触发落盘）
        """

        queue = self._ensure_worker()
        fut: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        await queue.put((op, mutates, fut))
        return await fut

    async def flush(self) -> None:
        """等待已提交操作全部执行完毕并强制落盘。"""

        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()
        self._flush_now()
