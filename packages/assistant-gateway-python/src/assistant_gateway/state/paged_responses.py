"""分页回复存储：长回复拆页后，用户回复 `#next` 逐页取出。"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from assistant_gateway.core.collaborators import PageResult
from assistant_gateway.core.utils import now_rfc3339
from assistant_gateway.state.serial import SerialWriter, SnapshotFile


class PagedResponseStore:
    """按 session 保存待取的分页内容。"""

    def __init__(self, *, state_path: Optional[Path] = None) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}
        snapshot = SnapshotFile(Path(state_path)) if state_path is not None else None
        if snapshot is not None:
            self._sessions = dict((snapshot.load() or {}).get("sessions") or {})
        self._writer = SerialWriter(snapshot=snapshot, encode=lambda: {"sessions": self._sessions})

    async def set_pages(self, session_id: str, pages: List[str]) -> None:
        """覆盖会话的分页内容；空页会被丢弃，全部为空时等同 clear。"""

        normalized = [p.strip() for p in pages if p and p.strip()]

        def _op() -> None:
            if not normalized:
                self._sessions.pop(session_id, None)
                return
            self._sessions[session_id] = {"pages": normalized, "next_index": 0, "updated_at": now_rfc3339()}

        await self._writer.submit(_op)

    async def pop_next(self, session_id: str) -> Optional[PageResult]:
        """取出下一页；没有待取内容时返回 None。"""

        def _op() -> Optional[PageResult]:
            entry = self._sessions.get(session_id)
            if not entry or entry["next_index"] >= len(entry["pages"]):
                return None
            page = entry["pages"][entry["next_index"]]
            entry["next_index"] += 1
            entry["updated_at"] = now_rfc3339()
            remaining = max(0, len(entry["pages"]) - entry["next_index"])
            if remaining == 0:
                del self._sessions[session_id]
            return PageResult(page=page, remaining=remaining)

        return await self._writer.submit(_op)

    async def clear(self, session_id: str) -> None:
        await self._writer.submit(lambda: self._sessions.pop(session_id, None))

    async def flush(self) -> None:
        await self._writer.flush()
