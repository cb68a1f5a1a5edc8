"""
审批 lease：会话级的能力审批豁免。

说明：
- lease key 由编排层决定（auth 身份或渠道 session id，取决于 `file_write_approval_scope`）；
- lease 只在进程内有效，由 `OrchestratorState` 持有并注入各组件（不做全局单例）；
- `ttl_sec=None` 表示直到显式 revoke 才失效。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from assistant_gateway.core.utils import utc_now


@dataclass
class ApprovalLeases:
    """按 (lease_key, capability) 记录的审批豁免。"""

    ttl_sec: Optional[int] = None
    clock: Callable[[], datetime] = utc_now
    _grants: Dict[Tuple[str, str], Optional[datetime]] = field(default_factory=dict, repr=False)

    def grant(self, lease_key: str, capability: str) -> None:
        """授予（或续期）lease。"""

        expires = self.clock() + timedelta(seconds=self.ttl_sec) if self.ttl_sec else None
        self._grants[(lease_key, capability)] = expires

    def has(self, lease_key: str, capability: str) -> bool:
        """判断 lease 是否仍有效；过期的 lease 顺带清理。"""

        key = (lease_key, capability)
        if key not in self._grants:
            return False
        expires = self._grants[key]
        if expires is not None and expires < self.clock():
            del self._grants[key]
            return False
        return True

    def revoke(self, lease_key: str, capability: Optional[str] = None) -> int:
        """
        撤销 lease。

        参数：
        - capability：None 表示撤销该 key 下的全部能力

        返回：
        - 实际撤销的条目数
        """

        doomed = [k for k in self._grants if k[0] == lease_key and (capability is None or k[1] == capability)]
        for k in doomed:
            del self._grants[k]
        return len(doomed)
