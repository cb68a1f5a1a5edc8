"""
Observability（run 指标汇总）。

说明：
- 指标完全由 RunRecord 离线重算，不引入第三方监控依赖；
- 平台侧可消费输出接入 Prometheus/OTel 等系统。
"""

from __future__ import annotations

__all__ = [
    "run_metrics",
]
