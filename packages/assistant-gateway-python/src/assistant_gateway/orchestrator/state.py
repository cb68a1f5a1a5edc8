"""
编排器的进程内可变状态（显式持有，注入到各组件；不使用全局单例）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from assistant_gateway.safety.leases import ApprovalLeases


@dataclass
class PipelineCounters:
    """best-effort 路径上的失败计数（便于监控“被吞掉”的错误）。"""

    turns: int = 0
    ledger_failures: int = 0
    hook_failures: int = 0
    planner_failures: int = 0
    collaborator_failures: int = 0


@dataclass
class OrchestratorState:
    """
    一个编排器实例独占的状态。

    字段：
    - leases：审批 lease
    - latest_job_by_session：每个渠道 session 最近入队的 job（用于状态查询）
    - counters：失败计数
    """

    leases: ApprovalLeases = field(default_factory=ApprovalLeases)
    latest_job_by_session: Dict[str, str] = field(default_factory=dict)
    counters: PipelineCounters = field(default_factory=PipelineCounters)

    def remember_job(self, session_id: str, job_id: str) -> None:
        self.latest_job_by_session[session_id] = job_id

    def latest_job(self, session_id: str) -> Optional[str]:
        return self.latest_job_by_session.get(session_id)
