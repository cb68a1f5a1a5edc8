"""声明式工作流（RunSpec）的 schema 与执行器。"""

from __future__ import annotations

from assistant_gateway.workflows.run_spec import (
    RunSpecStep,
    RunSpecStepApproval,
    RunSpecV1,
    build_research_run_spec,
    parse_run_spec,
)

__all__ = [
    "RunSpecStep",
    "RunSpecStepApproval",
    "RunSpecV1",
    "build_research_run_spec",
    "parse_run_spec",
]
