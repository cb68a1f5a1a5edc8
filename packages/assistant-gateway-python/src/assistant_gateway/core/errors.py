"""
网关编排核心的错误分类（异常类型）。

说明：
- policy 拒绝、需要审批属于“决策结果”，不走异常；
- 异常仅用于：入站校验失败、RunSpec 结构非法、step 执行失败、状态持久化失败；
- 对外（聊天回复）统一使用英文 message；`code` 保持稳定便于测试断言。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class GatewayError(Exception):
    """网关内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可用于日志与 API 返回）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(GatewayError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class InboundValidationError(UserError):
    """入站消息不满足契约（例如 session_id 为空）；此时不产生任何副作用。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message, code="INBOUND_INVALID", details=details)


class RunSpecValidationError(UserError):
    """RunSpec 结构非法（版本、step 数量、重复 id 等）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message, code="RUN_SPEC_INVALID", details=details)


class WorkspaceBoundaryError(UserError):
    """目标路径越出 workspace 允许的子目录。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message, code="WORKSPACE_BOUNDARY", details=details)


class RunSpecStepError(GatewayError):
    """
    RunSpec 单个 step 执行失败。

    `code` 为稳定的失败原因（例如 `run_spec_missing_query`）；执行器会把它写入 step message，
    并转换为结构化失败结果，而不是向上抛出。
    """

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class StateError(GatewayError):
    """状态持久化/恢复错误（快照读写失败等）。"""


class JobProcessingError(FrameworkError):
    """worker 处理 job 失败（`code` 写入 job.error.code）。"""

    def __init__(self, code: str, message: str, *, retryable: bool = False, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details)
        self.retryable = retryable


class CallBudgetExceededError(JobProcessingError):
    """外部调用在 job 的共享时间预算内未能完成。"""

    def __init__(self, label: str, *, budget_sec: float) -> None:
        super().__init__(
            "call_budget_exceeded",
            f"{label} did not finish within the {budget_sec:g}s budget.",
            retryable=True,
            details={"label": label, "budgetSec": budget_sec},
        )
