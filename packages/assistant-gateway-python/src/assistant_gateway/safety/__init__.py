"""
Safety（能力策略 + 沙箱规则 + 审批）模块。
"""

from __future__ import annotations

from assistant_gateway.safety.approvals import (
    ApprovalGate,
    ApprovalRecord,
    FileSendApproval,
    FileWriteApproval,
    RunSpecApproval,
    ShellExecApproval,
    WebSearchApproval,
)
from assistant_gateway.safety.leases import ApprovalLeases
from assistant_gateway.safety.sandbox import (
    DEFAULT_SHELL_BLOCK_RULES,
    SandboxVerdict,
    ShellBlockRule,
    evaluate_shell_command,
    is_sandbox_target_enabled,
)
from assistant_gateway.safety.tool_policy import TOOL_SPECS, ToolPolicyDecision, ToolSpec, evaluate_tool_policy

__all__ = [
    "ApprovalGate",
    "ApprovalLeases",
    "ApprovalRecord",
    "DEFAULT_SHELL_BLOCK_RULES",
    "FileSendApproval",
    "FileWriteApproval",
    "RunSpecApproval",
    "SandboxVerdict",
    "ShellBlockRule",
    "ShellExecApproval",
    "TOOL_SPECS",
    "ToolPolicyDecision",
    "ToolSpec",
    "WebSearchApproval",
    "evaluate_shell_command",
    "evaluate_tool_policy",
    "is_sandbox_target_enabled",
]
