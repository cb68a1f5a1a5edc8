"""
Tool 能力策略引擎（allow / approval / deny）。

说明：
- 每个 tool id 映射到一个能力（capability）与安全等级（read_only/side_effecting/privileged）；
- 决策是纯函数：相同的 policy + lease 输入总是得到相同的决策，不抛异常、不读写状态；
- lease（会话级审批豁免）由调用方查询后以 `has_lease` 传入，本模块不持有。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Optional

from assistant_gateway.config.loader import ToolPolicyConfig

ToolId = Literal["web.search", "file.write", "file.send", "shell.exec", "wasm.exec"]
Capability = Literal["web_search", "file_write", "shell_exec", "wasm_exec"]
SafetyTier = Literal["read_only", "side_effecting", "privileged"]


@dataclass(frozen=True)
class ToolSpec:
    """tool 目录条目（版本化，便于快照进 run 记录）。"""

    tool_id: str
    capability: str
    safety_tier: str
    description: str
    version: int = 1


TOOL_SPECS: Dict[str, ToolSpec] = {
    "web.search": ToolSpec(
        tool_id="web.search",
        capability="web_search",
        safety_tier="read_only",
        description="Fetches web search results from configured providers.",
    ),
    "file.write": ToolSpec(
        tool_id="file.write",
        capability="file_write",
        safety_tier="side_effecting",
        description="Writes text to workspace files within policy bounds.",
    ),
    "file.send": ToolSpec(
        tool_id="file.send",
        capability="file_write",
        safety_tier="side_effecting",
        description="Sends workspace files as outbound channel attachments.",
    ),
    "shell.exec": ToolSpec(
        tool_id="shell.exec",
        capability="shell_exec",
        safety_tier="privileged",
        description="Executes shell commands inside the workspace policy boundary.",
    ),
    "wasm.exec": ToolSpec(
        tool_id="wasm.exec",
        capability="wasm_exec",
        safety_tier="privileged",
        description="Reserved runtime surface for sandboxed WASM guest execution.",
    ),
}


@dataclass(frozen=True)
class ToolPolicyDecision:
    """
    策略决策输出（派生值，不落盘）。

    字段：
    - allowed：能力是否启用
    - requires_approval：执行前是否需要人工审批
    - reason：拒绝原因（英文，可直接回复给用户）
    - spec：命中的 tool 目录条目
    """

    allowed: bool
    requires_approval: bool
    spec: ToolSpec
    reason: Optional[str] = None


_DISABLED_REASONS: Dict[str, str] = {
    "web_search": "Web search is disabled by policy.",
    "file_write": "File write is disabled by policy.",
    "shell_exec": "Shell execution is disabled by policy.",
    "wasm_exec": "WASM execution is not yet enabled in this runtime.",
}


def _capability_enabled(capability: str, policy: ToolPolicyConfig) -> bool:
    if capability == "web_search":
        return policy.web_search_enabled
    if capability == "file_write":
        return policy.file_write_enabled
    if capability == "shell_exec":
        return policy.shell_enabled
    return policy.wasm_enabled


def _requires_approval_by_mode(spec: ToolSpec, policy: ToolPolicyConfig) -> bool:
    """
    基础审批要求（不含 file-write 生命周期）。

    规则：
    - read_only 能力只在 `approval_default and web_search_require_approval` 时需要审批（与模式无关）
    - strict：所有 side_effecting/privileged 能力都需要审批
    - balanced：仅 file_write 需要审批
    - relaxed：`approval_default` 且能力自身的 require 开关为真时需要审批（shell/wasm 无独立开关）
    """

    if spec.safety_tier == "read_only":
        return bool(policy.approval_default and policy.web_search_require_approval)
    if policy.approval_mode == "strict":
        return True
    if policy.approval_mode == "balanced":
        return spec.capability == "file_write"
    if not policy.approval_default:
        return False
    if spec.capability == "file_write":
        return policy.file_write_require_approval
    return True


def evaluate_tool_policy(tool_id: str, policy: ToolPolicyConfig, *, has_lease: bool = False) -> ToolPolicyDecision:
    """
    评估一次 tool 调用的策略决策。

    参数：
    - tool_id：`web.search|file.write|file.send|shell.exec|wasm.exec`
    - policy：能力策略配置
    - has_lease：调用方是否持有该能力的会话级 lease（仅 file-write 的 `session` 生命周期使用）

    返回：
    - ToolPolicyDecision；未知 tool id 视为不允许（不抛异常）
    """

    spec = TOOL_SPECS.get(tool_id)
    if spec is None:
        unknown = ToolSpec(tool_id=str(tool_id), capability="unknown", safety_tier="privileged", description="")
        return ToolPolicyDecision(allowed=False, requires_approval=False, spec=unknown, reason=f"Unknown tool: {tool_id}.")

    if not _capability_enabled(spec.capability, policy):
        return ToolPolicyDecision(
            allowed=False,
            requires_approval=False,
            spec=spec,
            reason=_DISABLED_REASONS[spec.capability],
        )

    if not _requires_approval_by_mode(spec, policy):
        return ToolPolicyDecision(allowed=True, requires_approval=False, spec=spec)

    if spec.capability != "file_write":
        return ToolPolicyDecision(allowed=True, requires_approval=True, spec=spec)

    # file-write 审批生命周期
    if policy.file_write_approval_mode == "always":
        return ToolPolicyDecision(allowed=True, requires_approval=False, spec=spec)
    if policy.file_write_approval_mode == "session":
        return ToolPolicyDecision(allowed=True, requires_approval=not has_lease, spec=spec)
    return ToolPolicyDecision(allowed=True, requires_approval=True, spec=spec)
