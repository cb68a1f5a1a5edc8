"""
Shell 命令沙箱策略（deny-list）。

说明：
- 有序规则表，首个命中的规则生效；匹配大小写不敏感；
- 空命令（trim 后为空）视为 `empty_command` 拦截；
- 拦截只能由显式的一次性 `approve <token>` 覆盖，隐式 "yes" 不会解除拦截（由编排层保证）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence

from assistant_gateway.config.loader import ToolPolicyConfig


@dataclass(frozen=True)
class ShellBlockRule:
    """单条拦截规则。"""

    rule_id: str
    pattern: Pattern[str]


@dataclass(frozen=True)
class SandboxVerdict:
    """沙箱判定：`blocked=True` 时 `rule_id` 为命中的规则 id。"""

    blocked: bool
    rule_id: Optional[str] = None


def _rule(rule_id: str, pattern: str) -> ShellBlockRule:
    return ShellBlockRule(rule_id=rule_id, pattern=re.compile(pattern, re.IGNORECASE))


DEFAULT_SHELL_BLOCK_RULES: tuple[ShellBlockRule, ...] = (
    _rule("dangerous_rm_root", r"\brm\s+-rf\s+/(\s|$)"),
    _rule("fork_bomb", r":\(\)\s*\{\s*:\|:\s*&\s*\};:"),
    _rule("privilege_escalation", r"\b(sudo|su)\b"),
    _rule("disk_format", r"\b(mkfs|fdisk|diskutil\s+eraseDisk)\b"),
    _rule("raw_device_write", r"\bdd\s+if=.*\sof=/dev/"),
    _rule("shutdown_reboot", r"\b(shutdown|reboot|halt)\b"),
    _rule("curl_pipe_shell", r"\bcurl\b[^|]*\|\s*(bash|sh)\b"),
    _rule("wget_pipe_shell", r"\bwget\b[^|]*\|\s*(bash|sh)\b"),
)


def evaluate_shell_command(command: str, rules: Sequence[ShellBlockRule] = DEFAULT_SHELL_BLOCK_RULES) -> SandboxVerdict:
    """
    评估 shell 命令是否被拦截。

    参数：
    - command：原始命令串
    - rules：有序规则表（默认 `DEFAULT_SHELL_BLOCK_RULES`）
    """

    trimmed = str(command or "").strip()
    if not trimmed:
        return SandboxVerdict(blocked=True, rule_id="empty_command")
    for rule in rules:
        if rule.pattern.search(trimmed):
            return SandboxVerdict(blocked=True, rule_id=rule.rule_id)
    return SandboxVerdict(blocked=False)


def is_sandbox_target_enabled(target: str, policy: ToolPolicyConfig) -> bool:
    """判断沙箱执行面（`shell.exec` / `wasm.exec`）是否启用。"""

    if target == "shell.exec":
        return policy.shell_enabled
    return policy.wasm_enabled
