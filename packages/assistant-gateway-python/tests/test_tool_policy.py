from __future__ import annotations

import pytest

from assistant_gateway.config.loader import ToolPolicyConfig
from assistant_gateway.safety.tool_policy import TOOL_SPECS, evaluate_tool_policy


def _policy(**overrides) -> ToolPolicyConfig:
    return ToolPolicyConfig.model_validate(overrides)


def test_tool_catalog_covers_all_capability_surfaces() -> None:
    assert set(TOOL_SPECS) == {"web.search", "file.write", "file.send", "shell.exec", "wasm.exec"}
    assert TOOL_SPECS["web.search"].safety_tier == "read_only"
    assert TOOL_SPECS["file.send"].capability == "file_write"
    assert TOOL_SPECS["shell.exec"].safety_tier == "privileged"


def test_unknown_tool_is_denied_without_raising() -> None:
    decision = evaluate_tool_policy("net.raw", _policy())
    assert decision.allowed is False
    assert decision.requires_approval is False
    assert decision.reason == "Unknown tool: net.raw."


@pytest.mark.parametrize(
    "tool_id, flag, reason",
    [
        ("web.search", "web_search_enabled", "Web search is disabled by policy."),
        ("file.write", "file_write_enabled", "File write is disabled by policy."),
        ("file.send", "file_write_enabled", "File write is disabled by policy."),
    ],
)
def test_disabled_capability_is_denied_with_reason(tool_id: str, flag: str, reason: str) -> None:
    decision = evaluate_tool_policy(tool_id, _policy(**{flag: False}))
    assert decision.allowed is False
    assert decision.reason == reason


def test_sandbox_surfaces_are_disabled_by_default() -> None:
    assert evaluate_tool_policy("shell.exec", _policy()).reason == "Shell execution is disabled by policy."
    assert evaluate_tool_policy("wasm.exec", _policy()).reason == "WASM execution is not yet enabled in this runtime."


def test_balanced_mode_gates_file_write_only() -> None:
    policy = _policy(approval_mode="balanced", shell_enabled=True)
    assert evaluate_tool_policy("web.search", policy).requires_approval is False
    assert evaluate_tool_policy("file.write", policy).requires_approval is True
    assert evaluate_tool_policy("file.send", policy).requires_approval is True
    assert evaluate_tool_policy("shell.exec", policy).requires_approval is False


def test_strict_mode_gates_every_side_effect() -> None:
    policy = _policy(approval_mode="strict", shell_enabled=True, wasm_enabled=True)
    for tool_id in ("file.write", "file.send", "shell.exec", "wasm.exec"):
        decision = evaluate_tool_policy(tool_id, policy)
        assert decision.allowed is True
        assert decision.requires_approval is True, tool_id
    assert evaluate_tool_policy("web.search", policy).requires_approval is False


def test_read_only_search_needs_both_default_and_own_flag() -> None:
    assert evaluate_tool_policy("web.search", _policy(web_search_require_approval=True)).requires_approval is True
    relaxed = _policy(web_search_require_approval=True, approval_default=False)
    assert evaluate_tool_policy("web.search", relaxed).requires_approval is False


def test_relaxed_mode_follows_capability_flags() -> None:
    policy = _policy(approval_mode="relaxed", file_write_require_approval=False, shell_enabled=True)
    assert evaluate_tool_policy("file.write", policy).requires_approval is False
    assert evaluate_tool_policy("shell.exec", policy).requires_approval is True

    no_default = _policy(approval_mode="relaxed", approval_default=False, shell_enabled=True)
    assert evaluate_tool_policy("file.write", no_default).requires_approval is False
    assert evaluate_tool_policy("shell.exec", no_default).requires_approval is False


def test_file_write_lifetime_modes() -> None:
    always = _policy(file_write_approval_mode="always")
    assert evaluate_tool_policy("file.write", always).requires_approval is False

    session = _policy(file_write_approval_mode="session")
    assert evaluate_tool_policy("file.write", session, has_lease=False).requires_approval is True
    assert evaluate_tool_policy("file.write", session, has_lease=True).requires_approval is False

    per_action = _policy(file_write_approval_mode="per_action")
    assert evaluate_tool_policy("file.write", per_action, has_lease=True).requires_approval is True
