"""
normalize / session 两个前置 phase 的纯函数部分，以及各 phase 的默认消息。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from assistant_gateway.config.loader import ToolPolicyConfig
from assistant_gateway.core.contracts import ChannelOrigin, InboundMessage
from assistant_gateway.core.errors import InboundValidationError

PHASE_ORDER = ("normalize", "session", "directives", "plan", "policy", "route", "persist", "dispatch")

PHASE_MESSAGES: Dict[str, str] = {
    "directives": "Resolving directives and command surface",
    "plan": "Planning intent",
    "policy": "Evaluating policy and approvals",
    "route": "Routing action",
    "persist": "Persisting response",
    "dispatch": "Dispatching response",
}

_AUTH_PREFERENCES = ("auto", "oauth", "api_key")
_QUEUE_MODES = ("steer", "collect", "followup")


@dataclass(frozen=True)
class NormalizedInbound:
    """normalize phase 输出。"""

    inbound: InboundMessage
    provider: str
    source: str  # whatsapp|gateway
    channel: str  # baileys|direct
    origin: Optional[ChannelOrigin] = None


def _meta(metadata: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in metadata:
        return metadata[camel]
    return metadata.get(snake)


def normalize_inbound(payload: Any) -> NormalizedInbound:
    """
    校验入站 payload 并派生 source/channel。

    异常：
    - InboundValidationError：payload 不满足契约（此时不产生任何副作用）
    """

    try:
        inbound = InboundMessage.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        raise InboundValidationError(
            "invalid inbound message",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc

    metadata = inbound.metadata or {}
    provider = str(metadata.get("provider") or "").strip()
    origin: Optional[ChannelOrigin] = None
    raw_origin = metadata.get("origin")
    if isinstance(raw_origin, Mapping):
        try:
            origin = ChannelOrigin.model_validate(raw_origin)
        except ValidationError:
            origin = None

    channel_id = (origin.channel_id if origin else "").strip().lower()
    transport = ((origin.transport or "") if origin else "").strip().lower()
    is_whatsapp = channel_id == "whatsapp" or provider.lower() == "baileys" or transport == "baileys"
    return NormalizedInbound(
        inbound=inbound,
        provider=provider,
        source="whatsapp" if is_whatsapp else "gateway",
        channel="baileys" if is_whatsapp else "direct",
        origin=origin,
    )


def normalize_auth_preference(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    return value if value in _AUTH_PREFERENCES else "auto"


def normalize_queue_mode(raw: Any, default: str = "steer") -> str:
    value = str(raw or "").strip().lower()
    return value if value in _QUEUE_MODES else default


def resolve_idempotency_key(raw: Any) -> Optional[str]:
    value = str(raw or "").strip()
    return value[:200] if value else None


def session_directives(metadata: Mapping[str, Any], *, default_queue_mode: str) -> Dict[str, Any]:
    """从 metadata 中提取 session phase 需要的字段（camelCase / snake_case 均可）。"""

    return {
        "auth_preference": normalize_auth_preference(_meta(metadata, "authPreference", "auth_preference")),
        "queue_mode": normalize_queue_mode(_meta(metadata, "queueMode", "queue_mode"), default_queue_mode),
        "idempotency_key": resolve_idempotency_key(_meta(metadata, "idempotencyKey", "idempotency_key")),
    }


def lease_key_for(policy: ToolPolicyConfig, *, auth_session_id: str, channel_session_id: str) -> str:
    """lease 作用域：`auth` 用持久身份（跨渠道共享），`channel` 用渠道 session id。"""

    return auth_session_id if policy.file_write_approval_scope == "auth" else channel_session_id


def policy_snapshot(policy: ToolPolicyConfig) -> Dict[str, Any]:
    """冻结进 run 记录的策略快照。"""

    return policy.model_dump(mode="json")
