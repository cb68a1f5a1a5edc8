"""
意图规划（planner）。

说明：
- `HeuristicIntentPlanner`：确定性规则，零外部调用；也是 LLM planner 失败时的兜底；
- `LlmIntentPlanner`：通过 GenerationService 请求严格 JSON 决策，解析失败/异常时回落到启发式；
  低于 `min_confidence` 的非 clarify 决策改写为 clarify。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from assistant_gateway.core.collaborators import GenerationService
from assistant_gateway.core.contracts import PlannerDecision

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"(?:what(?:'s| is)?\s+the\s+status|how(?:'s| is)\s+it\s+going|any\s+update|job\s+status)", re.IGNORECASE)
_STATUS_WORDS = frozenset({"status", "progress", "update"})
_RESEARCH_SIGNALS = ("research", "compare", "best ", "top ", "recommend", "web search", "one at a time")
_RECOMMEND_RE = re.compile(r"\b(recommend|which\s+.*\bshould\s+i\s+use|what\s+should\s+i\s+use)\b", re.IGNORECASE)
_CONSTRAINT_RES = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(budget|cost|price|cheap|expensive)\b|\$",
        r"\b(speed|latency|performance|throughput)\b",
        r"\b(quality|accuracy|fidelity)\b",
        r"\b(mac|windows|linux|ios|android|platform|desktop|mobile)\b",
        r"\b(open source|license|privacy|self[- ]?hosted|cloud)\b",
        r"\b(integration|workflow|team|enterprise|personal)\b",
    )
)
_SEND_RE = re.compile(r"\b(send|share|deliver|attach)\b")
_FILE_RE = re.compile(r"\b(file|doc|document|attachment|pdf|markdown|txt)\b")

MIN_RESEARCH_LENGTH = 18


def is_status_query(message: str) -> bool:
    """直接状态查询（`status` / `progress` / "any update" 等）。"""

    normalized = message.strip().lower()
    compact = re.sub(r"[!?.,]+$", "", normalized)
    return compact in _STATUS_WORDS or bool(_STATUS_RE.search(normalized))


def wants_attachment(message: str) -> bool:
    normalized = message.lower()
    return bool(_SEND_RE.search(normalized)) and bool(_FILE_RE.search(normalized))


def detect_file_format(message: str) -> str:
    normalized = message.lower()
    if re.search(r"\bmarkdown|\.md\b", normalized):
        return "md"
    if re.search(r"\btxt|text file\b", normalized):
        return "txt"
    if re.search(r"\bdoc|word\b", normalized):
        return "doc"
    return "md"


def clarify_question(message: str) -> str:
    return f'You asked: "{message.strip()}". Do you want a quick answer, deeper research, or an action plan?'


def heuristic_plan(message: str, *, has_active_job: bool = False) -> PlannerDecision:
    """确定性启发式规划。"""

    trimmed = message.strip()
    if not trimmed:
        return PlannerDecision(
            intent="clarify", confidence=0.1, question="What would you like me to help with?", reason="empty_message"
        )
    if trimmed.startswith("/"):
        return PlannerDecision(intent="command", confidence=1.0, reason="explicit_command")

    normalized = trimmed.lower()
    if is_status_query(trimmed) and has_active_job:
        return PlannerDecision(intent="status_query", confidence=0.9, reason="heuristic_status_query")

    if _RECOMMEND_RE.search(normalized) and not any(p.search(normalized) for p in _CONSTRAINT_RES):
        return PlannerDecision(
            intent="clarify",
            confidence=0.62,
            question="Before I recommend one option, what matters most: cost, quality, speed, ecosystem, or privacy?",
            reason="heuristic_recommendation_missing_constraints",
        )

    if any(s in normalized for s in _RESEARCH_SIGNALS) and len(trimmed) >= MIN_RESEARCH_LENGTH:
        return PlannerDecision(
            intent="web_research",
            confidence=0.75,
            needs_worker=True,
            query=trimmed,
            provider="auto",
            send_attachment=wants_attachment(trimmed),
            file_format=detect_file_format(trimmed),  # type: ignore[arg-type]
            reason="heuristic_research_route",
        )

    if len(trimmed.split()) <= 2:
        return PlannerDecision(intent="clarify", confidence=0.45, question=clarify_question(trimmed), reason="heuristic_ambiguous")

    return PlannerDecision(intent="chat", confidence=0.7, reason="heuristic_chat")


class HeuristicIntentPlanner:
    """只用启发式规则的 planner（默认）。"""

    async def plan(
        self,
        session_id: str,
        message: str,
        *,
        auth_preference: str = "auto",
        has_active_job: bool = False,
    ) -> PlannerDecision:
        return heuristic_plan(message, has_active_job=has_active_job)


def parse_planner_json(raw: str) -> Optional[Dict[str, Any]]:
    """解析 planner 输出：先整体解析，失败则截取首个 `{` 到最后一个 `}`。"""

    text = str(raw or "").strip()
    if not text:
        return None
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def _pick(raw: Any, allowed: tuple[str, ...]) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value if value in allowed else None


def _confidence(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 0.5
    return max(0.0, min(1.0, float(raw)))


def _text(raw: Any, limit: Optional[int] = None) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    return raw.strip()[:limit] if limit else raw.strip()


_PLANNER_PROMPT = """You are the assistant gateway planner.
Classify user input and choose a safe next action.

Return ONLY strict JSON with this exact shape:
{"intent":"chat|web_research|status_query|clarify|command","confidence":0.0,"needsWorker":true,"query":"","question":"","provider":"searxng|openai|brave|perplexity|brightdata|auto","sendAttachment":false,"fileFormat":"md|txt|doc","fileName":"","reason":""}

Rules:
- Use intent=status_query when user asks progress/status/check-in.
- Use intent=web_research for web research/comparison tasks.
- Set sendAttachment=true only when user explicitly asks to create and send a file/doc back.
- Default fileFormat to md unless user clearly requests txt/doc.
- Use intent=clarify when the request is ambiguous.
- Keep reason short.
"""


class LlmIntentPlanner:
    """
    基于 GenerationService 的 planner。

    参数：
    - generation：文本生成协作方
    - min_confidence：低于该置信度的非 clarify 决策改写为 clarify
    """

    def __init__(self, *, generation: GenerationService, min_confidence: float = 0.65) -> None:
        self._generation = generation
        self._min_confidence = float(min_confidence)

    async def plan(
        self,
        session_id: str,
        message: str,
        *,
        auth_preference: str = "auto",
        has_active_job: bool = False,
    ) -> PlannerDecision:
        trimmed = message.strip()
        if not trimmed or trimmed.startswith("/"):
            return heuristic_plan(trimmed, has_active_job=has_active_job)

        prompt = f"{_PLANNER_PROMPT}\nhasActiveJob: {str(bool(has_active_job)).lower()}\nuserMessage: {trimmed}\n"
        try:
            raw = await self._generation.generate_text(f"{session_id}::planner", prompt, auth_preference=auth_preference)
        except Exception:
            logger.warning("planner generation failed; using heuristic plan", exc_info=True)
            return heuristic_plan(trimmed, has_active_job=has_active_job)

        parsed = parse_planner_json(raw or "")
        if parsed is None:
            logger.debug("planner output not parseable; using heuristic plan")
            return heuristic_plan(trimmed, has_active_job=has_active_job)

        decision = PlannerDecision(
            intent=_pick(parsed.get("intent"), ("web_research", "status_query", "clarify", "command")) or "chat",  # type: ignore[arg-type]
            confidence=_confidence(parsed.get("confidence")),
            needs_worker=bool(parsed.get("needsWorker")),
            query=_text(parsed.get("query")),
            question=_text(parsed.get("question")),
            provider=_pick(parsed.get("provider"), ("searxng", "openai", "brave", "perplexity", "brightdata", "auto")),
            send_attachment=bool(parsed.get("sendAttachment")),
            file_format=_pick(parsed.get("fileFormat"), ("md", "txt", "doc")),  # type: ignore[arg-type]
            file_name=_text(parsed.get("fileName"), 80),
            reason=_text(parsed.get("reason")) or "llm_planner",
        )
        if decision.intent == "clarify" and not decision.question:
            decision = decision.model_copy(update={"question": "Can you clarify what output you want first?"})
        if decision.confidence < self._min_confidence and decision.intent != "clarify":
            return PlannerDecision(
                intent="clarify",
                confidence=decision.confidence,
                question=f"I want to make sure I do this right. {clarify_question(trimmed)}",
                reason="low_confidence_clarify",
            )
        return decision
