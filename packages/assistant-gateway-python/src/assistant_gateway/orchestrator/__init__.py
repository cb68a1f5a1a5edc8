"""
Turn pipeline（入站消息编排）。
"""

from __future__ import annotations

from assistant_gateway.orchestrator.commands import ParsedCommand, parse_command
from assistant_gateway.orchestrator.emitter import PhaseEmitter, PhaseEvent, PhaseHook
from assistant_gateway.orchestrator.pipeline import TurnPipeline
from assistant_gateway.orchestrator.planner import HeuristicIntentPlanner, LlmIntentPlanner, heuristic_plan
from assistant_gateway.orchestrator.services import GatewayServices, TurnContext, TurnResult
from assistant_gateway.orchestrator.state import OrchestratorState, PipelineCounters

__all__ = [
    "GatewayServices",
    "HeuristicIntentPlanner",
    "LlmIntentPlanner",
    "OrchestratorState",
    "ParsedCommand",
    "PhaseEmitter",
    "PhaseEvent",
    "PhaseHook",
    "PipelineCounters",
    "TurnContext",
    "TurnPipeline",
    "TurnResult",
    "heuristic_plan",
    "parse_command",
]
