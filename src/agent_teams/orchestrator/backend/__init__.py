"""Reasoning engine and tool executor implementations."""

from agent_teams.orchestrator.backend.base import (
    AnalysisResult,
    EngineUsage,
    ExecutionRequest,
    ExecutionResult,
    ReasoningEngine,
    ReviewRequest,
    ReviewResult,
    ToolExecutor,
    call_with_timeout,
)
from agent_teams.orchestrator.backend.cli_engine import CliReasoningEngine
from agent_teams.orchestrator.backend.echo_engine import EchoReasoningEngine, EchoToolExecutor

__all__ = [
    "AnalysisResult",
    "CliReasoningEngine",
    "EchoReasoningEngine",
    "EchoToolExecutor",
    "EngineUsage",
    "ExecutionRequest",
    "ExecutionResult",
    "ReasoningEngine",
    "ReviewRequest",
    "ReviewResult",
    "ToolExecutor",
    "call_with_timeout",
]
