"""Agent turn executors."""

from .base import AgentTurnExecutor, TokenUsage, TurnRequest, TurnResult, TurnStatus, run_turn
from .command_executor import CommandTurnExecutor

__all__ = [
    "AgentTurnExecutor",
    "CommandTurnExecutor",
    "TokenUsage",
    "TurnRequest",
    "TurnResult",
    "TurnStatus",
    "run_turn",
]
