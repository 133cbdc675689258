"""Agent Turn Executor interface.

The orchestrator never talks to a model directly. Every unit of work
(an iteration, a worker task, a planning or evaluation turn) is handed to
an executor under a deterministic session key, one turn per key at a time.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class TurnStatus(str, Enum):
    """Outcome of one isolated turn."""
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class TurnRequest:
    """One isolated turn to run."""
    session_key: str  # e.g. goal:{id}, goal-eval:{id}, planner-worker:{id}:{task}
    prompt: str
    agent_id: Optional[str] = None
    model: Optional[str] = None  # None = executor default


@dataclass
class TurnResult:
    """Result of one isolated turn."""
    status: TurnStatus
    summary: Optional[str] = None
    output_text: Optional[str] = None
    error: Optional[str] = None
    token_usage: Optional[TokenUsage] = None

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.OK

    @property
    def total_tokens(self) -> int:
        return self.token_usage.total if self.token_usage else 0

    @classmethod
    def from_error(cls, error: str) -> "TurnResult":
        return cls(status=TurnStatus.ERROR, error=error)


class AgentTurnExecutor(ABC):
    """Abstract base class for turn executors."""

    @abstractmethod
    async def run_isolated_turn(self, request: TurnRequest) -> TurnResult:
        """
        Run one bounded unit of work and return its outcome.

        Implementations own any timeout; the orchestrator waits for as long
        as the turn takes. Errors should be reported as a result with
        ``status=ERROR`` rather than raised.
        """
        pass


async def run_turn(executor: AgentTurnExecutor, request: TurnRequest) -> TurnResult:
    """Run a turn, converting executor exceptions into error results."""
    try:
        return await executor.run_isolated_turn(request)
    except Exception as e:
        logger.warning(f"Turn {request.session_key} raised: {e}")
        return TurnResult.from_error(str(e))
