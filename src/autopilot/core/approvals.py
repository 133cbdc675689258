"""Quality gate approval waits.

A paused goal waits for whichever comes first: an in-process resolution
(``resolve``), a decision persisted by another process (``poll``), or the
timeout. Late resolutions for a wait that already finished are ignored.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from .goal import ApprovalDecision

logger = logging.getLogger(__name__)


class ApprovalRegistry:
    """At most one outstanding approval wait per goal."""

    def __init__(self):
        self._pending: Dict[str, asyncio.Future] = {}

    def has_pending(self, goal_id: str) -> bool:
        return goal_id in self._pending

    async def wait(
        self,
        goal_id: str,
        timeout: float,
        poll: Optional[Callable[[], Optional[ApprovalDecision]]] = None,
        poll_interval: float = 2.0,
    ) -> ApprovalDecision:
        if goal_id in self._pending:
            raise RuntimeError(f"Goal {goal_id} already has an outstanding approval wait")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[goal_id] = future
        deadline = loop.time() + timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return ApprovalDecision.TIMEOUT
                step = min(remaining, poll_interval) if poll else remaining
                try:
                    return await asyncio.wait_for(asyncio.shield(future), timeout=step)
                except asyncio.TimeoutError:
                    if poll is not None:
                        decision = poll()
                        if decision is not None:
                            return ApprovalDecision(decision)
        finally:
            self._pending.pop(goal_id, None)
            if not future.done():
                future.cancel()

    def resolve(self, goal_id: str, decision: ApprovalDecision) -> bool:
        """Deliver a decision; False if no wait is outstanding for the goal."""
        future = self._pending.get(goal_id)
        if future is None or future.done():
            return False
        future.set_result(ApprovalDecision(decision))
        logger.info(f"Approval for goal {goal_id} resolved: {ApprovalDecision(decision).value}")
        return True

    def resolve_all(self, decision: ApprovalDecision = ApprovalDecision.TIMEOUT) -> int:
        """Resolve every outstanding wait (used on shutdown)."""
        resolved = 0
        for goal_id in list(self._pending):
            if self.resolve(goal_id, decision):
                resolved += 1
        return resolved
