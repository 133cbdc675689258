"""Best-effort delivery of human-facing messages.

A failed delivery is logged and dropped; it never interrupts an engine.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .goal import NotifyTarget

logger = logging.getLogger(__name__)


class NotificationChannel(ABC):
    """Transport that can reach a human (chat, email, pager...)."""

    @abstractmethod
    async def deliver(self, channel: str, recipient: str, text: str) -> bool:
        """Send ``text``; return False or raise on failure."""
        pass


class NullChannel(NotificationChannel):
    """Drops every message."""

    async def deliver(self, channel: str, recipient: str, text: str) -> bool:
        return True


class LogChannel(NotificationChannel):
    """Writes messages to the log instead of a real transport."""

    async def deliver(self, channel: str, recipient: str, text: str) -> bool:
        logger.info(f"[notify {channel}:{recipient}] {text}")
        return True


class Notifier:
    """Routes messages for one execution to its configured target."""

    def __init__(
        self,
        channel: Optional[NotificationChannel] = None,
        default_target: Optional[NotifyTarget] = None,
    ):
        self.channel = channel or NullChannel()
        self.default_target = default_target

    async def send(self, target: Optional[NotifyTarget], text: str) -> bool:
        target = target or self.default_target
        if target is None:
            return False
        try:
            delivered = await self.channel.deliver(target.channel, target.recipient, text)
        except Exception as e:
            logger.warning(f"Notification to {target.channel}:{target.recipient} failed: {e}")
            return False
        if not delivered:
            logger.warning(f"Notification to {target.channel}:{target.recipient} was not delivered")
        return bool(delivered)


def format_duration(seconds: float) -> str:
    """Compact duration: ``2h5m``, ``3m20s`` or ``45s``."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h{minutes}m"
    if minutes > 0:
        return f"{minutes}m{secs}s"
    return f"{secs}s"
