"""Coarse lifecycle events for external automation.

Engines fire events without waiting on consumers. A sink that raises is
logged and ignored, and the default sink discards everything.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..utils.stream_parser import parse_jsonl_to_models

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    GOAL_STARTED = "goal.started"
    GOAL_COMPLETED = "goal.completed"
    GOAL_FAILED = "goal.failed"
    GOAL_STALLED = "goal.stalled"
    GOAL_ITERATION = "goal.iteration"
    PLAN_STARTED = "plan.started"
    PLAN_COMPLETED = "plan.completed"
    PLAN_FAILED = "plan.failed"
    PLAN_TASK_COMPLETED = "plan.task.completed"
    PLAN_TASK_FAILED = "plan.task.failed"


class EventData(BaseModel):
    """Payload shared by all automation events."""
    id: str
    goal: Optional[str] = None
    status: Optional[str] = None
    score: Optional[int] = None
    duration_seconds: Optional[float] = None
    iteration: Optional[int] = None
    task_id: Optional[str] = None
    error: Optional[str] = None


class AutomationEvent(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: EventData

    @field_serializer("timestamp")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()


class EventSink(ABC):
    @abstractmethod
    def emit(self, event: AutomationEvent) -> None:
        pass


class NullEventSink(EventSink):
    def emit(self, event: AutomationEvent) -> None:
        return None


class JsonlEventSink(EventSink):
    """Appends events to ``events.jsonl`` for other processes to tail."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def emit(self, event: AutomationEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(event.model_dump_json() + "\n")

    def read(self, limit: Optional[int] = None) -> List[AutomationEvent]:
        if not self.path.exists():
            return []
        return parse_jsonl_to_models(self.path.read_text(), AutomationEvent, limit=limit)


class EventBus:
    """Fan-out to registered sinks; never raises into the caller."""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def fire(self, event_type: EventType, **data: Any) -> Optional[AutomationEvent]:
        try:
            event = AutomationEvent(type=event_type, data=EventData(**data))
        except Exception as e:
            logger.warning(f"Dropping malformed {event_type} event: {e}")
            return None

        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed for {event.type}: {e}")
        return event


def event_payload(execution: Any, **extra: Any) -> Dict[str, Any]:
    """Common id/goal/duration fields for a goal or plan."""
    payload: Dict[str, Any] = {
        "id": execution.id,
        "goal": execution.goal,
        "status": str(execution.status),
        "duration_seconds": execution.usage.elapsed_seconds(),
    }
    payload.update(extra)
    return payload
