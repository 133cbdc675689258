"""Tests for automation events and best-effort notifications."""

import pytest

from autopilot.core.events import EventBus, EventSink, EventType, JsonlEventSink, event_payload
from autopilot.core.goal import Goal, NotifyTarget
from autopilot.core.notifications import NotificationChannel, Notifier, format_duration
from tests.fakes import RecordingChannel


class _ExplodingSink(EventSink):
    def emit(self, event):
        raise RuntimeError("sink down")


class _ExplodingChannel(NotificationChannel):
    async def deliver(self, channel, recipient, text):
        raise ConnectionError("gateway unreachable")


def test_jsonl_sink_round_trip(tmp_path):
    sink = JsonlEventSink(tmp_path / "events.jsonl")
    bus = EventBus([sink])
    goal = Goal(id="goal-1", goal="Ship it")

    bus.fire(EventType.GOAL_COMPLETED, **event_payload(goal, score=97))

    events = sink.read()
    assert len(events) == 1
    assert events[0].type == "goal.completed"
    assert events[0].data.id == "goal-1"
    assert events[0].data.score == 97
    assert events[0].data.status == "pending"


def test_failing_sink_does_not_stop_others(tmp_path):
    sink = JsonlEventSink(tmp_path / "events.jsonl")
    bus = EventBus([_ExplodingSink(), sink])

    event = bus.fire(EventType.PLAN_STARTED, id="plan-1")

    assert event is not None
    assert len(sink.read()) == 1


@pytest.mark.asyncio
async def test_notifier_routes_to_target():
    channel = RecordingChannel()
    notifier = Notifier(channel)

    delivered = await notifier.send(NotifyTarget(channel="slack", recipient="#ops"), "hello")

    assert delivered
    assert channel.messages == ["hello"]


@pytest.mark.asyncio
async def test_notifier_without_target_is_noop():
    channel = RecordingChannel()

    assert await Notifier(channel).send(None, "hello") is False
    assert channel.messages == []


@pytest.mark.asyncio
async def test_default_target_is_used():
    channel = RecordingChannel()
    notifier = Notifier(channel, default_target=NotifyTarget(channel="log", recipient="ops"))

    assert await notifier.send(None, "hi")
    assert channel.messages == ["hi"]


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed():
    notifier = Notifier(_ExplodingChannel())

    assert await notifier.send(NotifyTarget(channel="slack", recipient="#ops"), "hello") is False


@pytest.mark.parametrize("seconds, expected", [(45, "45s"), (200, "3m20s"), (7500, "2h5m")])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
