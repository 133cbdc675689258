"""Scripted executors and builders shared by unit and integration tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

from autopilot.core.notifications import NotificationChannel
from autopilot.core.usage import ProviderUsage, UsageSummary, UsageSummarySource, UsageWindow
from autopilot.llm.base import AgentTurnExecutor, TokenUsage, TurnRequest, TurnResult, TurnStatus

Reply = Union[str, dict, TurnResult, Callable[[TurnRequest], Any]]


def ok(text: Union[str, dict] = "done", tokens: int = 100) -> TurnResult:
    if isinstance(text, dict):
        text = json.dumps(text)
    return TurnResult(
        status=TurnStatus.OK,
        summary=text[:80],
        output_text=text,
        token_usage=TokenUsage(input=tokens // 2, output=tokens - tokens // 2, total=tokens),
    )


def error(message: str = "boom", tokens: int = 10) -> TurnResult:
    return TurnResult(status=TurnStatus.ERROR, error=message, token_usage=TokenUsage(total=tokens))


def verdict(score: int, should_continue: bool = True, met: Optional[List[bool]] = None, **extra) -> dict:
    data = {
        "progressScore": score,
        "assessment": f"score {score}",
        "criteriaStatus": [{"criterion": f"c{i}", "met": m} for i, m in enumerate(met or [])],
        "shouldContinue": should_continue,
        "suggestedNextAction": "keep going",
    }
    data.update(extra)
    return data


def tasks_payload(*specs) -> dict:
    """``("t1",), ("t2", ["t1"])`` -> planner JSON."""
    tasks = []
    for spec in specs:
        task_id = spec[0]
        deps = spec[1] if len(spec) > 1 else []
        tasks.append({
            "id": task_id,
            "title": f"Do {task_id}",
            "description": f"Work for {task_id}",
            "dependencies": deps,
        })
    return {"tasks": tasks}


class ScriptedExecutor(AgentTurnExecutor):
    """Answers turns by session key prefix and records every request.

    A handler may be a fixed reply, a list of replies consumed in order
    (the last one repeats), or a callable taking the request.
    """

    def __init__(self, handlers: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.handlers: Dict[str, Any] = dict(handlers or {})
        self.delay = delay
        self.requests: List[TurnRequest] = []
        self.running = 0
        self.max_running = 0

    def on(self, prefix: str, reply: Any) -> "ScriptedExecutor":
        self.handlers[prefix] = list(reply) if isinstance(reply, list) else reply
        return self

    def requests_for(self, prefix: str) -> List[TurnRequest]:
        return [r for r in self.requests if r.session_key.startswith(prefix)]

    def _reply_for(self, request: TurnRequest) -> Any:
        matches = [p for p in self.handlers if request.session_key.startswith(p)]
        if not matches:
            return ok()
        handler = self.handlers[max(matches, key=len)]
        if isinstance(handler, list):
            return handler.pop(0) if len(handler) > 1 else handler[0]
        return handler

    async def run_isolated_turn(self, request: TurnRequest) -> TurnResult:
        self.requests.append(request)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            reply = self._reply_for(request)
            if callable(reply):
                reply = reply(request)
            if isinstance(reply, TurnResult):
                return reply
            return ok(reply)
        finally:
            self.running -= 1


class StaticUsageSource(UsageSummarySource):
    def __init__(self, used_percent: float = 0.0, fail: bool = False):
        self.used_percent = used_percent
        self.fail = fail

    async def load_usage_summary(self) -> UsageSummary:
        if self.fail:
            raise RuntimeError("usage endpoint down")
        return UsageSummary(providers=[
            ProviderUsage(provider="anthropic", windows=[UsageWindow(label="5h", used_percent=self.used_percent)])
        ])


class RecordingChannel(NotificationChannel):
    """Notification channel that keeps every delivered message."""

    def __init__(self):
        self.messages: List[str] = []

    async def deliver(self, channel: str, recipient: str, text: str) -> bool:
        self.messages.append(text)
        return True


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it holds or fail the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)
