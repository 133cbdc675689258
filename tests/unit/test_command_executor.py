"""Tests for the subprocess turn executor."""

import json

import pytest

from autopilot.core.config import ExecutorConfig
from autopilot.llm.base import TurnRequest, TurnStatus, run_turn
from autopilot.llm.command_executor import CommandTurnExecutor, parse_cli_output


class TestParseCliOutput:
    def test_json_result_with_usage(self):
        stdout = json.dumps({
            "result": "Edited two files.\n\nAll tests pass.",
            "is_error": False,
            "usage": {"input_tokens": 100, "cache_read_input_tokens": 50, "output_tokens": 25},
        })

        result = parse_cli_output(stdout)

        assert result.ok
        assert result.summary == "All tests pass."
        assert result.token_usage.input == 150
        assert result.total_tokens == 175

    def test_error_payload(self):
        result = parse_cli_output(json.dumps({"is_error": True, "subtype": "error_max_turns"}))

        assert result.status == TurnStatus.ERROR
        assert result.error == "error_max_turns"

    def test_plain_text_is_ok_without_tokens(self):
        result = parse_cli_output("just some text\n")

        assert result.ok
        assert result.output_text == "just some text"
        assert result.total_tokens == 0


def _request(prompt="hello"):
    return TurnRequest(session_key="goal:goal-1", prompt=prompt, agent_id="dev")


class TestCommandTurnExecutor:
    @pytest.mark.asyncio
    async def test_prompt_goes_to_stdin(self):
        executor = CommandTurnExecutor(ExecutorConfig(command=["cat"]))

        result = await executor.run_isolated_turn(_request("ping"))

        assert result.ok
        assert result.output_text == "ping"

    @pytest.mark.asyncio
    async def test_session_key_is_exported(self):
        executor = CommandTurnExecutor(ExecutorConfig(
            command=["sh", "-c", "cat > /dev/null; echo $AUTOPILOT_SESSION_KEY $AUTOPILOT_AGENT_ID"],
        ))

        result = await executor.run_isolated_turn(_request())

        assert result.output_text == "goal:goal-1 dev"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_error(self):
        executor = CommandTurnExecutor(ExecutorConfig(command=["sh", "-c", "cat > /dev/null; echo nope >&2; exit 3"]))

        result = await executor.run_isolated_turn(_request())

        assert result.status == TurnStatus.ERROR
        assert result.error == "Exit code 3: nope"

    @pytest.mark.asyncio
    async def test_timeout_is_error(self):
        executor = CommandTurnExecutor(ExecutorConfig(command=["sleep", "5"], timeout_seconds=0.2))

        result = await executor.run_isolated_turn(_request())

        assert result.status == TurnStatus.ERROR
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_missing_binary_is_error(self):
        executor = CommandTurnExecutor(ExecutorConfig(command=["definitely-not-a-real-binary-xyz"]))

        result = await run_turn(executor, _request())

        assert result.status == TurnStatus.ERROR
        assert "Failed to start" in result.error
