"""Executor that runs each turn through a model CLI subprocess.

The prompt goes to the process's stdin. Stdout is expected to be the CLI's
JSON result object (``result``, ``is_error``, ``usage``); plain text output
is accepted as the turn's text with no token accounting.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

from ..core.config import ExecutorConfig
from .base import AgentTurnExecutor, TokenUsage, TurnRequest, TurnResult, TurnStatus

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 500


def _summarize(text: str) -> Optional[str]:
    """Last non-empty paragraph of the output, which is where CLIs put their wrap-up."""
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    if not paragraphs:
        return None
    return paragraphs[-1][:MAX_SUMMARY_CHARS]


def _parse_usage(usage: Dict[str, Any]) -> TokenUsage:
    input_tokens = int(usage.get("input_tokens", 0) or 0)
    input_tokens += int(usage.get("cache_read_input_tokens", 0) or 0)
    input_tokens += int(usage.get("cache_creation_input_tokens", 0) or 0)
    output_tokens = int(usage.get("output_tokens", 0) or 0)
    return TokenUsage(input=input_tokens, output=output_tokens, total=input_tokens + output_tokens)


def parse_cli_output(stdout: str) -> TurnResult:
    """Turn the CLI's stdout into a :class:`TurnResult`."""
    text = stdout.strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None

    if not isinstance(payload, dict):
        return TurnResult(status=TurnStatus.OK, summary=_summarize(text), output_text=text)

    output = str(payload.get("result") or "")
    usage = _parse_usage(payload.get("usage") or {})
    if payload.get("is_error"):
        return TurnResult(
            status=TurnStatus.ERROR,
            output_text=output,
            error=output or str(payload.get("subtype", "unknown error")),
            token_usage=usage,
        )
    return TurnResult(
        status=TurnStatus.OK,
        summary=_summarize(output),
        output_text=output,
        token_usage=usage,
    )


class CommandTurnExecutor(AgentTurnExecutor):
    """Runs ``config.command`` once per turn."""

    def __init__(self, config: ExecutorConfig):
        self.config = config

    def _build_command(self, request: TurnRequest) -> List[str]:
        cmd = list(self.config.command)
        if request.model:
            cmd.extend(["--model", request.model])
        return cmd

    def _build_env(self, request: TurnRequest) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.config.env)
        env["AUTOPILOT_SESSION_KEY"] = request.session_key
        if request.agent_id:
            env["AUTOPILOT_AGENT_ID"] = request.agent_id
        return env

    async def run_isolated_turn(self, request: TurnRequest) -> TurnResult:
        cmd = self._build_command(request)
        logger.debug(f"Running turn {request.session_key}: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(request),
                cwd=self.config.working_dir,
            )
        except OSError as e:
            return TurnResult.from_error(f"Failed to start {cmd[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(request.prompt.encode()),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return TurnResult.from_error(f"Turn timed out after {self.config.timeout_seconds:.0f}s")
        except asyncio.CancelledError:
            # Shutdown: don't leave the CLI running without a reader
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            err = stderr.decode(errors="replace").strip()[-2000:]
            return TurnResult.from_error(f"Exit code {process.returncode}: {err or 'no stderr'}")

        return parse_cli_output(stdout.decode(errors="replace"))
