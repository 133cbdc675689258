"""Console and file logging tagged with the owning goal or plan."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"

_PHASE_MARKERS = {
    "planning": "📝",
    "replanning": "🔁",
    "executing": "⚙️",
    "running": "⚙️",
    "evaluating": "🔍",
    "paused": "⏸️",
    "completed": "✅",
    "failed": "❌",
    "stopped": "⏹️",
    "budget_exceeded": "💸",
}


class ExecutionLogFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [component] [phase] [execution] message``."""

    def __init__(self, component_id: str, use_colors: bool = True):
        super().__init__()
        self.component_id = component_id
        self.use_colors = use_colors

    def _level(self, levelname: str) -> str:
        if not self.use_colors:
            return f"{levelname:8s}"
        return f"{_LEVEL_COLORS.get(levelname, '')}{levelname:8s}{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        tags = [f"[{self.component_id}]"]
        phase = getattr(record, "phase", None)
        if phase:
            tags.append(f"[{phase}]")
        execution_id = getattr(record, "execution_id", None)
        if execution_id:
            tags.append(f"[{execution_id}]")

        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{stamp} {self._level(record.levelname)} {' '.join(tags)} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps every record with an execution id and its current phase."""

    def __init__(self, logger: logging.Logger, execution_id: Optional[str] = None):
        super().__init__(logger, {})
        self.execution_id = execution_id
        self.current_phase: Optional[str] = None

    def set_execution_context(self, execution_id: Optional[str] = None, phase: Optional[str] = None) -> None:
        if execution_id:
            self.execution_id = execution_id
        if phase is not None:
            self.current_phase = phase

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        if self.execution_id:
            extra["execution_id"] = self.execution_id
        if self.current_phase:
            extra["phase"] = self.current_phase
        kwargs["extra"] = extra
        return msg, kwargs

    def phase_change(self, phase: str) -> None:
        """Switch phase and log the status change."""
        self.set_execution_context(phase=phase)
        self.info(f"{_PHASE_MARKERS.get(phase.lower(), '▶️')} Phase: {phase}")

    def progress(self, message: str) -> None:
        self.info(f"⏳ {message}")


def get_execution_logger(name: str, execution_id: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), execution_id)


def _json_formatter(component_id: str) -> logging.Formatter:
    return logging.Formatter(
        '{"timestamp":"%(asctime)s","component":"%(component)s","level":"%(levelname)s",'
        '"execution":"%(execution_id)s","message":"%(message)s","pid":"%(process)d"}',
        defaults={"component": component_id, "execution_id": ""},
    )


def setup_rich_logging(
    component_id: str,
    state_dir: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> logging.Logger:
    """
    Route the ``autopilot`` logger hierarchy to stderr and, optionally, a file.

    Args:
        component_id: Label shown in every line (e.g. "service")
        state_dir: State directory; file logs go to ``<state_dir>/logs``
        log_level: DEBUG, INFO, WARNING or ERROR
        use_file: Also write ``<component>-<pid>.log``
        use_json: Emit JSON lines on stderr instead of the readable format

    Returns:
        The package logger
    """
    package_logger = logging.getLogger("autopilot")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Reconfiguring must not leak the previous handlers' file descriptors
    for handler in list(package_logger.handlers):
        handler.close()
        package_logger.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    if use_json:
        console.setFormatter(_json_formatter(component_id))
    else:
        console.setFormatter(ExecutionLogFormatter(component_id, use_colors=sys.stderr.isatty()))
    package_logger.addHandler(console)

    if use_file:
        log_dir = Path(state_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{component_id}-{os.getpid()}.log")
        file_handler.setFormatter(ExecutionLogFormatter(component_id, use_colors=False))
        package_logger.addHandler(file_handler)

    return package_logger
