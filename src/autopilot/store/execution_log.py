"""Append-only JSONL logs per execution.

Logs are audit history: lines are only ever appended and flushed, never
rewritten. The one control-path reader is the progress evaluator, which
looks at the most recent iterations.
"""

import logging
import os
from pathlib import Path
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel

from ..core.goal import EvaluationRecord, IterationRecord
from ..core.plan import PlanEvaluationRecord, TaskTransitionRecord, WorkerRunRecord
from ..utils.stream_parser import parse_jsonl_to_models

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ExecutionLog(Generic[M]):
    """One JSONL file of ``model_class`` records."""

    def __init__(self, path: Path, model_class: type[M]):
        self.path = Path(path)
        self.model_class = model_class

    def append(self, entry: M) -> None:
        """Append one record and flush it to disk.

        Log writes are observability, so failures are logged and dropped.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(entry.model_dump_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"Failed to append to {self.path} (non-fatal): {e}")

    def read(self, limit: Optional[int] = None) -> List[M]:
        """All records in append order, or only the last ``limit``."""
        if not self.path.exists():
            return []
        try:
            content = self.path.read_text()
        except OSError as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return []
        return parse_jsonl_to_models(content, self.model_class, limit=limit)


class GoalLogs:
    """iterations.jsonl and evaluations.jsonl for one goal."""

    def __init__(self, log_dir: Path):
        self.iterations: ExecutionLog[IterationRecord] = ExecutionLog(
            log_dir / "iterations.jsonl", IterationRecord
        )
        self.evaluations: ExecutionLog[EvaluationRecord] = ExecutionLog(
            log_dir / "evaluations.jsonl", EvaluationRecord
        )


class PlanLogs:
    """tasks.jsonl, worker-runs.jsonl and evaluations.jsonl for one plan."""

    def __init__(self, log_dir: Path):
        self.tasks: ExecutionLog[TaskTransitionRecord] = ExecutionLog(
            log_dir / "tasks.jsonl", TaskTransitionRecord
        )
        self.worker_runs: ExecutionLog[WorkerRunRecord] = ExecutionLog(
            log_dir / "worker-runs.jsonl", WorkerRunRecord
        )
        self.evaluations: ExecutionLog[PlanEvaluationRecord] = ExecutionLog(
            log_dir / "evaluations.jsonl", PlanEvaluationRecord
        )
