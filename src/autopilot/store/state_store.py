"""Aggregate state documents for goals and plans.

Each execution kind lives in one JSON document holding every record of
that kind:

    <state_dir>/goals.json   {"version": 1, "goals": {id: goal}}
    <state_dir>/plans.json   {"version": 1, "plans": {id: plan}}

Every change is a full read-modify-write ending in an atomic rename, so a
crash mid-write leaves the previous document intact. A lock file
serializes writers across processes (service loop and CLI).
"""

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.goal import Goal
from ..core.plan import Plan
from ..errors import ExecutionNotFoundError, InvalidTransitionError, PersistenceError
from ..utils.atomic_io import atomic_write_json

# fcntl is Unix-only; without it writers in one process are still serialized
try:
    import fcntl
    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False

logger = logging.getLogger(__name__)

STORE_VERSION = 1

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")


class StateStore(Generic[M]):
    """Read/modify/write access to one aggregate document."""

    def __init__(self, path: Path, collection: str, model_class: type[M], kind: str):
        self.path = Path(path)
        self.collection = collection
        self.model_class = model_class
        self.kind = kind
        self._lock_path = self.path.with_suffix(f"{self.path.suffix}.lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "w") as lock_fd:
            if HAS_FCNTL:
                fcntl.flock(lock_fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                if HAS_FCNTL:
                    fcntl.flock(lock_fd, fcntl.LOCK_UN)

    def _read_document(self, strict: bool) -> Tuple[Dict[str, M], Dict[str, Any]]:
        """Valid records plus the raw form of records that failed validation.

        With ``strict`` an existing but unreadable document raises
        :class:`PersistenceError` instead of reading as empty.
        """
        if not self.path.exists():
            return {}, {}
        try:
            data = json.loads(self.path.read_text())
            if not isinstance(data, dict) or not isinstance(data.get(self.collection) or {}, dict):
                raise ValueError(f"expected an object with a '{self.collection}' map")
        except (ValueError, OSError) as e:
            if strict:
                raise PersistenceError(f"Refusing to rewrite unreadable {self.kind} store {self.path}: {e}") from e
            logger.warning(f"Unreadable {self.kind} store {self.path}, treating as empty: {e}")
            return {}, {}

        records: Dict[str, M] = {}
        invalid: Dict[str, Any] = {}
        for record_id, raw in (data.get(self.collection) or {}).items():
            try:
                records[record_id] = self.model_class.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid {self.kind} record {record_id}: {e}")
                invalid[record_id] = raw
        return records, invalid

    def _read_records(self) -> Dict[str, M]:
        return self._read_document(strict=False)[0]

    def _write_records(self, records: Dict[str, M], invalid: Dict[str, Any]) -> None:
        # Records this version cannot parse are carried over untouched
        stored: Dict[str, Any] = dict(invalid)
        for record_id, record in records.items():
            stored[record_id] = record.model_dump(mode="json")
        atomic_write_json(self.path, {"version": STORE_VERSION, self.collection: stored})

    def load(self) -> Dict[str, M]:
        """Snapshot of every record keyed by id."""
        return self._read_records()

    def get(self, record_id: str) -> Optional[M]:
        return self._read_records().get(record_id)

    def require(self, record_id: str) -> M:
        record = self.get(record_id)
        if record is None:
            raise ExecutionNotFoundError(self.kind, record_id)
        return record

    def list(self) -> List[M]:
        return sorted(self._read_records().values(), key=lambda r: getattr(r, "created_at", 0))

    def update_store(self, fn: Callable[[Dict[str, M]], R]) -> R:
        """Apply ``fn`` to the full record map and persist the result atomically.

        ``fn`` mutates the map in place; its return value is passed through.
        If ``fn`` raises, nothing is written. Records that fail validation
        are hidden from ``fn`` but written back unchanged.

        Raises:
            PersistenceError: If the existing document cannot be read
        """
        with self._locked():
            records, invalid = self._read_document(strict=True)
            result = fn(records)
            self._write_records(records, invalid)
            return result

    def save(self, record: M) -> M:
        """Insert or replace a record."""
        def _put(records: Dict[str, M]) -> M:
            records[record.id] = record
            return record

        return self.update_store(_put)

    def update(self, record_id: str, fn: Callable[[M], None]) -> M:
        """Mutate one record in place and persist it.

        Records in a terminal status are immutable; attempting to change one
        raises :class:`InvalidTransitionError`.
        """
        def _apply(records: Dict[str, M]) -> M:
            record = records.get(record_id)
            if record is None:
                raise ExecutionNotFoundError(self.kind, record_id)
            if getattr(record, "is_terminal", False):
                raise InvalidTransitionError(record_id, str(record.status), "update")
            fn(record)
            record.updated_at = datetime.now(UTC)
            return record.model_copy(deep=True)

        return self.update_store(_apply)


class GoalStore(StateStore[Goal]):
    """goals.json plus per-goal log directories."""

    def __init__(self, state_dir: Path):
        state_dir = Path(state_dir)
        super().__init__(state_dir / "goals.json", "goals", Goal, "goal")
        self.logs_root = state_dir / "goals"

    def log_dir(self, goal_id: str) -> Path:
        return self.logs_root / goal_id


class PlanStore(StateStore[Plan]):
    """plans.json plus per-plan log directories."""

    def __init__(self, state_dir: Path):
        state_dir = Path(state_dir)
        super().__init__(state_dir / "plans.json", "plans", Plan, "plan")
        self.logs_root = state_dir / "plans"

    def log_dir(self, plan_id: str) -> Path:
        return self.logs_root / plan_id
