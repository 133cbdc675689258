"""Cross-goal learning store.

Records how past goals ended and surfaces insights from similar goals
when a new one starts. Similarity is keyword overlap (Jaccard index).

Storage layout:
  <state_dir>/learnings.json
"""

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

# Guard against unbounded growth
MAX_LEARNINGS = 100
MAX_KEYWORDS = 20
SIMILARITY_THRESHOLD = 0.1

Outcome = Literal["completed", "failed", "stalled"]

_STOP_WORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "to", "of",
    "in", "for", "on", "with", "at", "by", "from", "as", "into", "through",
    "and", "or", "but", "if", "then", "else", "when", "where", "why", "how",
    "all", "each", "every", "both", "few", "more", "most", "other", "some",
    "such", "no", "not", "only", "same", "so", "than", "too", "very",
    "just", "also", "now", "here", "there", "this", "that", "these", "those",
    "i", "me", "my", "we", "our", "you", "your", "it", "its", "they", "them",
})

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def extract_keywords(text: str) -> List[str]:
    words = _NON_ALNUM.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in _STOP_WORDS][:MAX_KEYWORDS]


def similarity(a: List[str], b: List[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def _unique(items: List[str], limit: int) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen[:limit]


@dataclass
class GoalLearning:
    """How one goal ended."""
    id: str
    goal: str
    outcome: str
    score: int = 0
    iterations: int = 0
    duration_seconds: float = 0.0
    tokens_used: int = 0
    keywords: List[str] = field(default_factory=list)
    what_worked: List[str] = field(default_factory=list)
    what_failed: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


@dataclass
class LearningStats:
    total_goals: int = 0
    completed_goals: int = 0
    avg_score: int = 0
    avg_iterations: int = 0


class LearningStore:
    """JSON-file learning store. Writes are atomic (temp file + rename)."""

    def __init__(self, path: Path, max_entries: int = MAX_LEARNINGS, enabled: bool = True):
        self.path = Path(path)
        self.max_entries = max_entries
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _load(self) -> List[GoalLearning]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
            return [GoalLearning(**raw) for raw in data.get("learnings", [])]
        except (json.JSONDecodeError, OSError, TypeError) as e:
            logger.warning(f"Failed to load learning store {self.path}: {e}")
            return []

    def _save(self, learnings: List[GoalLearning]) -> None:
        stats = self._compute_stats(learnings)
        atomic_write_json(self.path, {
            "version": 1,
            "learnings": [asdict(entry) for entry in learnings],
            "stats": asdict(stats),
        })

    @staticmethod
    def _compute_stats(learnings: List[GoalLearning]) -> LearningStats:
        completed = [entry for entry in learnings if entry.outcome == "completed"]
        if not completed:
            return LearningStats(total_goals=len(learnings))
        return LearningStats(
            total_goals=len(learnings),
            completed_goals=len(completed),
            avg_score=round(sum(e.score for e in completed) / len(completed)),
            avg_iterations=round(sum(e.iterations for e in completed) / len(completed)),
        )

    def record(
        self,
        goal_id: str,
        goal: str,
        outcome: Outcome,
        score: int = 0,
        iterations: int = 0,
        duration_seconds: float = 0.0,
        tokens_used: int = 0,
        what_worked: Optional[List[str]] = None,
        what_failed: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ) -> bool:
        """Store or replace the learning for ``goal_id``. Returns True on success."""
        if not self._enabled:
            return False

        learnings = self._load()
        entry = GoalLearning(
            id=goal_id,
            goal=goal,
            outcome=outcome,
            score=score,
            iterations=iterations,
            duration_seconds=duration_seconds,
            tokens_used=tokens_used,
            keywords=extract_keywords(goal),
            what_worked=what_worked or [],
            what_failed=what_failed or [],
            suggestions=suggestions or [],
        )

        existing = next((i for i, e in enumerate(learnings) if e.id == goal_id), None)
        if existing is not None:
            entry.created_at = learnings[existing].created_at
            learnings[existing] = entry
        else:
            learnings.append(entry)

        learnings = learnings[-self.max_entries:]
        self._save(learnings)
        logger.info(f"Recorded learning for goal {goal_id} ({outcome})")
        return True

    def find_similar(self, goal_text: str, limit: int = 5) -> List[GoalLearning]:
        if not self._enabled:
            return []
        keywords = extract_keywords(goal_text)
        scored = [(similarity(keywords, entry.keywords), entry) for entry in self._load()]
        scored = [pair for pair in scored if pair[0] > SIMILARITY_THRESHOLD]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [entry for _, entry in scored[:limit]]

    def insights(self, goal_text: str) -> List[str]:
        similar = self.find_similar(goal_text)
        if not similar:
            return []

        insights = []
        completed = [e for e in similar if e.outcome == "completed"]
        failed = [e for e in similar if e.outcome in ("failed", "stalled")]

        if completed:
            avg_score = round(sum(e.score for e in completed) / len(completed))
            avg_iter = round(sum(e.iterations for e in completed) / len(completed))
            insights.append(
                f"Similar goals completed with avg score {avg_score}/100 in ~{avg_iter} iterations."
            )
            worked = _unique([w for e in completed for w in e.what_worked], 3)
            if worked:
                insights.append(f"What worked: {'; '.join(worked)}")

        if failed:
            avoid = _unique([w for e in failed for w in e.what_failed], 3)
            if avoid:
                insights.append(f"Avoid: {'; '.join(avoid)}")

        suggestions = _unique([s for e in similar for s in e.suggestions], 2)
        if suggestions:
            insights.append(f"Suggestions: {'; '.join(suggestions)}")

        return insights

    def learning_context(self, goal_text: str) -> Optional[str]:
        """Prompt section with insights from similar past goals, if any."""
        insights = self.insights(goal_text)
        if not insights:
            return None
        lines = ["## Insights from similar past goals", ""]
        lines.extend(f"- {insight}" for insight in insights)
        lines.append("")
        return "\n".join(lines)

    def stats(self) -> Dict[str, Any]:
        return asdict(self._compute_stats(self._load()))


class NullLearningStore(LearningStore):
    """Disabled store: records nothing, finds nothing."""

    def __init__(self):
        super().__init__(Path("/dev/null"), enabled=False)
