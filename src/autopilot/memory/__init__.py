"""Learning from past goal outcomes."""

from .learning_store import LearningStore, NullLearningStore, extract_keywords, similarity

__all__ = ["LearningStore", "NullLearningStore", "extract_keywords", "similarity"]
