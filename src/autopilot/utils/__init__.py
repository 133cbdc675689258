"""Shared utility functions for the orchestrator."""

from .atomic_io import atomic_write_json, atomic_write_text
from .error_handling import ErrorContext, log_and_ignore, log_and_reraise, safe_call
from .json_extract import extract_json_object
from .stream_parser import parse_jsonl_to_models

__all__ = [
    # Atomic I/O
    "atomic_write_json",
    "atomic_write_text",
    # Error handling
    "log_and_ignore",
    "log_and_reraise",
    "safe_call",
    "ErrorContext",
    # Parsing
    "extract_json_object",
    "parse_jsonl_to_models",
]
