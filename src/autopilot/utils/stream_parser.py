"""Utilities for reading append-only JSONL logs."""

import json
import logging
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


def parse_jsonl_to_models(
    content: str,
    model_class: type[T],
    *,
    strict: bool = False,
    limit: Optional[int] = None,
) -> list[T]:
    """
    Parse JSONL content into a list of Pydantic models.

    A crash mid-append can leave a truncated last line, so invalid lines
    are skipped unless ``strict`` is set.

    Args:
        content: JSONL content (one JSON object per line)
        model_class: Pydantic model class to parse into
        strict: If True, raise on parse errors; if False, skip invalid lines
        limit: Keep only the last ``limit`` parsed entries

    Raises:
        ValidationError: If strict=True and a line fails validation
    """
    models = []
    for line in content.splitlines():
        if not line.strip():
            continue

        try:
            models.append(model_class.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            if strict:
                raise
            logger.debug(f"Failed to parse JSONL line: {e}")

    if limit is not None:
        return models[-limit:] if limit > 0 else []
    return models
