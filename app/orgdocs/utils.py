from __future__ import annotations

import math
from datetime import datetime, timezone

from app.orgdocs.constants import AVERAGE_READING_SPEED


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are timezone=False)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def count_words(content: str | None) -> int:
    if not content:
        return 0
    return len(content.split())


def estimate_reading_time(content: str | None) -> int:
    """Minutes to read, never below 1."""
    return max(1, math.ceil(count_words(content) / AVERAGE_READING_SPEED))


def normalize_roles(roles) -> list[str]:
    """Deduplicated, sorted role identifiers; order never matters for access."""
    if not roles:
        return []
    return sorted({str(r).strip() for r in roles if str(r).strip()})
