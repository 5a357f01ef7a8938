"""
Feed model — configured or discovered source of entries.

The configuration part (id, url, name, tags) is immutable; adaptive state
(refresh interval, quality, consistency, lifecycle) is owned by the scheduler.
"""

from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class FeedState(str, Enum):
    ACTIVE = "active"
    EPHEMERAL = "ephemeral"
    PRUNED = "pruned"


class Feed(BaseModel):
    """Feed configuration as loaded from the reader's config or created on discovery."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    url: str
    name: Optional[str] = None
    tags: FrozenSet[str] = frozenset()

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        if value is None:
            return frozenset()
        return frozenset(t.strip().lower() for t in value if isinstance(t, str) and t.strip())

    @classmethod
    def from_url(cls, url: str, tags=None) -> "Feed":
        """Feed whose identifier is its URL (used for discovered feeds)."""
        return cls(id=url, url=url, tags=tags or frozenset())
