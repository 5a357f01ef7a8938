"""
Entry model — a fetched, embedded item belonging to a feed.

Content is immutable once embedded; interaction state is tracked by the engine
and scores are always derived. Built from ingestion dicts via ensure_entries().
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..errors import DataError


class InteractionState(str, Enum):
    NONE = "none"
    LIKED = "liked"
    DISLIKED = "disliked"
    READ = "read"


class Entry(BaseModel):
    """
    Entry payload consumed by the graph, ranking and scheduler.

    discovered_feeds: candidate feed URLs surfaced by the entry's content.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    feed_id: str
    embedding: List[float]
    tags: FrozenSet[str] = frozenset()
    published_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None
    discovered_feeds: List[str] = []

    @field_validator("id", "feed_id")
    @classmethod
    def _non_blank_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("identifier must not be blank")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> FrozenSet[str]:
        if value is None:
            return frozenset()
        tags = set()
        for tag in value:
            if not isinstance(tag, str) or not tag.strip():
                raise ValueError(f"unknown tag reference {tag!r}")
            tags.add(tag.strip().lower())
        return frozenset(tags)


def ensure_entry(item: Union[Dict[str, Any], Entry]) -> Entry:
    """Convert a dict to an Entry, reporting malformed records as DataError."""
    if isinstance(item, Entry):
        return item
    try:
        return Entry.model_validate(item)
    except ValidationError as exc:
        record_id = str(item.get("id", "")) if isinstance(item, dict) else ""
        raise DataError(f"invalid entry record: {exc}", record_id=record_id) from exc


def ensure_entries(items: List[Union[Dict[str, Any], Entry]]) -> List[Entry]:
    """Convert a list of dicts or Entries; the first malformed record raises DataError."""
    return [ensure_entry(item) for item in items]
