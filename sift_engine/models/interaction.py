"""
Interaction model — an explicit like/dislike on an entry.

Interactions are immutable and append-only. The engine reads them through the
InteractionSource protocol; InteractionLog is the in-memory implementation used
by hosts without their own store and by the tests.
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Protocol, Sequence, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..errors import DataError


class InteractionKind(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class Interaction(BaseModel):
    """
    A single explicit signal on an entry.

    timestamp: naive datetimes are taken to be UTC.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str
    kind: InteractionKind
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class InteractionSource(Protocol):
    """Append-only interaction store as seen by the engine."""

    def extend(self, interactions: Iterable[Interaction]) -> int:
        """Append a batch; returns the number appended."""

    def interactions(self) -> Sequence[Interaction]:
        """All interactions, in append order."""

    def version(self) -> int:
        """Monotonic counter bumped on every append."""


class InteractionLog:
    """Thread-safe append-only interaction store."""

    def __init__(self, items: Iterable[Interaction] = ()):
        self._lock = threading.Lock()
        self._items: List[Interaction] = list(items)
        self._version = len(self._items)

    def append(self, interaction: Interaction) -> None:
        with self._lock:
            self._items.append(interaction)
            self._version += 1

    def extend(self, interactions: Iterable[Interaction]) -> int:
        batch = list(interactions)
        with self._lock:
            self._items.extend(batch)
            self._version += len(batch)
        return len(batch)

    def interactions(self) -> Sequence[Interaction]:
        with self._lock:
            return tuple(self._items)

    def version(self) -> int:
        with self._lock:
            return self._version

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def ensure_interaction(item: Union[Dict, "Interaction"]) -> "Interaction":
    """Convert a dict to an Interaction; a malformed record raises DataError."""
    if isinstance(item, Interaction):
        return item
    try:
        return Interaction.model_validate(item)
    except ValidationError as exc:
        record_id = str(item.get("entry_id", "")) if isinstance(item, dict) else ""
        raise DataError(f"invalid interaction record: {exc}", record_id=record_id) from exc


def ensure_interactions(
    items: List[Union[Dict, "Interaction"]],
) -> List["Interaction"]:
    """Convert list of dicts or Interactions to Interaction models; the first malformed dict raises DataError."""
    return [ensure_interaction(item) for item in items]


def latest_by_entry(interactions: Iterable[Interaction]) -> Dict[str, List[Interaction]]:
    """Group interactions per entry, each list ordered oldest first."""
    grouped: Dict[str, List[Interaction]] = {}
    for item in interactions:
        grouped.setdefault(item.entry_id, []).append(item)
    for items in grouped.values():
        items.sort(key=lambda i: i.timestamp)
    return grouped
