"""
Fetchable items — the closed Feed | Entry union held by the scheduler's queue.

A FetchableItem pairs a target with its current priority and attempt metadata.
Dispatch on the target uses `match`, so adding a variant is a checked change.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class FeedTarget(BaseModel):
    """Refresh a feed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["feed"] = "feed"
    feed_id: str


class EntryTarget(BaseModel):
    """Fetch an entry's full content."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["entry"] = "entry"
    entry_id: str
    feed_id: str = ""


FetchTarget = Annotated[Union[FeedTarget, EntryTarget], Field(discriminator="kind")]


class FetchableItem(BaseModel):
    """One line of a fetch plan."""

    model_config = ConfigDict(frozen=True)

    target: FetchTarget
    priority: float
    quality: float = 0.0
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return target_key(self.target)


def target_key(target: Union[FeedTarget, EntryTarget]) -> Tuple[str, str]:
    """(kind, identifier) used to address scheduler records."""
    match target:
        case FeedTarget(feed_id=feed_id):
            return ("feed", feed_id)
        case EntryTarget(entry_id=entry_id):
            return ("entry", entry_id)
    raise TypeError(f"not a fetch target: {target!r}")
