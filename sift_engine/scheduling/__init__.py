"""Fetch scheduling: refresh estimation, priorities, pruning and discovery."""

from .pruning import PrunePolicy
from .records import EntrySchedule, FeedSchedule, FeedStatus, StateTransition
from .refresh import RefreshEstimator, ewma
from .scheduler import Scheduler

__all__ = [
    "EntrySchedule",
    "FeedSchedule",
    "FeedStatus",
    "PrunePolicy",
    "RefreshEstimator",
    "Scheduler",
    "StateTransition",
    "ewma",
]
