"""
Error taxonomy for the scoring & scheduling engine.

- DataError: a single record is rejected; the batch continues.
- ConvergenceWarning: ranking hit its iteration cap; result is approximate.
- ConsistencyViolation: a graph invariant failed; the computation is aborted
  and the last committed state is kept.
- ConfigurationError: invalid parameters; the engine refuses to start.
- RankingCancelled: a ranking pass was cancelled; its partial work is dropped.
"""


class SiftError(Exception):
    """Base class for engine errors."""


class DataError(SiftError, ValueError):
    """Malformed or inconsistent input record (bad embedding, blank tag, ...)."""

    def __init__(self, message: str, record_id: str = ""):
        super().__init__(message)
        self.record_id = record_id


class ConsistencyViolation(SiftError, RuntimeError):
    """A derived structure no longer satisfies its invariants."""


class ConfigurationError(SiftError, ValueError):
    """Rejected configuration value."""


class RankingCancelled(SiftError):
    """Raised inside a ranking pass when its cancellation token fires."""


class ConvergenceWarning(UserWarning):
    """Ranking stopped at the iteration cap before meeting the tolerance."""
