"""
Error taxonomy.

Durability-affecting failures surface to the caller; delivery-affecting
failures are absorbed by the fan-out and only show up in delivery records.
"""


class CarelineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(CarelineError):
    """Bad input to a transition, e.g. resolving an unknown alert. No state changed."""


class ConflictError(CarelineError):
    """A compare-and-set lost: the record was already moved out of the expected state."""

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ChannelUnavailable(CarelineError):
    """No credentials or target configured for a channel. Skipped, never recorded as failed."""


class ChannelFailure(CarelineError):
    """A channel attempted a send and it did not go through."""


class PersistenceFailure(CarelineError):
    """The store could not be reached or refused the write."""
