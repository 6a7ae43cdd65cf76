"""Domain errors raised by the ordering, snapshot and session services.

All of them derive from :class:`ValueError`, which is what the repositories
raise for invalid input, so callers catching ``ValueError`` keep working.
"""


class TrackerError(ValueError):
    """Base class for domain failures."""

    status_code: int = 400


class NotFound(TrackerError):
    """A referenced template, group, item, exercise or session does not exist."""

    status_code = 404


class StructuralMismatch(TrackerError):
    """A sibling reference belongs to a different parent than the one stated."""


class InvalidMove(TrackerError):
    """A move would break the shape of the tree."""


class SourceNotFound(NotFound):
    """The template being snapshotted vanished before the copy completed."""


class InstanceClosed(TrackerError):
    """A finished session was asked to change."""

    status_code = 409


class ConcurrentModification(TrackerError):
    """Server state diverged further than an optimistic prediction anticipated."""

    status_code = 409


class PrecisionExhausted(Exception):
    """No key fits between two neighbours; handled by compaction."""


ERRORS_BY_NAME = {
    cls.__name__: cls
    for cls in (
        TrackerError,
        NotFound,
        StructuralMismatch,
        InvalidMove,
        SourceNotFound,
        InstanceClosed,
        ConcurrentModification,
    )
}
