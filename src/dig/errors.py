"""Error taxonomy for the DIG event store."""


class DigError(Exception):
    """Base class for every error raised by the store and engine."""


class ValidationError(DigError, ValueError):
    """A candidate event is malformed or incomplete. Nothing was written."""

    def __init__(self, field: str, constraint: str):
        self.field = field
        self.constraint = constraint
        super().__init__(f"{field}: {constraint}")


class DuplicateIdError(DigError):
    """An event with this id is already stored. The original is unchanged."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event already exists: {event_id}")


class NotFoundError(DigError, LookupError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event not found: {event_id}")


class IdentityCollisionError(DigError):
    """Generated ids kept colliding with stored ones."""


class StoreError(DigError):
    """The database refused a write for a reason other than a duplicate id."""


class AggregationCancelled(DigError):
    """An aggregation run was cancelled or timed out; partial results are discarded."""


class DanglingReferenceWarning(UserWarning):
    """A reference field points at an id that is not in the store."""
