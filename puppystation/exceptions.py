"""Custom exception hierarchy for puppystation."""


class StationError(Exception):
    """Base for all Puppy Station errors."""


class ValidationError(StationError):
    """Malformed or missing required input."""


class NotFoundError(StationError):
    """Reference to an agent or review that does not exist."""


class ConflictError(StationError):
    """An entity with the given ID already exists."""


class StorageError(StationError):
    """The underlying database failed; the operation was rolled back."""
