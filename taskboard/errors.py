"""
Exception types for the task board.

Every error the API surface reports to a caller is a TaskBoardError; its
class name is the error kind returned over the wire.
"""


class TaskBoardError(Exception):
    """Base class for errors reported to API callers."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(TaskBoardError):
    """Raised when a required field is missing, empty or of the wrong type."""
    pass


class NotFound(TaskBoardError):
    """Raised when an id does not resolve to an existing entity."""

    def __init__(self, kind: str, entity_id: str):
        self.entity_kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class StoreError(TaskBoardError):
    """Raised when the underlying store is unavailable or rejects an operation."""
    pass


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass
