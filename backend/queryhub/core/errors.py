from enum import Enum


class QueryHubError(Exception):
    """Base error for all user-facing QueryHub exceptions."""


class IngestionFailure(str, Enum):
    NOT_TABULAR = "not_tabular"
    STORAGE_REJECTED = "storage_rejected"


class IngestionError(QueryHubError):
    """Raised when an uploaded file cannot be turned into a table."""

    def __init__(self, message: str, reason: IngestionFailure = IngestionFailure.STORAGE_REJECTED):
        super().__init__(message)
        self.reason = reason


class MalformedInputError(IngestionError):
    """Raised when uploaded content cannot be parsed as delimited text."""

    def __init__(self, message: str):
        super().__init__(message, reason=IngestionFailure.NOT_TABULAR)


class InvalidIdentifier(QueryHubError):
    """Raised when a table or column name cannot be safely quoted."""


class DuplicateTableError(QueryHubError):
    """Raised when another upload already owns the table name."""


class ExecutionError(QueryHubError):
    """Raised when the query engine fails or a run cannot be resumed."""


class InvalidContinuationError(ExecutionError):
    """Raised when a continuation token is forged, malformed or expired."""


class TransportError(QueryHubError):
    """Raised when the polling client cannot reach the server."""
