"""Domain exceptions raised by the ingestion pipeline."""

from __future__ import annotations


class IngestError(Exception):
    """Base class for all pipeline errors."""


class ParseError(IngestError):
    """File or archive entry could not be parsed into rows + headers."""


class RowError(IngestError, ValueError):
    """A single row is invalid; recorded per row, never fails the chunk."""

    def __init__(self, reason: str, row_index: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.row_index = row_index


class InvalidTransitionError(IngestError):
    """Batch or chunk status would move backwards."""


class BatchNotFoundError(IngestError):
    pass


class ChunkNotFoundError(IngestError):
    pass


class SubmissionNotFoundError(IngestError):
    pass


class BatchStateError(IngestError):
    """Operator action is not valid for the batch's current status."""


class SourceFileUnavailableError(IngestError):
    """The stored original upload is gone, so the batch cannot be re-dispatched."""
