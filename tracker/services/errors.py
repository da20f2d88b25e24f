"""Errors raised by the snapshot ingestion pipeline."""
from __future__ import annotations


class IngestError(Exception):
    """Base class for ingestion failures reported back to the uploader."""

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidFilenameFormat(IngestError):
    """Filename does not encode a kingdom id and a UTC capture time."""


class InvalidWorkbook(IngestError):
    """Upload content cannot be opened as a workbook."""


class WorksheetNotFound(IngestError):
    """No worksheet in the workbook holds the player table."""


class NoPlayerRows(IngestError):
    """Worksheet has no row with a lord id."""


class DuplicatePlayerRows(IngestError):
    """Same lord id appears on more than one row of one upload."""


class BatchWriteFailure(IngestError):
    """A write batch failed. The snapshot is marked FAILED and later batches are not run."""
