"""Error types raised while ingesting activity files.

Decoding problems (DecodeError, InvalidFormat, InvalidArchive) mark a file as
failed. UnsupportedFormat and the ActivitySkipped family mark it as skipped:
the file is either not an activity recording or does not qualify for import.
"""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for all ingestion errors."""


class DecodeError(IngestionError):
    """Raised when a binary or XML activity payload cannot be decoded.

    Attributes:
        offset: Byte offset in the payload where decoding stopped, if known
    """

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte offset {offset})"
        super().__init__(message)


class InvalidFormat(DecodeError):
    """Raised when a document is not well-formed."""


class InvalidArchive(IngestionError):
    """Raised when an export archive cannot be opened."""


class UnsupportedFormat(IngestionError):
    """Raised for files that are not a supported activity format."""


class ActivitySkipped(IngestionError):
    """A file decoded fine but does not qualify as an importable activity."""


class NoGpsData(ActivitySkipped):
    def __init__(self) -> None:
        super().__init__("No GPS data found")


class TooShort(ActivitySkipped):
    def __init__(self, minimum_km: float = 0.1) -> None:
        super().__init__(f"Activity too short (< {minimum_km * 1000:g}m)")


class MissingStartDate(ActivitySkipped):
    def __init__(self) -> None:
        super().__init__("Missing start date")


class DuplicateDetected(ActivitySkipped):
    def __init__(self, existing: Any) -> None:
        self.existing = existing
        name = getattr(existing, "name", None) or "Untitled"
        existing_id = getattr(existing, "id", None)
        message = f'Duplicate of "{name}"'
        if existing_id is not None:
            message = f"{message} ({existing_id})"
        super().__init__(message)
