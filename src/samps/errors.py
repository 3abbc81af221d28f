"""Exception taxonomy for the sample library engine."""
from __future__ import annotations


class SampsError(Exception):
    """Base class for all engine errors."""


class NotFound(SampsError):
    """Probe target does not exist on disk."""


class DecodeUnavailable(SampsError):
    """Audio stream cannot be opened for reading."""


class FilesystemError(SampsError):
    """Scan, move, delete or attribute read failed."""


class EncodeFailure(SampsError):
    """Conversion could not open or write its destination."""


class PersistenceError(SampsError):
    """Library store could not be written."""
