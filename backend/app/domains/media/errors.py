"""Errors raised by the media upload lifecycle."""
from app.core.errors import UpstreamError, UpstreamTimeout


class MediaValidationError(Exception):
    """Raised for disallowed or malformed input, before any state is mutated."""
    pass


class RecordNotFound(Exception):
    """Raised when a storage key or record id is absent from every kind store."""
    pass


class StorageKeyConflict(Exception):
    """Raised when a storage key is already bound to a record."""
    pass


class RecordStoreError(UpstreamError):
    """Raised when the record store rejects or fails a call."""
    pass


class RecordStoreTimeout(RecordStoreError, UpstreamTimeout):
    """Raised when a record store call exceeds the statement timeout."""
    pass
