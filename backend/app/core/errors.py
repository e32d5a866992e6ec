"""Base errors for calls into backing services (object store, record store)."""


class UpstreamError(Exception):
    """A backing service call failed. Retryable by the caller."""
    pass


class UpstreamTimeout(UpstreamError):
    """A backing service call exceeded its timeout."""
    pass
