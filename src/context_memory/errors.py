"""
Error hierarchy for the context memory engine.

Running out of token budget is not an error: entries that do not fit are
reported in the ``dropped`` list of a query result.
"""


class ContextMemoryError(Exception):
    """Base class for all engine errors."""


class ValidationError(ContextMemoryError, ValueError):
    """Malformed entry, filter or configuration."""


class PersistenceError(ContextMemoryError):
    """A backing store read or write failed."""


class RemoteCallError(ContextMemoryError):
    """The remote summarizer was unavailable, timed out or failed."""


class NotInitializedError(ContextMemoryError, RuntimeError):
    """A service was used before ``init()`` completed."""
