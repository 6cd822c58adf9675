class AnomalisaError(Exception):
    """Base class for errors raised by the anomaly engine."""


class StoreUnavailable(AnomalisaError):
    """
    The counter store could not be reached, or an operation timed out.
    Callers must not fall back to empty statistics when they see this.
    """


class InvalidInput(AnomalisaError, ValueError):
    """Malformed project id, event name or user id. Raised before any write."""
