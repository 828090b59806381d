"""
Custom exceptions for the sentinel service controller.

Only ConfigurationError is fatal; everything else is recovered by backoff,
retried on the next control-loop pass, or surfaced as an event.
"""


class ControllerError(Exception):
    """Base error for the controller."""

    pass


class ConfigurationError(ControllerError):
    """Invalid configuration detected at startup (fatal)."""

    pass


class SentinelUnreachable(ControllerError):
    """A sentinel could not be reached or queried."""

    def __init__(self, endpoint_id: str, message: str):
        super().__init__(f"{endpoint_id}: {message}")
        self.endpoint_id = endpoint_id


class InvalidSentinelResponse(SentinelUnreachable):
    """A sentinel answered with something that is not a primary address."""

    pass


class QuorumLost(ControllerError):
    """Fewer sentinels agree (or are reachable) than the quorum requires."""

    pass


class StoreUnavailable(ControllerError):
    """The routing-target store cannot be read or written."""

    pass


class TargetNotFound(ControllerError):
    """The routing target does not exist in the store."""

    pass


class ApplyConflict(ControllerError):
    """The routing target changed since it was read (version mismatch)."""

    pass


class ApplyExhausted(ControllerError):
    """Retry budget consumed without a successful apply."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
