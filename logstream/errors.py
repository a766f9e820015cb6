"""Exception types surfaced through error events and completion callbacks."""


class LogStreamError(Exception):
    """Base class for all log stream errors."""


class ConfigurationError(LogStreamError):
    """Invalid or conflicting stream options."""


class SerializationError(LogStreamError):
    """A single record could not be serialized and was dropped."""


class RotationError(LogStreamError):
    """A filesystem step of rotation failed."""


class RotatorStateError(LogStreamError):
    """An operation was requested in a state that does not allow it."""


class DataLossError(LogStreamError):
    """A queued entry was discarded before reaching disk."""
