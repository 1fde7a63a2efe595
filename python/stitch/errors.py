class StitchError(Exception):
    """Base class for stitch-specific exceptions."""


class ShapeError(StitchError, ValueError):
    """Raised when shapes or operation parameters do not fit together."""


class LifetimeError(StitchError, ReferenceError):
    """Raised on use of a buffer whose reference count already reached zero."""

    def __init__(self, message: str, *, slot=None):
        super().__init__(message)
        self.slot = slot


class BackendUnavailableError(StitchError, RuntimeError):
    def __init__(self, name: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"backend {name!r} is not available{detail}")
        self.name = name
        self.reason = reason


class ExecutionError(StitchError, RuntimeError):
    """Raised when an expression cannot run against the bound buffers."""
