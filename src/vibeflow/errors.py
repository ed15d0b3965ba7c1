"""Exceptions raised by the VibeFlow engine."""


class VibeFlowError(Exception):
    """Base class for recoverable VibeFlow errors."""


class NoActiveSessionError(VibeFlowError):
    """Raised when an action targets a handle with no active session."""

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"No active session for {handle}")


class ConfigError(VibeFlowError):
    """Raised for invalid configuration values (e.g. an idle timeout)."""
