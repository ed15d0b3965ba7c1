"""VibeFlow - session flow tracking, parked thoughts and time echoes."""

__version__ = "0.1.0"
