"""Exception hierarchy for KeyAI.

Each class maps to one failure domain of the capture pipeline. Most of them
are absorbed close to where they are raised and turned into log lines and
metric counters; only a failure to open the database is fatal.
"""


class KeyAIError(Exception):
    """Base class for all KeyAI errors."""


class PermissionDeniedError(KeyAIError):
    """The platform refused to install the global key hook."""


class CaptureError(KeyAIError):
    """The key hook failed at runtime."""


class PatternError(KeyAIError):
    """A masking rule or window pattern could not be compiled."""

    def __init__(self, name: str, pattern: str, reason: str):
        self.name = name
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid pattern for rule '{name}': {reason}")


class StoreError(KeyAIError):
    """A database operation failed."""


class SearchError(KeyAIError):
    """A search could not be executed."""
