from __future__ import annotations


class GlueError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = str(code)


class ValidationError(GlueError):
    """Empty or missing required input. Raised before any side effect."""


class ProviderError(GlueError):
    """Embedding or generation service failure."""


class GenerationError(ProviderError):
    pass


class StorageError(GlueError):
    """Message content could not be durably stored or read."""


class PrivacyViolation(GlueError):
    """Opted-out or deleted content was about to reach a prompt.

    Not recoverable: this means a store query let a row through that it must
    have filtered.
    """
