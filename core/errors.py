"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class PermissionDenied(PermissionError):
    """Raised when the actor may not write to or delete from a scope."""

    def __init__(self, message: str, field: str = "scope"):
        super().__init__(message)
        self.field = field


class NotFound(LookupError):
    """Raised when a referenced memory, team or application does not exist."""

    def __init__(self, message: str, field: str = "id"):
        super().__init__(message)
        self.field = field


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable. Retryable."""


class PipelineUnavailable(EmbeddingProviderError):
    """Raised when an embedding job cannot be started at all."""
