"""Custom exceptions for gradetags."""


class GradeTagsError(Exception):
    """Base class for all gradetags errors."""


class ModelOutputError(GradeTagsError):
    """Raised when text-generation output cannot be turned into a usable result.

    Covers a missing or unbalanced JSON object, an unexpected shape, and a
    response with no usable entries. Always retryable.
    """

    def __init__(self, message: str, raw_length: int | None = None):
        self.raw_length = raw_length
        super().__init__(message)


class TextGenerationError(GradeTagsError):
    """Raised when the text-generation provider fails or times out."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class InvalidRequestError(GradeTagsError):
    """Raised for caller input errors. No state is mutated."""


class NotFoundError(GradeTagsError):
    """Raised when a referenced entity does not exist for the owner."""
