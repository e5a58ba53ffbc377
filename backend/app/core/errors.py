"""Classified errors raised by the generation pipeline."""
from typing import Optional


class GenerationError(Exception):
    """Base class for every failure surfaced by ImageGenerationService.generate()."""

    kind: str = "generation"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(GenerationError):
    """Endpoint URL is missing or not an HTTP(S) URL."""

    kind = "config"

    def __init__(self, message: str = "Please configure a valid endpoint URL in settings") -> None:
        super().__init__(message)


class MissingReferenceError(GenerationError):
    """Avatar reference is required but none could be fetched."""

    kind = "missing_reference"

    def __init__(
        self,
        message: str = (
            "Character avatar not found. "
            "Please set a character avatar in character settings."
        ),
    ) -> None:
        super().__init__(message)


class ServiceError(GenerationError):
    """Backend answered with a non-2xx status (status 0 = transport failure)."""

    kind = "service"

    def __init__(self, status: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Service error: {status}")
        self.status = status


class UnrecognizedFormatError(GenerationError):
    """JSON success body matched none of the known image shapes."""

    kind = "unrecognized_format"

    def __init__(self, message: str = "Could not find image data in JSON response") -> None:
        super().__init__(message)


class UnsupportedFormatError(GenerationError):
    """Body is neither JSON, an image, nor a base64 string."""

    kind = "unsupported_format"

    def __init__(self, content_type: str) -> None:
        super().__init__(f"Unsupported response format: {content_type}")
        self.content_type = content_type


class GenerationInProgressError(GenerationError):
    """A generation for the same key is already running."""

    kind = "busy"

    def __init__(self, key: str) -> None:
        super().__init__(f"Generation already in progress for {key}")
        self.key = key
