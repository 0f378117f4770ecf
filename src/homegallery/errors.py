"""Exceptions raised by the gallery and its HTTP client."""


class GalleryError(Exception):
    """Base class for gallery errors."""


class ValidationError(GalleryError):
    """Submitted service fields are missing or malformed."""


class GalleryClientError(GalleryError):
    """The gallery API answered a mutation with an error status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
