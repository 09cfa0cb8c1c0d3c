"""Exception hierarchy.

Every error here is recoverable: callers return the user to an interactive
step instead of aborting.
"""

from __future__ import annotations


class HeadshotError(Exception):
    """Base class for all Headshot errors."""


class ImageLoadError(HeadshotError):
    """Reading the bytes behind an ImageHandle failed."""


class InvalidImageError(HeadshotError, ValueError):
    """The image cannot be decoded or the requested crop is degenerate."""


class DetectionError(HeadshotError):
    """A face detector failed outright."""


class WorkerUnavailableError(HeadshotError):
    """The image worker pool is saturated or already shut down."""


_STATUS_MESSAGES: dict[int, str] = {
    401: "Session expired. Please log in again.",
    403: "You don't have permission to perform this action.",
    404: "Resource not found.",
    429: "Too many requests. Please try again later.",
    500: "Server error. Please try again later.",
    502: "Server error. Please try again later.",
    503: "Server error. Please try again later.",
    504: "Server error. Please try again later.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


class ContactsApiError(HeadshotError):
    """The remote contacts API rejected a request or could not be reached."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    @classmethod
    def from_response(cls, status: int, payload: object) -> ContactsApiError:
        """Build an error with a user-facing message for an HTTP status."""
        server_message = None
        if isinstance(payload, dict):
            server_message = payload.get("message")
            if server_message is None and isinstance(payload.get("errors"), dict):
                parts: list[str] = []
                for value in payload["errors"].values():
                    parts.extend(value if isinstance(value, list) else [str(value)])
                server_message = ", ".join(parts) or None

        if status in (400, 422) and server_message:
            message = str(server_message)
        elif status in _STATUS_MESSAGES:
            message = _STATUS_MESSAGES[status]
        elif server_message:
            message = str(server_message)
        else:
            message = _DEFAULT_MESSAGE
        return cls(message, status=status)


class UploadError(ContactsApiError):
    """Uploading a headshot to remote image storage failed."""


class ContactCreationError(ContactsApiError):
    """Creating a contact record failed."""


class WorkflowStateError(HeadshotError, RuntimeError):
    """An action was invoked in a workflow step that does not offer it."""
