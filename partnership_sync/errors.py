"""
Error taxonomy for the partnership panel.

- RemoteServiceError: the remote service failed or could not be reached.
  Periodic refreshes swallow it and keep stale data.
- WriteFailure: a user-initiated write was rejected. Raised immediately,
  carries the attempted input so the user can retry without retyping.
- ValidationFailure: input rejected locally before any network call.
"""

from typing import Any, Optional


class PanelError(Exception):
    """Base class for all panel errors."""


class RemoteServiceError(PanelError):
    """The Remote Partnership Service returned an error or was unreachable."""

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class ValidationFailure(PanelError, ValueError):
    """Input rejected before any request was made."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class WriteFailure(PanelError):
    """A send, propose or accept call was rejected by the remote service."""

    def __init__(self, action: str, attempted: dict[str, Any], cause: Exception):
        message = getattr(cause, "message", None) or str(cause) or f"Failed to {action}"
        super().__init__(message)
        self.action = action
        self.attempted = attempted
        self.cause = cause
        self.message = message


class PanelNotOpenError(PanelError, LookupError):
    """No open panel exists for the requested partnership."""

    def __init__(self, partnership_id: str):
        super().__init__(f"No open panel for partnership {partnership_id}")
        self.partnership_id = partnership_id
