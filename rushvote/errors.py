"""Custom exceptions for rushvote."""

from typing import Any


class RushVoteError(Exception):
    """Base exception for all rushvote errors."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(RushVoteError):
    """Raised for bad input: missing name, score out of range, empty seal."""

    status_code = 400


# =============================================================================
# Conflict Errors
# =============================================================================


class NotFound(RushVoteError):
    """Raised when a round (or other entity) does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str, **kwargs: Any):
        super().__init__(f"{entity} {entity_id} not found", **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransition(RushVoteError):
    """Raised when a round cannot move to the requested state."""

    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class ConfirmationRequired(RushVoteError):
    """Raised when opening a round would close another one without consent."""

    status_code = 409

    def __init__(self, open_round_id: str, open_round_name: str | None = None):
        super().__init__(
            f"Round {open_round_name or open_round_id} is currently open; "
            "confirm to close it",
            details={"open_round_id": open_round_id, "open_round_name": open_round_name},
        )
        self.open_round_id = open_round_id


class ConcurrentTransition(RushVoteError):
    """Raised when the store rejects an open because another opener won."""

    status_code = 409


class DuplicateName(RushVoteError):
    """Raised when a round name is already taken."""

    status_code = 409


# =============================================================================
# Authorization Errors
# =============================================================================


class PermissionDenied(RushVoteError):
    """Raised when a non-administrator reaches an administrative path."""

    status_code = 403
