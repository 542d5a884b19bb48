from __future__ import annotations

from typing import Any, Dict


class RosterError(Exception):
    """Base class for every error surfaced by roster operations."""

    kind = "roster_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(RosterError):
    kind = "validation"


class InvalidStateError(RosterError):
    kind = "invalid_state"


class PermissionDeniedError(RosterError):
    kind = "permission"


class ConflictError(RosterError):
    kind = "conflict"

    def __init__(self, message: str, *, conflicting_roster_id: int | None = None, **details: Any) -> None:
        super().__init__(message, conflicting_roster_id=conflicting_roster_id, **details)
        self.conflicting_roster_id = conflicting_roster_id


class NotFoundError(RosterError):
    kind = "not_found"


class StorageError(RosterError):
    kind = "storage"
