"""Narrow interfaces to the systems the roster engine talks to but does not own."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from database import list_staff
from errors import PermissionDeniedError
from settings import allowed_actions, build_default_settings, permission_grants


logger = logging.getLogger(__name__)

ROSTER_RESOURCE = "rosters"


@dataclass(frozen=True)
class Person:
    id: int
    display_name: str
    active: bool = True


class VenueDirectory(Protocol):
    def active_personnel(self, venue_id: str) -> List[Person]:
        ...


class PermissionGate(Protocol):
    def can_perform(self, actor: str, resource: str, action: str) -> bool:
        ...


class NotificationKind(str, enum.Enum):
    ROSTER_PUBLISHED = "roster_published"
    ROSTER_UPDATED = "roster_updated"


class NotificationSink(Protocol):
    def notify(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...


class StaffDirectory:
    """VenueDirectory backed by the staff database."""

    def __init__(self, staff_session=None):
        self.staff_session = staff_session

    def active_personnel(self, venue_id: str) -> List[Person]:
        members = list_staff(self.staff_session, venue_id=venue_id, only_active=True)
        return [Person(id=member.id, display_name=member.full_name, active=True) for member in members]


class StaticDirectory:
    """In-memory directory, handy for scripts and tests."""

    def __init__(self, personnel: Mapping[str, Iterable[Person]]):
        self._personnel = {venue: list(people) for venue, people in personnel.items()}

    def active_personnel(self, venue_id: str) -> List[Person]:
        return [person for person in self._personnel.get(venue_id, []) if person.active]


class AllowAllPermissionGate:
    def can_perform(self, actor: str, resource: str, action: str) -> bool:
        return True


class StaticPermissionGate:
    """Grants read from the ``permissions`` settings block (actor -> actions, ``*`` wildcard)."""

    def __init__(self, grants: Mapping[str, Iterable[str]]):
        self.grants = {actor: set(actions) for actor, actions in grants.items()}

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None) -> "StaticPermissionGate":
        return cls(permission_grants(settings or build_default_settings()))

    def can_perform(self, actor: str, resource: str, action: str) -> bool:
        actions = allowed_actions(self.grants, actor)
        return "*" in actions or action in actions or f"{resource}:{action}" in actions


def check_permission(gate: PermissionGate, actor: str, action: str) -> None:
    """Raise unless ``actor`` may perform ``action`` on rosters. An empty actor never may."""
    if not actor or not gate.can_perform(actor, ROSTER_RESOURCE, action):
        raise PermissionDeniedError(f"{actor or 'anonymous'} may not {action} rosters", actor=actor, action=action)


class LoggingNotificationSink:
    """Default sink: records each notification in the log and keeps it for inspection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, user_id: int, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        kind = NotificationKind(kind)
        self.sent.append({"user_id": user_id, "kind": kind, "payload": dict(payload)})
        logger.info("Notify user %s: %s %s", user_id, kind.value, payload)
