"""Append-only roster history ledger.

Every event row carries one payload from a closed set of dataclasses; the
``action`` column selects which one, so readers always get a known shape
back instead of an open JSON map.
"""

from __future__ import annotations

import dataclasses
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import Roster, RosterHistory, RosterShift


class HistoryAction(str, enum.Enum):
    CREATED = "created"
    VERSION_CREATED = "version_created"
    UPDATED = "updated"
    SHIFT_CHANGED = "shift_changed"
    UNMATCHED_RESOLVED = "unmatched_resolved"
    PUBLISHED = "published"
    VERSION_SUPERSEDED = "version_superseded"
    ARCHIVED = "archived"
    DELETED = "deleted"


@dataclass(frozen=True)
class CreatedPayload:
    name: str
    start_date: str
    end_date: str
    shift_count: int = 0
    unmatched_count: int = 0
    copied_from: Optional[int] = None
    source: str = "manual"
    day_offset: int = 0


@dataclass(frozen=True)
class VersionCreatedPayload:
    source: str
    source_roster_id: Optional[int] = None
    source_version_number: Optional[int] = None
    shift_count: int = 0
    unmatched_count: int = 0


@dataclass(frozen=True)
class UpdatedPayload:
    # field name -> {"before": ..., "after": ...}
    fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class ShiftChangedPayload:
    change: str  # added | updated | removed
    shift_id: Optional[int] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    source: str = "manual"


@dataclass(frozen=True)
class UnmatchedResolvedPayload:
    entry_id: int
    shift_id: int
    user_id: int
    original_name: str


@dataclass(frozen=True)
class PublishedPayload:
    shift_count: int
    staff_count: int


@dataclass(frozen=True)
class SupersededPayload:
    superseded_by_roster_id: int
    superseded_by_version: int


@dataclass(frozen=True)
class ArchivedPayload:
    pass


@dataclass(frozen=True)
class DeletedPayload:
    shift_count: int = 0
    unmatched_count: int = 0


PAYLOAD_TYPES: Dict[HistoryAction, type] = {
    HistoryAction.CREATED: CreatedPayload,
    HistoryAction.VERSION_CREATED: VersionCreatedPayload,
    HistoryAction.UPDATED: UpdatedPayload,
    HistoryAction.SHIFT_CHANGED: ShiftChangedPayload,
    HistoryAction.UNMATCHED_RESOLVED: UnmatchedResolvedPayload,
    HistoryAction.PUBLISHED: PublishedPayload,
    HistoryAction.VERSION_SUPERSEDED: SupersededPayload,
    HistoryAction.ARCHIVED: ArchivedPayload,
    HistoryAction.DELETED: DeletedPayload,
}


def encode_payload(payload: Any) -> str:
    return json.dumps(dataclasses.asdict(payload), sort_keys=True, default=str)


def decode_payload(action: str | HistoryAction, raw: str | None) -> Any:
    payload_type = PAYLOAD_TYPES[HistoryAction(action)]
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    known = {item.name for item in dataclasses.fields(payload_type)}
    return payload_type(**{key: value for key, value in data.items() if key in known})


def record_event(
    session: Session,
    roster: Roster,
    action: HistoryAction,
    payload: Any,
    actor: str,
) -> RosterHistory:
    """Append one event for ``roster``. The caller's unit of work commits it."""
    action = HistoryAction(action)
    expected = PAYLOAD_TYPES[action]
    if not isinstance(payload, expected):
        raise TypeError(f"{action.value} events require {expected.__name__}, got {type(payload).__name__}")
    if roster.id is None:
        session.flush()
    event = RosterHistory(
        roster_id=roster.id,
        chain_id=roster.chain_id,
        version=roster.version_number,
        revision=roster.revision,
        action=action.value,
        payloadJSON=encode_payload(payload),
        actor=actor,
    )
    session.add(event)
    return event


def event_payload(event: RosterHistory) -> Any:
    return decode_payload(event.action, event.payloadJSON)


def event_to_dict(event: RosterHistory) -> Dict[str, Any]:
    return {
        "id": event.id,
        "roster_id": event.roster_id,
        "chain_id": event.chain_id,
        "version": event.version,
        "revision": event.revision,
        "action": event.action,
        "payload": dataclasses.asdict(event_payload(event)),
        "actor": event.actor,
        "created_at": event.created_at,
    }


def roster_history(session: Session, roster_id: int) -> List[RosterHistory]:
    stmt = (
        select(RosterHistory)
        .where(RosterHistory.roster_id == roster_id)
        .order_by(RosterHistory.created_at, RosterHistory.id)
    )
    return list(session.scalars(stmt))


def chain_history(session: Session, chain_id: str, actions: Sequence[HistoryAction] | None = None) -> List[RosterHistory]:
    stmt = select(RosterHistory).where(RosterHistory.chain_id == chain_id)
    if actions:
        stmt = stmt.where(RosterHistory.action.in_([HistoryAction(action).value for action in actions]))
    stmt = stmt.order_by(RosterHistory.version, RosterHistory.created_at, RosterHistory.id)
    return list(session.scalars(stmt))


def last_known_version(session: Session, chain_id: str) -> int:
    """Highest version number the ledger has ever recorded for a chain (0 if none)."""
    value = session.execute(
        select(func.max(RosterHistory.version)).where(RosterHistory.chain_id == chain_id)
    ).scalar()
    return int(value or 0)


# ---------------------------------------------------------------------------
# Version comparison
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShiftSnapshot:
    id: Optional[int]
    user_id: Optional[int]
    date: str
    start_time: str
    end_time: str
    break_minutes: int = 0
    position: Optional[str] = None
    notes: Optional[str] = None

    @property
    def slot_key(self) -> str:
        return f"{self.date}|{self.start_time}|{self.position or ''}"


@dataclass
class VersionDiff:
    added: List[ShiftSnapshot] = field(default_factory=list)
    removed: List[ShiftSnapshot] = field(default_factory=list)
    modified: List[Dict[str, Any]] = field(default_factory=list)
    reassigned: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, Any]:
        affected = set()
        for snapshot in self.added + self.removed:
            if snapshot.user_id is not None:
                affected.add(snapshot.user_id)
        for item in self.modified:
            if item["after"].user_id is not None:
                affected.add(item["after"].user_id)
        for item in self.reassigned:
            for key in ("previous_user_id", "new_user_id"):
                if item[key] is not None:
                    affected.add(item[key])
        return {
            "total_changes": len(self.added) + len(self.removed) + len(self.modified) + len(self.reassigned),
            "added_count": len(self.added),
            "removed_count": len(self.removed),
            "modified_count": len(self.modified),
            "reassigned_count": len(self.reassigned),
            "affected_users": sorted(affected),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [dataclasses.asdict(item) for item in self.added],
            "removed": [dataclasses.asdict(item) for item in self.removed],
            "modified": [
                {
                    "before": dataclasses.asdict(item["before"]),
                    "after": dataclasses.asdict(item["after"]),
                    "changes": list(item["changes"]),
                }
                for item in self.modified
            ],
            "reassigned": [
                {
                    "shift": dataclasses.asdict(item["shift"]),
                    "previous_user_id": item["previous_user_id"],
                    "new_user_id": item["new_user_id"],
                }
                for item in self.reassigned
            ],
            "summary": self.summary,
        }


def snapshot_shift(shift: RosterShift) -> ShiftSnapshot:
    return ShiftSnapshot(
        id=shift.id,
        user_id=shift.user_id,
        date=shift.shift_date.isoformat(),
        start_time=shift.start_time.strftime("%H:%M"),
        end_time=shift.end_time.strftime("%H:%M"),
        break_minutes=int(shift.break_minutes or 0),
        position=shift.position,
        notes=shift.notes,
    )


def shift_snapshot(roster: Roster) -> List[ShiftSnapshot]:
    return [snapshot_shift(shift) for shift in roster.shifts]


def diff_snapshots(before: Sequence[ShiftSnapshot], after: Sequence[ShiftSnapshot]) -> VersionDiff:
    before_by_slot = {item.slot_key: item for item in before}
    after_by_slot = {item.slot_key: item for item in after}
    diff = VersionDiff()

    for key, after_shift in after_by_slot.items():
        before_shift = before_by_slot.get(key)
        if before_shift is None:
            diff.added.append(after_shift)
            continue
        changes: List[str] = []
        if before_shift.end_time != after_shift.end_time:
            changes.append(f"End time: {before_shift.end_time} -> {after_shift.end_time}")
        if before_shift.break_minutes != after_shift.break_minutes:
            changes.append(f"Break: {before_shift.break_minutes}min -> {after_shift.break_minutes}min")
        if before_shift.notes != after_shift.notes:
            changes.append("Notes updated")
        if before_shift.user_id != after_shift.user_id:
            diff.reassigned.append(
                {
                    "shift": after_shift,
                    "previous_user_id": before_shift.user_id,
                    "new_user_id": after_shift.user_id,
                }
            )
        if changes:
            diff.modified.append({"before": before_shift, "after": after_shift, "changes": changes})

    for key, before_shift in before_by_slot.items():
        if key not in after_by_slot:
            diff.removed.append(before_shift)
    return diff
