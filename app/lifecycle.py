"""Roster lifecycle: Draft -> Published -> Archived, with every guard in one table."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from chains import (
    activate_version,
    chain_id_for,
    describe_chain,
    find_open_roster,
    has_draft_version,
    list_chain_versions as _chain_versions,
    next_version_number,
    normalize_week_start,
    week_bounds,
)
from collaborators import (
    LoggingNotificationSink,
    NotificationKind,
    NotificationSink,
    PermissionGate,
    StaticPermissionGate,
    check_permission,
)
from database import (
    Roster,
    RosterHistory,
    RosterShift,
    RosterStatus,
    UnmatchedRosterEntry,
    _utcnow,
    get_roster,
    get_shift,
    unit_of_work,
)
from errors import ConflictError, InvalidStateError, ValidationError
from history import (
    ArchivedPayload,
    CreatedPayload,
    DeletedPayload,
    HistoryAction,
    PublishedPayload,
    ShiftChangedPayload,
    UpdatedPayload,
    VersionCreatedPayload,
    VersionDiff,
    chain_history,
    diff_snapshots,
    record_event,
    roster_history,
    shift_snapshot,
    snapshot_shift,
)
from settings import build_default_settings, default_break_minutes, limit, week_start_day


logger = logging.getLogger(__name__)

DRAFT = RosterStatus.DRAFT.value
PUBLISHED = RosterStatus.PUBLISHED.value
ARCHIVED = RosterStatus.ARCHIVED.value
DELETED = "deleted"

# (current status, transition) -> resulting status. Anything missing is refused.
TRANSITIONS: Dict[Tuple[str, str], str] = {
    (DRAFT, "update"): DRAFT,
    (DRAFT, "edit_shifts"): DRAFT,
    (DRAFT, "resolve"): DRAFT,
    (DRAFT, "merge"): DRAFT,
    (DRAFT, "publish"): PUBLISHED,
    (DRAFT, "delete"): DELETED,
    (PUBLISHED, "archive"): ARCHIVED,
    (PUBLISHED, "copy_same_week"): PUBLISHED,
    (DRAFT, "copy_different_week"): DRAFT,
    (PUBLISHED, "copy_different_week"): PUBLISHED,
    (ARCHIVED, "copy_different_week"): ARCHIVED,
    (PUBLISHED, "restore"): PUBLISHED,
    (ARCHIVED, "restore"): ARCHIVED,
}

REFUSAL_MESSAGES = {
    "update": "only draft rosters are editable",
    "edit_shifts": "only draft rosters are editable",
    "resolve": "only draft rosters are editable",
    "merge": "only draft rosters are editable",
    "publish": "only draft rosters can be published",
    "delete": "only draft rosters can be deleted",
    "archive": "only published rosters can be archived",
    "copy_same_week": "only published rosters can be copied into a new version",
    "restore": "only published or archived versions can be restored",
}

# Transition -> permission action checked through the gate.
PERMISSION_ACTIONS = {
    "create": "create",
    "reconcile": "create",
    "copy_same_week": "create",
    "copy_different_week": "create",
    "restore": "create",
    "update": "edit",
    "edit_shifts": "edit",
    "resolve": "edit",
    "merge": "edit",
    "archive": "edit",
    "publish": "publish",
    "delete": "delete",
}

EDITABLE_ROSTER_FIELDS = ("name", "description", "start_date", "end_date")
EDITABLE_SHIFT_FIELDS = (
    "user_id",
    "date",
    "start_time",
    "end_time",
    "break_minutes",
    "position",
    "notes",
    "original_name",
    "has_conflict",
    "conflict_kind",
)


def allowed_transition(status: str, transition: str) -> Optional[str]:
    return TRANSITIONS.get((status, transition))


def require_transition(roster: Roster, transition: str) -> str:
    result = allowed_transition(roster.status, transition)
    if result is None:
        message = REFUSAL_MESSAGES.get(transition, f"cannot {transition} a {roster.status} roster")
        raise InvalidStateError(message, roster_id=roster.id, status=roster.status, transition=transition)
    return result


def require_permission(gate: PermissionGate, actor: str, transition: str) -> None:
    check_permission(gate, actor, PERMISSION_ACTIONS[transition])


def coerce_date(value: Any, field: str = "date") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a YYYY-MM-DD date", field=field, value=str(value))


def coerce_time(value: Any, field: str = "time") -> datetime.time:
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    if isinstance(value, str):
        text = value.strip()
        for fmt in ("%H:%M", "%H:%M:%S"):
            try:
                return datetime.datetime.strptime(text, fmt).time().replace(second=0)
            except ValueError:
                continue
    raise ValidationError(f"{field} must be an HH:MM time", field=field, value=str(value))


def default_roster_name(week_start: datetime.date, version_number: int) -> str:
    name = f"Week of {week_start.strftime('%d %b %Y')}"
    if version_number > 1:
        name = f"{name} (v{version_number})"
    return name


def new_draft_roster(
    session: Session,
    *,
    venue_id: str,
    start_date: datetime.date,
    end_date: datetime.date,
    chain_id: str,
    actor: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    source_file: Optional[Mapping[str, Any]] = None,
) -> Roster:
    """Add a fresh Draft version to ``chain_id``. The caller owns the transaction."""
    version_number = next_version_number(session, chain_id)
    source_file = source_file or {}
    roster = Roster(
        venue_id=venue_id,
        name=(name or "").strip() or default_roster_name(start_date, version_number),
        description=description,
        start_date=start_date,
        end_date=end_date,
        status=DRAFT,
        chain_id=chain_id,
        version_number=version_number,
        revision=1,
        is_active=False,
        created_by=actor,
        source_file_name=source_file.get("file_name") or source_file.get("name"),
        source_file_url=source_file.get("url"),
        source_file_type=source_file.get("type"),
    )
    session.add(roster)
    session.flush()
    return roster


def _copy_shift(shift: RosterShift, day_offset: int) -> RosterShift:
    return RosterShift(
        user_id=shift.user_id,
        shift_date=shift.shift_date + datetime.timedelta(days=day_offset),
        start_time=shift.start_time,
        end_time=shift.end_time,
        break_minutes=shift.break_minutes,
        position=shift.position,
        notes=shift.notes,
        original_name=shift.original_name,
        has_conflict=False,
        conflict_kind=None,
    )


def _copy_entry(entry: UnmatchedRosterEntry, day_offset: int) -> UnmatchedRosterEntry:
    return UnmatchedRosterEntry(
        original_name=entry.original_name,
        suggested_user_id=entry.suggested_user_id,
        confidence=entry.confidence,
        resolved=False,
        shift_date=entry.shift_date + datetime.timedelta(days=day_offset),
        start_time=entry.start_time,
        end_time=entry.end_time,
        break_minutes=entry.break_minutes,
        position=entry.position,
        notes=entry.notes,
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return value


class RosterLifecycle:
    def __init__(
        self,
        session: Session,
        gate: Optional[PermissionGate] = None,
        notifier: Optional[NotificationSink] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.session = session
        self.settings = settings or build_default_settings()
        self.gate = gate or StaticPermissionGate.from_settings(self.settings)
        self.notifier = notifier or LoggingNotificationSink()
        self.week_start_day = week_start_day(self.settings)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_roster(self, roster_id: int) -> Roster:
        return get_roster(self.session, roster_id)

    def list_chain_versions(self, chain_id: str) -> List[Roster]:
        return _chain_versions(self.session, chain_id)

    def describe_chain(self, chain_id: str) -> Optional[Dict[str, Any]]:
        return describe_chain(self.session, chain_id)

    def history(self, roster_id: int) -> List[RosterHistory]:
        return roster_history(self.session, roster_id)

    def chain_history(self, chain_id: str) -> List[RosterHistory]:
        return chain_history(self.session, chain_id)

    def compare_versions(self, roster_id_a: int, roster_id_b: int) -> VersionDiff:
        before = get_roster(self.session, roster_id_a)
        after = get_roster(self.session, roster_id_b)
        if before.chain_id != after.chain_id:
            raise ValidationError(
                "only versions of the same chain can be compared",
                roster_ids=[before.id, after.id],
            )
        return diff_snapshots(shift_snapshot(before), shift_snapshot(after))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _week_of(self, value: datetime.date) -> Tuple[datetime.date, datetime.date]:
        return week_bounds(value, self.week_start_day)

    def _check_in_chain_week(self, roster_chain_id: str, venue_id: str, value: datetime.date, field: str) -> None:
        if chain_id_for(venue_id, value, self.week_start_day) != roster_chain_id:
            raise ValidationError(f"{field} must stay within the roster's week", field=field, value=value.isoformat())

    def create(self, data: Mapping[str, Any], actor: str) -> Roster:
        require_permission(self.gate, actor, "create")
        venue_id = str(data.get("venue_id") or "").strip()
        if not venue_id:
            raise ValidationError("venue_id is required", field="venue_id")
        start_date = coerce_date(data.get("start_date"), "start_date")
        week_start, week_end = self._week_of(start_date)
        end_date = coerce_date(data["end_date"], "end_date") if data.get("end_date") else week_end
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")
        chain_id = chain_id_for(venue_id, start_date, self.week_start_day)
        self._check_in_chain_week(chain_id, venue_id, end_date, "end_date")

        with unit_of_work(self.session):
            roster = new_draft_roster(
                self.session,
                venue_id=venue_id,
                start_date=start_date,
                end_date=end_date,
                chain_id=chain_id,
                actor=actor,
                name=data.get("name"),
                description=data.get("description"),
                source_file=data.get("source_file"),
            )
            if roster.version_number == 1:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.CREATED,
                    CreatedPayload(
                        name=roster.name,
                        start_date=start_date.isoformat(),
                        end_date=end_date.isoformat(),
                    ),
                    actor,
                )
            else:
                record_event(self.session, roster, HistoryAction.VERSION_CREATED, VersionCreatedPayload(source="manual"), actor)
        logger.info("Created roster %s (chain %s v%s) by %s", roster.id, chain_id, roster.version_number, actor)
        return roster

    # ------------------------------------------------------------------
    # Draft editing
    # ------------------------------------------------------------------

    def update(self, roster_id: int, changes: Mapping[str, Any], actor: str) -> Roster:
        require_permission(self.gate, actor, "update")
        unknown = sorted(set(changes) - set(EDITABLE_ROSTER_FIELDS))
        if unknown:
            raise ValidationError(f"fields cannot be updated: {', '.join(unknown)}", fields=unknown)

        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            require_transition(roster, "update")
            values: Dict[str, Any] = {}
            if "name" in changes:
                name = str(changes["name"] or "").strip()
                if not name:
                    raise ValidationError("name cannot be empty", field="name")
                values["name"] = name
            if "description" in changes:
                values["description"] = changes["description"]
            for field in ("start_date", "end_date"):
                if field in changes:
                    values[field] = coerce_date(changes[field], field)
                    self._check_in_chain_week(roster.chain_id, roster.venue_id, values[field], field)
            start_date = values.get("start_date", roster.start_date)
            end_date = values.get("end_date", roster.end_date)
            if end_date < start_date:
                raise ValidationError("end_date must not be before start_date", field="end_date")

            diff = {
                field: {"before": _jsonable(getattr(roster, field)), "after": _jsonable(value)}
                for field, value in values.items()
                if getattr(roster, field) != value
            }
            if not diff:
                return roster
            for field, value in values.items():
                setattr(roster, field, value)
            roster.revision += 1
            record_event(self.session, roster, HistoryAction.UPDATED, UpdatedPayload(fields=diff), actor)
        return roster

    def _shift_values(self, roster: Roster, data: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
        unknown = sorted(set(data) - set(EDITABLE_SHIFT_FIELDS))
        if unknown:
            raise ValidationError(f"unknown shift fields: {', '.join(unknown)}", fields=unknown)
        if not partial:
            for field in ("date", "start_time", "end_time"):
                if data.get(field) in (None, ""):
                    raise ValidationError(f"{field} is required", field=field)
        values: Dict[str, Any] = {}
        if "user_id" in data:
            try:
                values["user_id"] = None if data["user_id"] is None else int(data["user_id"])
            except (TypeError, ValueError):
                raise ValidationError("user_id must be a number", field="user_id")
        if "date" in data:
            values["shift_date"] = coerce_date(data["date"], "date")
            self._check_in_chain_week(roster.chain_id, roster.venue_id, values["shift_date"], "date")
        for field in ("start_time", "end_time"):
            if field in data:
                values[field] = coerce_time(data[field], field)
        if "break_minutes" in data:
            try:
                values["break_minutes"] = max(0, int(data["break_minutes"] or 0))
            except (TypeError, ValueError):
                raise ValidationError("break_minutes must be a number", field="break_minutes")
        elif not partial:
            values["break_minutes"] = default_break_minutes(self.settings)
        for field in ("position", "notes", "original_name", "conflict_kind"):
            if field in data:
                values[field] = data[field] or None
        if "has_conflict" in data:
            values["has_conflict"] = bool(data["has_conflict"])
            if not values["has_conflict"]:
                values.setdefault("conflict_kind", None)
        return values

    def add_shift(self, roster_id: int, data: Mapping[str, Any], actor: str) -> RosterShift:
        require_permission(self.gate, actor, "edit_shifts")
        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            require_transition(roster, "edit_shifts")
            shift = RosterShift(**self._shift_values(roster, data, partial=False))
            roster.shifts.append(shift)
            roster.revision += 1
            self.session.flush()
            record_event(
                self.session,
                roster,
                HistoryAction.SHIFT_CHANGED,
                ShiftChangedPayload(change="added", shift_id=shift.id, after=dataclasses.asdict(snapshot_shift(shift))),
                actor,
            )
        return shift

    def update_shift(self, shift_id: int, changes: Mapping[str, Any], actor: str) -> RosterShift:
        require_permission(self.gate, actor, "edit_shifts")
        with unit_of_work(self.session):
            shift = get_shift(self.session, shift_id)
            roster = shift.roster
            require_transition(roster, "edit_shifts")
            values = self._shift_values(roster, changes, partial=True)
            changed = {field: value for field, value in values.items() if getattr(shift, field) != value}
            if not changed:
                return shift
            before = dataclasses.asdict(snapshot_shift(shift))
            for field, value in changed.items():
                setattr(shift, field, value)
            after = dataclasses.asdict(snapshot_shift(shift))
            roster.revision += 1
            record_event(
                self.session,
                roster,
                HistoryAction.SHIFT_CHANGED,
                ShiftChangedPayload(change="updated", shift_id=shift.id, before=before, after=after),
                actor,
            )
        return shift

    def remove_shift(self, shift_id: int, actor: str) -> None:
        require_permission(self.gate, actor, "edit_shifts")
        with unit_of_work(self.session):
            shift = get_shift(self.session, shift_id)
            roster = shift.roster
            require_transition(roster, "edit_shifts")
            before = dataclasses.asdict(snapshot_shift(shift))
            roster.shifts.remove(shift)
            roster.revision += 1
            record_event(
                self.session,
                roster,
                HistoryAction.SHIFT_CHANGED,
                ShiftChangedPayload(change="removed", shift_id=shift_id, before=before),
                actor,
            )

    # ------------------------------------------------------------------
    # Publish / archive / delete
    # ------------------------------------------------------------------

    def publish(self, roster_id: int, actor: str) -> Roster:
        require_permission(self.gate, actor, "publish")
        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            next_status = require_transition(roster, "publish")
            assigned = roster.assigned_shifts
            if not assigned:
                raise ValidationError("no assigned shifts", roster_id=roster.id)
            user_ids = sorted({shift.user_id for shift in assigned})
            shift_count = len(roster.shifts)

            roster.status = next_status
            roster.published_at = _utcnow()
            roster.published_by = actor
            roster.revision += 1
            activate_version(self.session, roster, actor)
            record_event(
                self.session,
                roster,
                HistoryAction.PUBLISHED,
                PublishedPayload(shift_count=shift_count, staff_count=len(user_ids)),
                actor,
            )
        logger.info(
            "Published roster %s (chain %s v%s) by %s: %d shifts, %d staff",
            roster.id,
            roster.chain_id,
            roster.version_number,
            actor,
            shift_count,
            len(user_ids),
        )
        self._notify_staff(roster, user_ids)
        return roster

    def _notify_staff(self, roster: Roster, user_ids: Iterable[int]) -> None:
        kind = NotificationKind.ROSTER_PUBLISHED if roster.version_number == 1 else NotificationKind.ROSTER_UPDATED
        payload = {
            "roster_id": roster.id,
            "venue_id": roster.venue_id,
            "chain_id": roster.chain_id,
            "version_number": roster.version_number,
            "name": roster.name,
            "start_date": roster.start_date.isoformat(),
            "end_date": roster.end_date.isoformat(),
        }
        for user_id in user_ids:
            try:
                self.notifier.notify(user_id, kind, payload)
            except Exception as exc:  # the roster is already published; delivery is best effort
                logger.warning("Failed to notify user %s about roster %s: %s", user_id, roster.id, exc)

    def archive(self, roster_id: int, actor: str) -> Roster:
        require_permission(self.gate, actor, "archive")
        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            roster.status = require_transition(roster, "archive")
            roster.is_active = False
            roster.revision += 1
            record_event(self.session, roster, HistoryAction.ARCHIVED, ArchivedPayload(), actor)
        logger.info("Archived roster %s (chain %s v%s) by %s", roster.id, roster.chain_id, roster.version_number, actor)
        return roster

    def delete(self, roster_id: int, actor: str) -> Dict[str, Any]:
        require_permission(self.gate, actor, "delete")
        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            require_transition(roster, "delete")
            payload = DeletedPayload(shift_count=len(roster.shifts), unmatched_count=len(roster.unmatched_entries))
            record_event(self.session, roster, HistoryAction.DELETED, payload, actor)
            summary = {
                "roster_id": roster.id,
                "chain_id": roster.chain_id,
                "version_number": roster.version_number,
                **dataclasses.asdict(payload),
            }
            self.session.delete(roster)
        logger.info("Deleted draft roster %s (chain %s v%s) by %s", roster_id, summary["chain_id"], summary["version_number"], actor)
        return summary

    # ------------------------------------------------------------------
    # New versions from existing ones
    # ------------------------------------------------------------------

    def _check_copy_size(self, source: Roster) -> None:
        cap = limit(self.settings, "max_copy_shifts")
        if len(source.shifts) + len(source.unmatched_entries) > cap:
            raise ValidationError(f"roster is too large to copy (limit {cap} shifts)", roster_id=source.id, limit=cap)

    def _clone(self, source: Roster, target: Roster, day_offset: int = 0) -> Tuple[int, int]:
        for shift in source.shifts:
            target.shifts.append(_copy_shift(shift, day_offset))
        pending = [entry for entry in source.unmatched_entries if not entry.resolved]
        for entry in pending:
            target.unmatched_entries.append(_copy_entry(entry, day_offset))
        return len(source.shifts), len(pending)

    def copy_same_week(self, roster_id: int, actor: str, name: Optional[str] = None) -> Roster:
        require_permission(self.gate, actor, "copy_same_week")
        with unit_of_work(self.session):
            source = get_roster(self.session, roster_id)
            require_transition(source, "copy_same_week")
            self._check_copy_size(source)
            roster = new_draft_roster(
                self.session,
                venue_id=source.venue_id,
                start_date=source.start_date,
                end_date=source.end_date,
                chain_id=source.chain_id,
                actor=actor,
                name=name,
                description=source.description,
                source_file={
                    "file_name": source.source_file_name,
                    "url": source.source_file_url,
                    "type": source.source_file_type,
                },
            )
            shift_count, unmatched_count = self._clone(source, roster)
            record_event(
                self.session,
                roster,
                HistoryAction.VERSION_CREATED,
                VersionCreatedPayload(
                    source="copy_same_week",
                    source_roster_id=source.id,
                    source_version_number=source.version_number,
                    shift_count=shift_count,
                    unmatched_count=unmatched_count,
                ),
                actor,
            )
        logger.info("Copied roster %s into roster %s (chain %s v%s)", roster_id, roster.id, roster.chain_id, roster.version_number)
        return roster

    def copy_different_week(
        self,
        roster_id: int,
        target_week_start: Any,
        actor: str,
        name: Optional[str] = None,
    ) -> Roster:
        require_permission(self.gate, actor, "copy_different_week")
        target = coerce_date(target_week_start, "target_week_start")
        with unit_of_work(self.session):
            source = get_roster(self.session, roster_id)
            require_transition(source, "copy_different_week")
            self._check_copy_size(source)
            source_week = normalize_week_start(source.start_date, self.week_start_day)
            target_week = normalize_week_start(target, self.week_start_day)
            day_offset = (target_week - source_week).days
            if day_offset == 0:
                raise ValidationError("target week is the roster's own week", field="target_week_start")
            chain_id = chain_id_for(source.venue_id, target_week, self.week_start_day)
            existing = find_open_roster(self.session, chain_id)
            if existing is not None:
                raise ConflictError(
                    f"a {existing.status} roster already exists for that week",
                    conflicting_roster_id=existing.id,
                )
            offset = datetime.timedelta(days=day_offset)
            roster = new_draft_roster(
                self.session,
                venue_id=source.venue_id,
                start_date=source.start_date + offset,
                end_date=source.end_date + offset,
                chain_id=chain_id,
                actor=actor,
                name=name,
                description=source.description,
            )
            shift_count, unmatched_count = self._clone(source, roster, day_offset)
            if roster.version_number == 1:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.CREATED,
                    CreatedPayload(
                        name=roster.name,
                        start_date=roster.start_date.isoformat(),
                        end_date=roster.end_date.isoformat(),
                        source="copy_different_week",
                        shift_count=shift_count,
                        unmatched_count=unmatched_count,
                        copied_from=source.id,
                        day_offset=day_offset,
                    ),
                    actor,
                )
            else:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.VERSION_CREATED,
                    VersionCreatedPayload(
                        source="copy_different_week",
                        source_roster_id=source.id,
                        source_version_number=source.version_number,
                        shift_count=shift_count,
                        unmatched_count=unmatched_count,
                    ),
                    actor,
                )
        logger.info("Copied roster %s to week %s as roster %s", roster_id, target_week, roster.id)
        return roster

    def restore_version(self, roster_id: int, actor: str) -> Roster:
        require_permission(self.gate, actor, "restore")
        with unit_of_work(self.session):
            source = get_roster(self.session, roster_id)
            require_transition(source, "restore")
            if has_draft_version(self.session, source.chain_id):
                draft_id = self.session.execute(
                    select(Roster.id).where(Roster.chain_id == source.chain_id, Roster.status == DRAFT)
                ).scalar()
                raise ConflictError("the chain already has a draft version", conflicting_roster_id=draft_id)
            self._check_copy_size(source)
            roster = new_draft_roster(
                self.session,
                venue_id=source.venue_id,
                start_date=source.start_date,
                end_date=source.end_date,
                chain_id=source.chain_id,
                actor=actor,
                name=f"{source.name} (restored from v{source.version_number})",
                description=source.description,
            )
            shift_count, unmatched_count = self._clone(source, roster)
            record_event(
                self.session,
                roster,
                HistoryAction.VERSION_CREATED,
                VersionCreatedPayload(
                    source="restore",
                    source_roster_id=source.id,
                    source_version_number=source.version_number,
                    shift_count=shift_count,
                    unmatched_count=unmatched_count,
                ),
                actor,
            )
        logger.info("Restored roster %s as roster %s (v%s)", roster_id, roster.id, roster.version_number)
        return roster
