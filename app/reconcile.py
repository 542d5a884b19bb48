"""Turn externally extracted shift records into a Draft roster version.

Every record's free-text staff name is matched against the venue's personnel.
Confident matches become shifts; everything else becomes an unmatched entry
waiting for a manager to resolve it.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chains import chain_id_for, normalize_week_start
from collaborators import PermissionGate, StaticPermissionGate, VenueDirectory
from database import (
    Roster,
    RosterShift,
    UnmatchedRosterEntry,
    _utcnow,
    get_roster,
    get_unmatched_entry,
    unit_of_work,
)
from errors import ConflictError, InvalidStateError, ValidationError
from history import (
    CreatedPayload,
    HistoryAction,
    ShiftChangedPayload,
    ShiftSnapshot,
    UnmatchedResolvedPayload,
    VersionCreatedPayload,
    record_event,
    snapshot_shift,
)
from lifecycle import coerce_date, new_draft_roster, require_permission, require_transition
from matching import MatchingEngine, MatchResult
from settings import build_default_settings, default_break_minutes, limit, week_start_day


logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"^(?P<hour>\d{1,2})(?:[:.](?P<minute>\d{2}))?(?:\s*(?P<meridiem>[ap])\.?\s*m\.?)?$", re.IGNORECASE)
_TRUE_STRINGS = {"1", "true", "yes", "y"}

DAY_LABELS = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}


@dataclass(frozen=True)
class RawShift:
    staff_name: str
    shift_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    break_minutes: int = 0
    position: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    draft_roster_id: int
    chain_id: str
    version_number: int
    auto_matched_count: int
    unmatched_count: int


@dataclass
class MergePreview:
    """How a fresh extraction lines up against a Draft's assigned shifts.

    Shifts pair up per (staff member, date, position); within one such group
    they pair in start-time order. Unassigned placeholder shifts are left out.
    """

    roster_id: int
    revision: int
    to_add: List[ShiftSnapshot] = field(default_factory=list)
    to_remove: List[ShiftSnapshot] = field(default_factory=list)
    to_update: List[Dict[str, Any]] = field(default_factory=list)
    unchanged: List[ShiftSnapshot] = field(default_factory=list)
    unmatched: List[Dict[str, Any]] = field(default_factory=list)
    original_names: Dict[ShiftSnapshot, str] = field(default_factory=dict, repr=False)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "add_count": len(self.to_add),
            "remove_count": len(self.to_remove),
            "update_count": len(self.to_update),
            "unchanged_count": len(self.unchanged),
            "unmatched_count": len(self.unmatched),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roster_id": self.roster_id,
            "revision": self.revision,
            "to_add": [dataclasses.asdict(item) for item in self.to_add],
            "to_remove": [dataclasses.asdict(item) for item in self.to_remove],
            "to_update": [
                {
                    "existing": dataclasses.asdict(item["existing"]),
                    "incoming": dataclasses.asdict(item["incoming"]),
                    "changes": list(item["changes"]),
                }
                for item in self.to_update
            ],
            "unchanged": [dataclasses.asdict(item) for item in self.unchanged],
            "unmatched": [
                {key: value for key, value in item.items() if key not in ("raw", "match")}
                for item in self.unmatched
            ],
            "summary": self.summary,
        }


@dataclass(frozen=True)
class MergeResult:
    roster_id: int
    revision: int
    added_count: int = 0
    removed_count: int = 0
    updated_count: int = 0
    unmatched_count: int = 0


def _incoming_snapshot(raw: RawShift, user_id: int) -> ShiftSnapshot:
    return ShiftSnapshot(
        id=None,
        user_id=user_id,
        date=raw.shift_date.isoformat(),
        start_time=raw.start_time.strftime("%H:%M"),
        end_time=raw.end_time.strftime("%H:%M"),
        break_minutes=raw.break_minutes,
        position=raw.position,
        notes=raw.notes,
    )


def _merge_key(snapshot: ShiftSnapshot) -> Tuple[Optional[int], str, str]:
    return (snapshot.user_id, snapshot.date, snapshot.position or "")


def merge_changes(existing: ShiftSnapshot, incoming: ShiftSnapshot) -> List[str]:
    changes: List[str] = []
    if existing.start_time != incoming.start_time:
        changes.append(f"Start time: {existing.start_time} -> {incoming.start_time}")
    if existing.end_time != incoming.end_time:
        changes.append(f"End time: {existing.end_time} -> {incoming.end_time}")
    if existing.break_minutes != incoming.break_minutes:
        changes.append(f"Break: {existing.break_minutes}min -> {incoming.break_minutes}min")
    # An extraction without notes leaves the current notes alone.
    if incoming.notes is not None and existing.notes != incoming.notes:
        changes.append("Notes updated")
    return changes


def classify_merge(
    preview: MergePreview,
    existing: Sequence[ShiftSnapshot],
    incoming: Sequence[ShiftSnapshot],
) -> MergePreview:
    buckets: Dict[Tuple[Optional[int], str, str], Tuple[List[ShiftSnapshot], List[ShiftSnapshot]]] = {}
    for snapshot in existing:
        buckets.setdefault(_merge_key(snapshot), ([], []))[0].append(snapshot)
    for snapshot in incoming:
        buckets.setdefault(_merge_key(snapshot), ([], []))[1].append(snapshot)

    for current, fresh in buckets.values():
        current.sort(key=lambda item: (item.start_time, item.id or 0))
        fresh.sort(key=lambda item: item.start_time)
        for before, after in zip(current, fresh):
            changes = merge_changes(before, after)
            if changes:
                preview.to_update.append({"existing": before, "incoming": after, "changes": changes})
            else:
                preview.unchanged.append(before)
        preview.to_remove.extend(current[len(fresh):])
        preview.to_add.extend(fresh[len(current):])
    return preview


def parse_clock_time(value: Any, field: str = "time") -> datetime.time:
    """Accept ``HH:MM`` (24h) and ``H[:MM]am/pm`` clock strings."""
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    text = str(value or "").strip()
    match = _CLOCK_RE.match(text)
    if not match:
        raise ValidationError(f"{field} is not a clock time", field=field, value=text)
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    meridiem = (match.group("meridiem") or "").lower()
    if meridiem:
        if not 1 <= hour <= 12:
            raise ValidationError(f"{field} has an invalid hour", field=field, value=text)
        hour = hour % 12 + (12 if meridiem == "p" else 0)
    elif match.group("minute") is None:
        # A bare number like "9" is only accepted with am/pm.
        raise ValidationError(f"{field} is not a clock time", field=field, value=text)
    if hour > 23 or minute > 59:
        raise ValidationError(f"{field} is out of range", field=field, value=text)
    return datetime.time(hour, minute)


def day_label_offset(label: Any, week_start: datetime.date) -> int:
    key = str(label or "").strip().lower()[:3]
    if key not in DAY_LABELS:
        raise ValidationError("dayLabel is not a weekday", field="dayLabel", value=str(label))
    return (DAY_LABELS[key] - week_start.weekday()) % 7


def _pick(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_raw_record(
    record: Mapping[str, Any],
    week_start: datetime.date,
    break_minutes: int,
    index: int = 0,
) -> RawShift:
    if not isinstance(record, Mapping):
        raise ValidationError(f"record {index} is not an object", record=index)
    try:
        staff_name = str(_pick(record, "staffNameText", "staff_name_text", "staff_name", "name") or "").strip()
        if not staff_name:
            raise ValidationError("staff name is required", field="staffNameText")

        raw_date = _pick(record, "date")
        if raw_date is not None:
            shift_date = coerce_date(raw_date, "date")
        else:
            label = _pick(record, "dayLabel", "day_label", "day")
            if label is None:
                raise ValidationError("date or dayLabel is required", field="date")
            shift_date = week_start + datetime.timedelta(days=day_label_offset(label, week_start))
        if not week_start <= shift_date <= week_start + datetime.timedelta(days=6):
            raise ValidationError("date falls outside the roster week", field="date", value=shift_date.isoformat())

        start_time = parse_clock_time(_pick(record, "startTime", "start_time"), "startTime")
        end_time = parse_clock_time(_pick(record, "endTime", "end_time"), "endTime")
        has_break = _pick(record, "hasBreak", "has_break")
        if isinstance(has_break, str):
            has_break = has_break.strip().lower() in _TRUE_STRINGS
        position = _pick(record, "role", "position")
    except ValidationError as exc:
        exc.details.setdefault("record", index)
        raise
    return RawShift(
        staff_name=staff_name,
        shift_date=shift_date,
        start_time=start_time,
        end_time=end_time,
        break_minutes=break_minutes if has_break else 0,
        position=str(position).strip() if position else None,
        notes=_pick(record, "notes"),
    )


def shift_from_raw(raw: RawShift, user_id: int) -> RosterShift:
    return RosterShift(
        user_id=user_id,
        shift_date=raw.shift_date,
        start_time=raw.start_time,
        end_time=raw.end_time,
        break_minutes=raw.break_minutes,
        position=raw.position,
        notes=raw.notes,
        original_name=raw.staff_name,
    )


def unmatched_from_raw(raw: RawShift, result: MatchResult) -> UnmatchedRosterEntry:
    return UnmatchedRosterEntry(
        original_name=raw.staff_name,
        suggested_user_id=result.person_id,
        confidence=result.confidence,
        resolved=False,
        shift_date=raw.shift_date,
        start_time=raw.start_time,
        end_time=raw.end_time,
        break_minutes=raw.break_minutes,
        position=raw.position,
        notes=raw.notes,
    )


def staff_shift_counts(session: Session, venue_id: str, user_ids: Optional[Iterable[int]] = None) -> Dict[int, int]:
    """Historical shift count per staff member at a venue, used to break matching ties."""
    stmt = (
        select(RosterShift.user_id, func.count(RosterShift.id))
        .join(Roster, Roster.id == RosterShift.roster_id)
        .where(Roster.venue_id == venue_id, RosterShift.user_id.is_not(None))
        .group_by(RosterShift.user_id)
    )
    if user_ids is not None:
        stmt = stmt.where(RosterShift.user_id.in_(list(user_ids)))
    return {int(user_id): int(count) for user_id, count in session.execute(stmt)}


class ExtractionReconciler:
    def __init__(
        self,
        session: Session,
        directory: VenueDirectory,
        gate: Optional[PermissionGate] = None,
        settings: Optional[Dict[str, Any]] = None,
        engine: Optional[MatchingEngine] = None,
    ):
        self.session = session
        self.directory = directory
        self.settings = settings or build_default_settings()
        self.gate = gate or StaticPermissionGate.from_settings(self.settings)
        self.engine = engine or MatchingEngine(self.settings)
        self.week_start_day = week_start_day(self.settings)

    def _parse_records(self, raw_records: Iterable[Mapping[str, Any]], week: datetime.date) -> List[RawShift]:
        records = list(raw_records or [])
        cap = limit(self.settings, "max_batch_records")
        if len(records) > cap:
            raise ValidationError(f"too many records in one batch (limit {cap})", limit=cap, count=len(records))
        if not records:
            raise ValidationError("no shift records to reconcile")
        break_minutes = default_break_minutes(self.settings)
        return [parse_raw_record(record, week, break_minutes, index) for index, record in enumerate(records)]

    def _match_names(self, venue_id: str, parsed: Sequence[RawShift]) -> List[MatchResult]:
        """Match every record's name, running the engine once per distinct normalised name."""
        candidates = self.directory.active_personnel(venue_id)
        counts = staff_shift_counts(self.session, venue_id, [person.id for person in candidates])
        matches: Dict[str, MatchResult] = {}
        results = []
        for raw in parsed:
            key = self.engine.normalize(raw.staff_name)
            if key not in matches:
                matches[key] = self.engine.match(raw.staff_name, candidates, counts)
            results.append(matches[key])
        return results

    def reconcile(
        self,
        raw_records: Iterable[Mapping[str, Any]],
        venue_id: str,
        week_start: Any,
        actor: str,
        source_file: Optional[Mapping[str, Any]] = None,
    ) -> ReconcileResult:
        require_permission(self.gate, actor, "reconcile")
        venue_id = str(venue_id or "").strip()
        if not venue_id:
            raise ValidationError("venue_id is required", field="venue_id")
        week = normalize_week_start(coerce_date(week_start, "week_start"), self.week_start_day)
        parsed = self._parse_records(raw_records, week)
        results = self._match_names(venue_id, parsed)
        auto_matched = 0
        unmatched = 0

        with unit_of_work(self.session):
            chain_id = chain_id_for(venue_id, week, self.week_start_day)
            roster = new_draft_roster(
                self.session,
                venue_id=venue_id,
                start_date=week,
                end_date=week + datetime.timedelta(days=6),
                chain_id=chain_id,
                actor=actor,
                source_file=source_file,
            )
            for raw, result in zip(parsed, results):
                if self.engine.is_committable(result):
                    roster.shifts.append(shift_from_raw(raw, result.person_id))
                    auto_matched += 1
                else:
                    roster.unmatched_entries.append(unmatched_from_raw(raw, result))
                    unmatched += 1

            source = "extraction"
            if roster.version_number == 1:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.CREATED,
                    CreatedPayload(
                        name=roster.name,
                        start_date=roster.start_date.isoformat(),
                        end_date=roster.end_date.isoformat(),
                        source=source,
                        shift_count=auto_matched,
                        unmatched_count=unmatched,
                    ),
                    actor,
                )
            else:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.VERSION_CREATED,
                    VersionCreatedPayload(source=source, shift_count=auto_matched, unmatched_count=unmatched),
                    actor,
                )

        logger.info(
            "Reconciled %d records for venue %s week %s into roster %s (v%s): %d matched, %d unmatched",
            len(parsed),
            venue_id,
            week,
            roster.id,
            roster.version_number,
            auto_matched,
            unmatched,
        )
        return ReconcileResult(
            draft_roster_id=roster.id,
            chain_id=roster.chain_id,
            version_number=roster.version_number,
            auto_matched_count=auto_matched,
            unmatched_count=unmatched,
        )

    def resolve_unmatched(self, entry_id: int, user_id: int, actor: str) -> RosterShift:
        require_permission(self.gate, actor, "resolve")
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise ValidationError("user_id must be a number", field="user_id") from None
        with unit_of_work(self.session):
            entry = get_unmatched_entry(self.session, entry_id)
            roster = entry.roster
            require_transition(roster, "resolve")
            if entry.resolved:
                raise InvalidStateError("entry is already resolved", entry_id=entry.id)
            personnel = {person.id for person in self.directory.active_personnel(roster.venue_id)}
            if user_id not in personnel:
                raise ValidationError("user is not active staff at this venue", user_id=user_id, venue_id=roster.venue_id)

            shift = self.session.scalars(
                select(RosterShift).where(
                    RosterShift.roster_id == roster.id,
                    RosterShift.user_id.is_(None),
                    RosterShift.original_name == entry.original_name,
                    RosterShift.shift_date == entry.shift_date,
                    RosterShift.start_time == entry.start_time,
                )
            ).first()
            if shift is None:
                shift = RosterShift(
                    shift_date=entry.shift_date,
                    start_time=entry.start_time,
                    end_time=entry.end_time,
                    break_minutes=entry.break_minutes,
                    position=entry.position,
                    notes=entry.notes,
                    original_name=entry.original_name,
                )
                roster.shifts.append(shift)
            shift.user_id = user_id
            entry.resolved = True
            entry.resolved_user_id = user_id
            entry.resolved_at = _utcnow()
            roster.revision += 1
            self.session.flush()
            record_event(
                self.session,
                roster,
                HistoryAction.UNMATCHED_RESOLVED,
                UnmatchedResolvedPayload(
                    entry_id=entry.id,
                    shift_id=shift.id,
                    user_id=user_id,
                    original_name=entry.original_name,
                ),
                actor,
            )
        logger.info("Resolved unmatched entry %s (%r) to user %s on roster %s", entry_id, entry.original_name, user_id, roster.id)
        return shift

    # ------------------------------------------------------------------
    # Re-upload merge into an existing Draft
    # ------------------------------------------------------------------

    def _build_preview(self, roster: Roster, raw_records: Iterable[Mapping[str, Any]]) -> MergePreview:
        week = normalize_week_start(roster.start_date, self.week_start_day)
        parsed = self._parse_records(raw_records, week)
        results = self._match_names(roster.venue_id, parsed)
        preview = MergePreview(roster_id=roster.id, revision=roster.revision)

        pending = {
            (self.engine.normalize(entry.original_name), entry.shift_date, entry.start_time)
            for entry in roster.unmatched_entries
            if not entry.resolved
        }
        incoming: List[ShiftSnapshot] = []
        for raw, result in zip(parsed, results):
            if self.engine.is_committable(result):
                snapshot = _incoming_snapshot(raw, result.person_id)
                preview.original_names.setdefault(snapshot, raw.staff_name)
                incoming.append(snapshot)
                continue
            key = (self.engine.normalize(raw.staff_name), raw.shift_date, raw.start_time)
            if key in pending:
                continue
            pending.add(key)
            preview.unmatched.append(
                {
                    "original_name": raw.staff_name,
                    "date": raw.shift_date.isoformat(),
                    "start_time": raw.start_time.strftime("%H:%M"),
                    "end_time": raw.end_time.strftime("%H:%M"),
                    "suggested_user_id": result.person_id,
                    "confidence": result.confidence,
                    "raw": raw,
                    "match": result,
                }
            )

        existing = [snapshot_shift(shift) for shift in roster.shifts if shift.user_id is not None]
        return classify_merge(preview, existing, incoming)

    def preview_merge(self, roster_id: int, raw_records: Iterable[Mapping[str, Any]]) -> MergePreview:
        """Classify a fresh extraction against a Draft without writing anything."""
        roster = get_roster(self.session, roster_id)
        require_transition(roster, "merge")
        return self._build_preview(roster, raw_records)

    def apply_merge(
        self,
        roster_id: int,
        raw_records: Iterable[Mapping[str, Any]],
        actor: str,
        *,
        add: bool = True,
        remove: bool = False,
        update: bool = True,
        expected_revision: Optional[int] = None,
    ) -> MergeResult:
        require_permission(self.gate, actor, "merge")
        if not (add or remove or update):
            raise ValidationError("nothing selected to merge")
        if expected_revision is not None:
            try:
                expected_revision = int(expected_revision)
            except (TypeError, ValueError):
                raise ValidationError("expected_revision must be a number", field="expected_revision") from None

        with unit_of_work(self.session):
            roster = get_roster(self.session, roster_id)
            require_transition(roster, "merge")
            if expected_revision is not None and roster.revision != expected_revision:
                raise ConflictError(
                    "roster changed since the merge was previewed",
                    conflicting_roster_id=roster.id,
                    revision=roster.revision,
                )
            preview = self._build_preview(roster, raw_records)
            to_remove = preview.to_remove if remove else []
            to_update = preview.to_update if update else []
            to_add = preview.to_add if add else []
            new_entries = preview.unmatched if add else []
            if not (to_remove or to_update or to_add or new_entries):
                return MergeResult(roster_id=roster.id, revision=roster.revision)

            roster.revision += 1
            shifts_by_id = {shift.id: shift for shift in roster.shifts}
            for snapshot in to_remove:
                roster.shifts.remove(shifts_by_id[snapshot.id])
                record_event(
                    self.session,
                    roster,
                    HistoryAction.SHIFT_CHANGED,
                    ShiftChangedPayload(
                        change="removed",
                        shift_id=snapshot.id,
                        before=dataclasses.asdict(snapshot),
                        source="merge",
                    ),
                    actor,
                )

            for item in to_update:
                shift = shifts_by_id[item["existing"].id]
                incoming = item["incoming"]
                shift.start_time = datetime.time.fromisoformat(incoming.start_time)
                shift.end_time = datetime.time.fromisoformat(incoming.end_time)
                shift.break_minutes = incoming.break_minutes
                if incoming.notes is not None:
                    shift.notes = incoming.notes
                record_event(
                    self.session,
                    roster,
                    HistoryAction.SHIFT_CHANGED,
                    ShiftChangedPayload(
                        change="updated",
                        shift_id=shift.id,
                        before=dataclasses.asdict(item["existing"]),
                        after=dataclasses.asdict(snapshot_shift(shift)),
                        source="merge",
                    ),
                    actor,
                )

            added = []
            for snapshot in to_add:
                shift = RosterShift(
                    user_id=snapshot.user_id,
                    shift_date=datetime.date.fromisoformat(snapshot.date),
                    start_time=datetime.time.fromisoformat(snapshot.start_time),
                    end_time=datetime.time.fromisoformat(snapshot.end_time),
                    break_minutes=snapshot.break_minutes,
                    position=snapshot.position,
                    notes=snapshot.notes,
                    original_name=preview.original_names.get(snapshot),
                )
                roster.shifts.append(shift)
                added.append(shift)
            for item in new_entries:
                roster.unmatched_entries.append(unmatched_from_raw(item["raw"], item["match"]))
            self.session.flush()
            for shift in added:
                record_event(
                    self.session,
                    roster,
                    HistoryAction.SHIFT_CHANGED,
                    ShiftChangedPayload(
                        change="added",
                        shift_id=shift.id,
                        after=dataclasses.asdict(snapshot_shift(shift)),
                        source="merge",
                    ),
                    actor,
                )
            result = MergeResult(
                roster_id=roster.id,
                revision=roster.revision,
                added_count=len(added),
                removed_count=len(to_remove),
                updated_count=len(to_update),
                unmatched_count=len(new_entries),
            )
        logger.info(
            "Merged extraction into roster %s by %s: +%d -%d ~%d, %d unmatched",
            roster_id,
            actor,
            result.added_count,
            result.removed_count,
            result.updated_count,
            result.unmatched_count,
        )
        return result
