from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from collaborators import Person, StaticDirectory, StaticPermissionGate  # noqa: E402
from database import Roster, RosterHistory, RosterShift, UnmatchedRosterEntry, get_roster  # noqa: E402
from errors import ConflictError, InvalidStateError, PermissionDeniedError, StorageError, ValidationError  # noqa: E402
from history import HistoryAction, event_payload, roster_history  # noqa: E402
from lifecycle import DRAFT  # noqa: E402
from reconcile import ExtractionReconciler, parse_clock_time, parse_raw_record  # noqa: E402

from conftest import JANE, JOHN, VENUE, WEEK, ZED  # noqa: E402


def _record(name, day="2025-01-06", start="09:00", end="17:00", **extra):
    record = {"staffNameText": name, "date": day, "startTime": start, "endTime": end, "role": "Bar"}
    record.update(extra)
    return record


def _count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar()


def test_single_candidate_initial_is_committed(session, settings):
    reconciler = ExtractionReconciler(session, StaticDirectory({VENUE: [JOHN]}), settings=settings)

    result = reconciler.reconcile([_record("J. Doe")], VENUE, "2025-01-06", "manager")

    roster = get_roster(session, result.draft_roster_id)
    assert roster.status == "draft"
    assert roster.version_number == 1 and result.version_number == 1
    assert roster.is_active is False
    assert (result.auto_matched_count, result.unmatched_count) == (1, 0)
    assert [(shift.user_id, shift.original_name) for shift in roster.shifts] == [(JOHN.id, "J. Doe")]
    assert roster.unmatched_entries == []

    events = roster_history(session, roster.id)
    assert [event.action for event in events] == [HistoryAction.CREATED.value]
    payload = event_payload(events[0])
    assert (payload.source, payload.shift_count, payload.unmatched_count) == ("extraction", 1, 0)


def test_ambiguous_name_becomes_unmatched_with_suggestion(session, settings):
    reconciler = ExtractionReconciler(session, StaticDirectory({VENUE: [JOHN, JANE]}), settings=settings)

    result = reconciler.reconcile([_record("J. Doe")], VENUE, WEEK, "manager")

    roster = get_roster(session, result.draft_roster_id)
    assert roster.shifts == []
    [entry] = roster.unmatched_entries
    assert entry.confidence < settings["matching"]["commit_threshold"]
    assert entry.suggested_user_id == JOHN.id
    assert entry.resolved is False
    assert (entry.shift_date, entry.start_time) == (WEEK, datetime.time(9, 0))


def test_exact_name_commits_despite_similar_colleague(session, settings):
    doer = Person(id=8, display_name="John Doer")
    reconciler = ExtractionReconciler(session, StaticDirectory({VENUE: [JOHN, doer]}), settings=settings)

    result = reconciler.reconcile([_record("John Doe"), _record("John Doer", day="2025-01-07")], VENUE, WEEK, "manager")

    assert (result.auto_matched_count, result.unmatched_count) == (2, 0)
    roster = get_roster(session, result.draft_roster_id)
    assert sorted(shift.user_id for shift in roster.shifts) == [JOHN.id, doer.id]


def test_second_extraction_creates_next_version(reconciler, session):
    first = reconciler.reconcile([_record("John Doe")], VENUE, WEEK, "manager")
    second = reconciler.reconcile([_record("Mia Chen")], VENUE, "2025-01-09", "manager")

    assert second.chain_id == first.chain_id
    assert second.version_number == 2
    roster = get_roster(session, second.draft_roster_id)
    assert roster.name.endswith("(v2)")
    [event] = roster_history(session, roster.id)
    assert event.action == HistoryAction.VERSION_CREATED.value


def test_record_parsing_accepts_day_labels_and_meridiem_times():
    raw = parse_raw_record(
        {"staff_name_text": "Mia", "dayLabel": "Wednesday", "startTime": "9am", "endTime": "5:30 PM", "hasBreak": True},
        WEEK,
        30,
    )
    assert raw.shift_date == datetime.date(2025, 1, 8)
    assert (raw.start_time, raw.end_time) == (datetime.time(9, 0), datetime.time(17, 30))
    assert raw.break_minutes == 30

    no_break = parse_raw_record(_record("Mia", hasBreak="false"), WEEK, 30)
    assert no_break.break_minutes == 0


@pytest.mark.parametrize("value", ["25:00", "9", "13pm", "noon", ""])
def test_bad_clock_times_are_rejected(value):
    with pytest.raises(ValidationError):
        parse_clock_time(value)


def test_malformed_record_writes_nothing(reconciler, session):
    records = [_record("John Doe"), _record("Mia Chen", start="later")]
    with pytest.raises(ValidationError) as excinfo:
        reconciler.reconcile(records, VENUE, WEEK, "manager")
    assert excinfo.value.details["record"] == 1
    assert _count(session, Roster) == 0


def test_record_outside_week_is_rejected(reconciler, session):
    with pytest.raises(ValidationError):
        reconciler.reconcile([_record("John Doe", day="2025-01-20")], VENUE, WEEK, "manager")
    assert _count(session, Roster) == 0


def test_batch_size_cap(session, directory, settings):
    settings["limits"]["max_batch_records"] = 2
    reconciler = ExtractionReconciler(session, directory, settings=settings)
    with pytest.raises(ValidationError):
        reconciler.reconcile([_record("John Doe")] * 3, VENUE, WEEK, "manager")


def test_storage_failure_rolls_back_whole_batch(reconciler, session, monkeypatch):
    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "commit", failing_commit)

    with pytest.raises(StorageError):
        reconciler.reconcile([_record("John Doe"), _record("J. Doe", day="2025-01-07")], VENUE, WEEK, "manager")

    assert _count(session, Roster) == 0
    assert _count(session, RosterShift) == 0
    assert _count(session, UnmatchedRosterEntry) == 0
    assert _count(session, RosterHistory) == 0


def test_permission_denied_before_anything_else(session, directory, settings):
    gate = StaticPermissionGate({"clerk": ["edit"]})
    reconciler = ExtractionReconciler(session, directory, gate=gate, settings=settings)
    with pytest.raises(PermissionDeniedError):
        reconciler.reconcile([{"nonsense": True}], VENUE, WEEK, "clerk")
    assert _count(session, Roster) == 0


def test_each_distinct_name_is_matched_once(reconciler, monkeypatch):
    calls = []
    original = reconciler.engine.match

    def spy(raw_name, candidates, shift_counts=None):
        calls.append(raw_name)
        return original(raw_name, candidates, shift_counts)

    monkeypatch.setattr(reconciler.engine, "match", spy)
    records = [_record("John Doe", day=f"2025-01-0{day}") for day in range(6, 10)] + [_record("mia chen")]
    result = reconciler.reconcile(records, VENUE, WEEK, "manager")

    assert calls == ["John Doe", "mia chen"]
    assert result.auto_matched_count == 5


def test_resolve_unmatched_creates_shift(reconciler, session):
    result = reconciler.reconcile([_record("John Doe"), _record("Zed", day="2025-01-07")], VENUE, WEEK, "manager")
    roster = get_roster(session, result.draft_roster_id)
    [entry] = roster.unmatched_entries
    assert entry.suggested_user_id == ZED.id

    shift = reconciler.resolve_unmatched(entry.id, ZED.id, "manager")

    assert shift.user_id == ZED.id
    assert shift.original_name == "Zed"
    assert shift.shift_date == datetime.date(2025, 1, 7)
    assert entry.resolved is True and entry.resolved_user_id == ZED.id
    assert roster.revision == 2
    assert len(roster.shifts) == 2
    last = roster_history(session, roster.id)[-1]
    assert last.action == HistoryAction.UNMATCHED_RESOLVED.value
    assert event_payload(last).shift_id == shift.id

    with pytest.raises(InvalidStateError):
        reconciler.resolve_unmatched(entry.id, ZED.id, "manager")


def test_resolve_reuses_unassigned_placeholder_shift(reconciler, lifecycle, session):
    result = reconciler.reconcile([_record("Zed", day="2025-01-07")], VENUE, WEEK, "manager")
    roster = get_roster(session, result.draft_roster_id)
    placeholder = lifecycle.add_shift(
        roster.id,
        {"date": "2025-01-07", "start_time": "09:00", "end_time": "17:00", "original_name": "Zed"},
        "manager",
    )

    shift = reconciler.resolve_unmatched(roster.unmatched_entries[0].id, ZED.id, "manager")

    assert shift.id == placeholder.id
    assert [item.user_id for item in roster.shifts] == [ZED.id]


def test_resolve_requires_draft_and_known_staff(reconciler, lifecycle, session):
    result = reconciler.reconcile([_record("John Doe"), _record("Zed", day="2025-01-07")], VENUE, WEEK, "manager")
    entry = get_roster(session, result.draft_roster_id).unmatched_entries[0]

    with pytest.raises(ValidationError):
        reconciler.resolve_unmatched(entry.id, 999, "manager")

    lifecycle.publish(result.draft_roster_id, "manager")
    with pytest.raises(InvalidStateError):
        reconciler.resolve_unmatched(entry.id, ZED.id, "manager")
    assert entry.resolved is False


def test_staff_directory_feeds_matching(session, staff_session, settings):
    from collaborators import StaffDirectory
    from database import add_staff_member

    john = add_staff_member(staff_session, "John Doe", [VENUE, "venue-2"])
    add_staff_member(staff_session, "Jane Doering", ["venue-2"])
    add_staff_member(staff_session, "Old Timer", [VENUE], status="inactive")
    directory = StaffDirectory(staff_session)
    assert [person.display_name for person in directory.active_personnel(VENUE)] == ["John Doe"]

    result = ExtractionReconciler(session, directory, settings=settings).reconcile(
        [_record("J. Doe")], VENUE, WEEK, "manager"
    )
    assert get_roster(session, result.draft_roster_id).shifts[0].user_id == john.id


def _merge_draft(reconciler, session):
    result = reconciler.reconcile(
        [_record("John Doe"), _record("Mia Chen", day="2025-01-07"), _record("Zed", day="2025-01-08")],
        VENUE,
        WEEK,
        "manager",
    )
    return get_roster(session, result.draft_roster_id)


MERGE_RECORDS = [
    _record("John Doe", start="10:00"),
    _record("Jane Doering", day="2025-01-09"),
    _record("Zed", day="2025-01-08"),
    _record("Zed", day="2025-01-10"),
]


def test_merge_preview_classifies_without_writing(reconciler, session):
    roster = _merge_draft(reconciler, session)
    before = _count(session, RosterHistory)

    preview = reconciler.preview_merge(roster.id, MERGE_RECORDS)

    assert preview.revision == roster.revision == 1
    assert preview.summary == {
        "add_count": 1,
        "remove_count": 1,
        "update_count": 1,
        "unchanged_count": 0,
        "unmatched_count": 1,
    }
    assert [item.user_id for item in preview.to_add] == [JANE.id]
    assert [item.user_id for item in preview.to_remove] == [4]
    assert preview.to_update[0]["changes"] == ["Start time: 09:00 -> 10:00"]
    # The Zed shift already waiting on Wednesday is not queued twice.
    assert [item["date"] for item in preview.unmatched] == ["2025-01-10"]
    assert "raw" not in preview.to_dict()["unmatched"][0]

    assert _count(session, RosterHistory) == before
    assert roster.revision == 1


def test_apply_merge_applies_selected_changes(reconciler, session):
    roster = _merge_draft(reconciler, session)

    result = reconciler.apply_merge(roster.id, MERGE_RECORDS, "manager", remove=True, expected_revision=1)

    assert (result.added_count, result.removed_count, result.updated_count, result.unmatched_count) == (1, 1, 1, 1)
    assert result.revision == roster.revision == 2
    assert roster.status == DRAFT
    by_user = {shift.user_id: shift for shift in roster.shifts}
    assert sorted(by_user) == [JOHN.id, JANE.id]
    assert by_user[JOHN.id].start_time == datetime.time(10, 0)
    assert by_user[JANE.id].original_name == "Jane Doering"
    assert len(roster.unmatched_entries) == 2

    events = [event for event in roster_history(session, roster.id) if event.action == HistoryAction.SHIFT_CHANGED.value]
    payloads = [event_payload(event) for event in events]
    assert sorted(payload.change for payload in payloads) == ["added", "removed", "updated"]
    assert {payload.source for payload in payloads} == {"merge"}
    assert {event.revision for event in events} == {2}


def test_apply_merge_keeps_unlisted_shifts_by_default(reconciler, session):
    roster = _merge_draft(reconciler, session)

    result = reconciler.apply_merge(roster.id, MERGE_RECORDS, "manager")

    assert result.removed_count == 0
    assert sorted(shift.user_id for shift in roster.shifts) == [JOHN.id, JANE.id, 4]


def test_apply_merge_guards(reconciler, lifecycle, session):
    roster = _merge_draft(reconciler, session)

    with pytest.raises(ConflictError):
        reconciler.apply_merge(roster.id, MERGE_RECORDS, "manager", expected_revision=7)
    with pytest.raises(ValidationError):
        reconciler.apply_merge(roster.id, MERGE_RECORDS, "manager", add=False, update=False)
    with pytest.raises(PermissionDeniedError):
        ExtractionReconciler(
            session, reconciler.directory, gate=StaticPermissionGate({"clerk": ["create"]}), settings=reconciler.settings
        ).apply_merge(roster.id, MERGE_RECORDS, "clerk")
    assert roster.revision == 1
    assert len(roster.shifts) == 2

    lifecycle.publish(roster.id, "manager")
    with pytest.raises(InvalidStateError):
        reconciler.preview_merge(roster.id, MERGE_RECORDS)
    with pytest.raises(InvalidStateError):
        reconciler.apply_merge(roster.id, MERGE_RECORDS, "manager")


def test_merge_with_nothing_new_is_a_no_op(reconciler, session):
    roster = _merge_draft(reconciler, session)
    same = [_record("John Doe"), _record("Mia Chen", day="2025-01-07"), _record("Zed", day="2025-01-08")]

    assert reconciler.preview_merge(roster.id, same).summary["unchanged_count"] == 2
    result = reconciler.apply_merge(roster.id, same, "manager", remove=True)

    assert (result.added_count, result.removed_count, result.updated_count) == (0, 0, 0)
    assert roster.revision == 1
