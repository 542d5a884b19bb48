"""Version chains: the identity of a venue-week and the store of its roster versions.

All versions of "the schedule for venue X in week Y" share one deterministic
``chain_id``. Within a chain, version numbers only grow and at most one
version is active (in effect for staff) at any time.
"""

from __future__ import annotations

import datetime
import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from collaborators import PermissionGate, StaticPermissionGate, check_permission
from database import Roster, RosterShift, RosterStatus, get_roster, unit_of_work
from errors import InvalidStateError
from history import HistoryAction, SupersededPayload, last_known_version, record_event


logger = logging.getLogger(__name__)


def normalize_week_start(value: datetime.date, week_start_day: int = 0) -> datetime.date:
    """Return the first day of the week containing ``value`` (0 = Monday ... 6 = Sunday)."""
    if isinstance(value, datetime.datetime):
        value = value.date()
    offset = (value.weekday() - week_start_day) % 7
    return value - datetime.timedelta(days=offset)


def week_bounds(value: datetime.date, week_start_day: int = 0) -> Tuple[datetime.date, datetime.date]:
    start = normalize_week_start(value, week_start_day)
    return start, start + datetime.timedelta(days=6)


def chain_id_for(venue_id: str, any_date_in_week: datetime.date, week_start_day: int = 0) -> str:
    week_start = normalize_week_start(any_date_in_week, week_start_day)
    digest = hashlib.sha256(f"roster-chain:{venue_id}:{week_start.isoformat()}".encode("utf-8")).hexdigest()
    return f"chain_{digest[:24]}"


def next_version_number(session: Session, chain_id: str) -> int:
    """One above every version number the chain has used, archived and deleted ones included."""
    stored = session.execute(
        select(func.max(Roster.version_number)).where(Roster.chain_id == chain_id)
    ).scalar()
    return max(int(stored or 0), last_known_version(session, chain_id)) + 1


def list_chain_versions(session: Session, chain_id: str) -> List[Roster]:
    stmt = select(Roster).where(Roster.chain_id == chain_id).order_by(Roster.version_number.asc())
    return list(session.scalars(stmt))


def current_versions(session: Session, chain_id: str) -> List[Roster]:
    stmt = (
        select(Roster)
        .where(Roster.chain_id == chain_id, Roster.status != RosterStatus.ARCHIVED.value)
        .order_by(Roster.version_number.asc())
    )
    return list(session.scalars(stmt))


def get_active_version(session: Session, chain_id: str) -> Optional[Roster]:
    stmt = select(Roster).where(Roster.chain_id == chain_id, Roster.is_active.is_(True))
    return session.scalars(stmt).first()


def has_draft_version(session: Session, chain_id: str) -> bool:
    stmt = select(Roster.id).where(Roster.chain_id == chain_id, Roster.status == RosterStatus.DRAFT.value)
    return session.execute(stmt).first() is not None


def find_open_roster(session: Session, chain_id: str) -> Optional[Roster]:
    """Return a non-archived roster of the chain, preferring the active one, then the newest."""
    stmt = (
        select(Roster)
        .where(Roster.chain_id == chain_id, Roster.status != RosterStatus.ARCHIVED.value)
        .order_by(Roster.is_active.desc(), Roster.version_number.desc())
    )
    return session.scalars(stmt).first()


def legacy_parent_id(session: Session, roster: Roster) -> Optional[int]:
    """Derived replacement for the old stored parent link: the previous version in the chain."""
    stmt = (
        select(Roster.id)
        .where(Roster.chain_id == roster.chain_id, Roster.version_number < roster.version_number)
        .order_by(Roster.version_number.desc())
    )
    return session.execute(stmt).scalars().first()


def _shift_counts(session: Session, roster_ids: List[int]) -> Dict[int, int]:
    if not roster_ids:
        return {}
    stmt = (
        select(RosterShift.roster_id, func.count(RosterShift.id))
        .where(RosterShift.roster_id.in_(roster_ids))
        .group_by(RosterShift.roster_id)
    )
    return {roster_id: int(count) for roster_id, count in session.execute(stmt)}


def version_info(roster: Roster, shift_count: int = 0) -> Dict[str, Any]:
    return {
        "roster_id": roster.id,
        "name": roster.name,
        "version_number": roster.version_number,
        "status": roster.status,
        "is_active": roster.is_active,
        "published_at": roster.published_at,
        "created_at": roster.created_at,
        "created_by": roster.created_by,
        "shift_count": shift_count,
    }


def describe_chain(session: Session, chain_id: str) -> Optional[Dict[str, Any]]:
    rosters = list_chain_versions(session, chain_id)
    if not rosters:
        return None
    counts = _shift_counts(session, [roster.id for roster in rosters])
    versions = [version_info(roster, counts.get(roster.id, 0)) for roster in rosters]
    active = next((item for item in versions if item["is_active"]), None)
    first = rosters[0]
    return {
        "chain_id": chain_id,
        "venue_id": first.venue_id,
        "week_start": first.start_date,
        "week_end": first.end_date,
        "versions": versions,
        "active_version": active,
        "total_versions": len(versions),
    }


def chain_summary(session: Session, chain_id: str) -> Optional[Dict[str, Any]]:
    rosters = list_chain_versions(session, chain_id)
    if not rosters:
        return None
    active = next((roster for roster in rosters if roster.is_active), None)
    return {
        "chain_id": chain_id,
        "total_versions": len(rosters),
        "active_version_number": active.version_number if active else None,
        "has_draft": any(roster.status == RosterStatus.DRAFT.value for roster in rosters),
        "latest_version_number": rosters[-1].version_number,
    }


def _set_active(session: Session, chain_id: str, roster_id: Optional[int]) -> None:
    # Deactivate first so two active versions never coexist, even between statements.
    deactivate = update(Roster).where(Roster.chain_id == chain_id, Roster.is_active.is_(True))
    if roster_id is not None:
        deactivate = deactivate.where(Roster.id != roster_id)
    session.execute(deactivate.values(is_active=False))
    if roster_id is not None:
        session.execute(update(Roster).where(Roster.id == roster_id).values(is_active=True))


def activate_version(session: Session, roster: Roster, actor: str) -> List[Roster]:
    """Make ``roster`` the active version of its chain inside the caller's transaction.

    Returns the versions that were superseded (previously active siblings).
    """
    if roster.status == RosterStatus.ARCHIVED.value:
        raise InvalidStateError("archived rosters cannot be activated", roster_id=roster.id)
    session.flush()
    # Lock the chain so concurrent activations serialise (no-op on SQLite, which locks the database).
    # populate_existing: a stale session must see which sibling is active right now.
    siblings = list(
        session.scalars(
            select(Roster)
            .where(Roster.chain_id == roster.chain_id)
            .order_by(Roster.version_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    )
    superseded = [sibling for sibling in siblings if sibling.is_active and sibling.id != roster.id]
    _set_active(session, roster.chain_id, roster.id)
    for sibling in superseded:
        session.refresh(sibling)
        record_event(
            session,
            sibling,
            HistoryAction.VERSION_SUPERSEDED,
            SupersededPayload(superseded_by_roster_id=roster.id, superseded_by_version=roster.version_number),
            actor,
        )
    session.refresh(roster)
    logger.info(
        "Activated roster %s (chain %s v%s); superseded %s",
        roster.id,
        roster.chain_id,
        roster.version_number,
        [sibling.id for sibling in superseded] or "nothing",
    )
    return superseded


def activate(session: Session, roster_id: int, actor: str, gate: Optional[PermissionGate] = None) -> Roster:
    """Make a published version the active one. Checked as a publish through the gate."""
    check_permission(gate or StaticPermissionGate.from_settings(), actor, "publish")
    with unit_of_work(session):
        roster = get_roster(session, roster_id)
        activate_version(session, roster, actor)
    return roster


def plan_active_flag_repairs(session: Session) -> List[Dict[str, Any]]:
    """List chains whose active flag disagrees with "highest published version is active"."""
    plans: List[Dict[str, Any]] = []
    chain_ids = [row[0] for row in session.execute(select(Roster.chain_id).distinct().order_by(Roster.chain_id))]
    for chain_id in chain_ids:
        rosters = list_chain_versions(session, chain_id)
        published = [roster for roster in rosters if roster.status == RosterStatus.PUBLISHED.value]
        should_be_active = published[-1] if published else None
        wrong = [
            roster.id
            for roster in rosters
            if roster.is_active != (should_be_active is not None and roster.id == should_be_active.id)
        ]
        if wrong:
            plans.append(
                {
                    "chain_id": chain_id,
                    "active_roster_id": should_be_active.id if should_be_active else None,
                    "version_number": should_be_active.version_number if should_be_active else None,
                    "fixed_roster_ids": wrong,
                }
            )
    return plans


def repair_chain_active_flags(session: Session) -> List[Dict[str, Any]]:
    """Keep only the highest published version of each chain active. Returns the chains that changed.

    Operator maintenance for the repair script; it runs with direct database
    access and has no acting user, so no permission gate is consulted.
    """
    with unit_of_work(session):
        plans = plan_active_flag_repairs(session)
        for plan in plans:
            _set_active(session, plan["chain_id"], plan["active_roster_id"])
            logger.warning(
                "Repaired active flags on chain %s (rosters %s)", plan["chain_id"], plan["fixed_roster_ids"]
            )
    return plans
