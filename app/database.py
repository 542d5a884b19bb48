from __future__ import annotations

import datetime
import enum
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from errors import NotFoundError, StorageError


logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
ROSTER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'rosters.db').as_posix()}"
STAFF_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'staff.db').as_posix()}"


class RosterStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


ROSTER_STATUS_CHOICES = {status.value for status in RosterStatus}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class StaffBase(DeclarativeBase):
    """Standalone metadata for the venue personnel directory living in staff.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for roster, shift, unmatched-entry and history tables living in rosters.db."""

    pass


class StaffMember(StaffBase):
    __tablename__ = "staff_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    venue_ids: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def venue_list(self) -> List[str]:
        return [venue.strip() for venue in self.venue_ids.split(",") if venue.strip()]

    @venue_list.setter
    def venue_list(self, venues: Iterable[str]) -> None:
        self.venue_ids = ",".join(sorted({venue.strip() for venue in venues if venue.strip()}))


class Roster(Base):
    __tablename__ = "rosters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    venue_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RosterStatus.DRAFT.value)
    chain_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False)
    published_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    source_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_file_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    source_file_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    shifts: Mapped[List["RosterShift"]] = relationship(
        back_populates="roster",
        cascade="all, delete-orphan",
        order_by=lambda: [RosterShift.shift_date, RosterShift.start_time, RosterShift.id],
    )
    unmatched_entries: Mapped[List["UnmatchedRosterEntry"]] = relationship(
        back_populates="roster",
        cascade="all, delete-orphan",
        order_by=lambda: UnmatchedRosterEntry.id,
    )

    __table_args__ = (
        UniqueConstraint("chain_id", "version_number", name="uq_rosters_chain_version"),
        # At most one active version per chain.
        Index(
            "uq_rosters_chain_active",
            "chain_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    @property
    def assigned_shifts(self) -> List["RosterShift"]:
        return [shift for shift in self.shifts if shift.user_id is not None]


class RosterShift(Base):
    __tablename__ = "roster_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    roster_id: Mapped[int] = mapped_column(ForeignKey("rosters.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    shift_date: Mapped[datetime.date] = mapped_column("date", Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    has_conflict: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conflict_kind: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    roster: Mapped[Roster] = relationship(back_populates="shifts")


class UnmatchedRosterEntry(Base):
    __tablename__ = "unmatched_roster_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    roster_id: Mapped[int] = mapped_column(ForeignKey("rosters.id", ondelete="CASCADE"), nullable=False, index=True)
    original_name: Mapped[str] = mapped_column(String(120), nullable=False)
    suggested_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Raw shift details kept so a manual resolution can create the shift later.
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    roster: Mapped[Roster] = relationship(back_populates="unmatched_entries")


class RosterHistory(Base):
    """Append-only ledger row. roster_id is deliberately not a foreign key so events outlive drafts."""

    __tablename__ = "roster_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    roster_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    chain_id: Mapped[str] = mapped_column(String(40), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    payloadJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    actor: Mapped[str] = mapped_column(String(60), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_roster_history_chain_order", "chain_id", "version", "created_at", "id"),
    )


roster_engine = create_engine(
    ROSTER_DATABASE_URL,
    echo=False,
    future=True,
)
staff_engine = create_engine(
    STAFF_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=roster_engine, expire_on_commit=False, future=True)
StaffSessionLocal = sessionmaker(bind=staff_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(roster_engine)
    StaffBase.metadata.create_all(staff_engine)


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Run a block as one transaction: commit on success, roll everything back otherwise."""
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Storage failure, transaction rolled back: %s", exc)
        raise StorageError("storage write failed; no changes were applied", cause=type(exc).__name__) from exc
    except BaseException:
        session.rollback()
        raise


def _coerce_staff_session(session):
    """Return (staff_session, should_close) ensuring we talk to the staff database."""
    if session is None:
        return StaffSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is roster_engine:
        return StaffSessionLocal(), True
    return session, False


def get_roster(session: Session, roster_id: int) -> Roster:
    roster = session.get(Roster, roster_id)
    if roster is None:
        raise NotFoundError(f"Roster {roster_id} was not found.", roster_id=roster_id)
    return roster


def get_shift(session: Session, shift_id: int) -> RosterShift:
    shift = session.get(RosterShift, shift_id)
    if shift is None:
        raise NotFoundError(f"Shift {shift_id} was not found.", shift_id=shift_id)
    return shift


def get_unmatched_entry(session: Session, entry_id: int) -> UnmatchedRosterEntry:
    entry = session.get(UnmatchedRosterEntry, entry_id)
    if entry is None:
        raise NotFoundError(f"Unmatched entry {entry_id} was not found.", entry_id=entry_id)
    return entry


def list_staff(staff_session=None, venue_id: str | None = None, only_active: bool = True) -> List[StaffMember]:
    staff_session, close_session = _coerce_staff_session(staff_session)
    try:
        stmt = select(StaffMember)
        if only_active:
            stmt = stmt.where(StaffMember.status == "active")
        stmt = stmt.order_by(StaffMember.full_name.asc(), StaffMember.id.asc())
        members = list(staff_session.scalars(stmt))
        if venue_id is not None:
            members = [member for member in members if venue_id in member.venue_list]
        return members
    finally:
        if close_session:
            staff_session.close()


def add_staff_member(staff_session, full_name: str, venues: Iterable[str], *, status: str = "active") -> StaffMember:
    member = StaffMember(full_name=full_name.strip(), status=status)
    member.venue_list = venues
    staff_session.add(member)
    staff_session.commit()
    staff_session.refresh(member)
    return member


def _format_time(value: Optional[datetime.time]) -> Optional[str]:
    return value.strftime("%H:%M") if value else None


def shift_to_dict(shift: RosterShift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "roster_id": shift.roster_id,
        "user_id": shift.user_id,
        "date": shift.shift_date,
        "start_time": _format_time(shift.start_time),
        "end_time": _format_time(shift.end_time),
        "break_minutes": shift.break_minutes,
        "position": shift.position,
        "notes": shift.notes,
        "original_name": shift.original_name,
        "has_conflict": shift.has_conflict,
        "conflict_kind": shift.conflict_kind,
    }


def unmatched_to_dict(entry: UnmatchedRosterEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "roster_id": entry.roster_id,
        "original_name": entry.original_name,
        "suggested_user_id": entry.suggested_user_id,
        "confidence": entry.confidence,
        "resolved": entry.resolved,
        "resolved_user_id": entry.resolved_user_id,
        "date": entry.shift_date,
        "start_time": _format_time(entry.start_time),
        "end_time": _format_time(entry.end_time),
        "position": entry.position,
    }


def roster_to_dict(roster: Roster, *, include_shifts: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": roster.id,
        "venue_id": roster.venue_id,
        "name": roster.name,
        "description": roster.description,
        "start_date": roster.start_date,
        "end_date": roster.end_date,
        "status": roster.status,
        "chain_id": roster.chain_id,
        "version_number": roster.version_number,
        "revision": roster.revision,
        "is_active": roster.is_active,
        "created_by": roster.created_by,
        "published_at": roster.published_at,
        "published_by": roster.published_by,
        "source_file_name": roster.source_file_name,
    }
    if include_shifts:
        payload["shifts"] = [shift_to_dict(shift) for shift in roster.shifts]
        payload["unmatched_entries"] = [unmatched_to_dict(entry) for entry in roster.unmatched_entries]
    return payload
