from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from collaborators import LoggingNotificationSink, Person, StaticDirectory  # noqa: E402
from database import Base, StaffBase  # noqa: E402
from lifecycle import RosterLifecycle  # noqa: E402
from reconcile import ExtractionReconciler  # noqa: E402
from settings import build_default_settings  # noqa: E402


VENUE = "venue-1"
WEEK = datetime.date(2025, 1, 6)  # a Monday

JOHN = Person(id=1, display_name="John Doe")
JANE = Person(id=2, display_name="Jane Doering")
ZED = Person(id=3, display_name="Zed Bloggs")
MIA = Person(id=4, display_name="Mia Chen")


def _memory_engine():
    return create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def session(monkeypatch):
    """In-memory roster database; the module-level engine/session factory point at it too."""
    engine = _memory_engine()
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "roster_engine", engine)
    monkeypatch.setattr(db, "SessionLocal", Session)
    Base.metadata.create_all(engine)
    with Session() as active:
        yield active
    engine.dispose()


@pytest.fixture()
def staff_session(monkeypatch):
    engine = _memory_engine()
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "staff_engine", engine)
    monkeypatch.setattr(db, "StaffSessionLocal", Session)
    StaffBase.metadata.create_all(engine)
    with Session() as active:
        yield active
    engine.dispose()


@pytest.fixture()
def settings():
    return build_default_settings()


@pytest.fixture()
def directory():
    return StaticDirectory({VENUE: [JOHN, JANE, ZED, MIA]})


@pytest.fixture()
def notifier():
    return LoggingNotificationSink()


@pytest.fixture()
def lifecycle(session, notifier, settings):
    return RosterLifecycle(session, notifier=notifier, settings=settings)


@pytest.fixture()
def reconciler(session, directory, settings):
    return ExtractionReconciler(session, directory, settings=settings)


@pytest.fixture()
def make_roster(lifecycle):
    """Factory: a roster in ``WEEK`` (or ``week``) with one shift per user id, optionally published."""

    def _make(user_ids=(1,), *, week=WEEK, venue=VENUE, publish=False, actor="manager"):
        roster = lifecycle.create({"venue_id": venue, "start_date": week}, actor)
        for offset, user_id in enumerate(user_ids):
            lifecycle.add_shift(
                roster.id,
                {
                    "user_id": user_id,
                    "date": week + datetime.timedelta(days=offset % 7),
                    "start_time": "09:00",
                    "end_time": "17:00",
                    "position": "Bar",
                },
                actor,
            )
        if publish:
            lifecycle.publish(roster.id, actor)
        return roster

    return _make
