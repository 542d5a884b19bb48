"""FastAPI surface over the roster lifecycle and extraction reconciler.

The acting user arrives in the ``X-Actor`` header; authentication itself
lives in front of this service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure the flat module imports (e.g., "import database") resolve when served as "app.api".
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from chains import chain_summary, legacy_parent_id  # noqa: E402
from collaborators import LoggingNotificationSink, StaffDirectory  # noqa: E402
from database import (  # noqa: E402
    SessionLocal,
    StaffSessionLocal,
    init_database,
    roster_to_dict,
    shift_to_dict,
)
from errors import NotFoundError, RosterError  # noqa: E402
from history import event_to_dict  # noqa: E402
from lifecycle import RosterLifecycle  # noqa: E402
from reconcile import ExtractionReconciler  # noqa: E402
from settings import load_settings  # noqa: E402


logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "validation": 400,
    "invalid_state": 409,
    "permission": 403,
    "conflict": 409,
    "not_found": 404,
    "storage": 503,
}

notifier = LoggingNotificationSink()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_database()
    yield


app = FastAPI(title="Roster Engine API", version="0.1", lifespan=lifespan)


@app.exception_handler(RosterError)
async def roster_error_handler(_: Request, exc: RosterError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("Request failed: %s", exc.message)
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"error": exc.to_dict()}))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_staff_db():
    db = StaffSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Dict[str, Any]:
    return load_settings()


def get_notifier():
    return notifier


def get_directory(staff_db=Depends(get_staff_db)):
    return StaffDirectory(staff_db)


def get_lifecycle(db=Depends(get_db), settings=Depends(get_settings), sink=Depends(get_notifier)) -> RosterLifecycle:
    return RosterLifecycle(db, notifier=sink, settings=settings)


def get_reconciler(db=Depends(get_db), directory=Depends(get_directory), settings=Depends(get_settings)):
    return ExtractionReconciler(db, directory, settings=settings)


def _roster_response(roster, status_code: int = 200, include_shifts: bool = True) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(roster_to_dict(roster, include_shifts=include_shifts)))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/rosters")
def create_roster(
    payload: Dict[str, Any],
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    roster = lifecycle.create(payload, actor or "")
    return _roster_response(roster, status_code=201)


@app.get("/api/v1/rosters/compare")
def compare_rosters(base: int, other: int, lifecycle: RosterLifecycle = Depends(get_lifecycle)) -> JSONResponse:
    diff = lifecycle.compare_versions(base, other)
    return JSONResponse(content=jsonable_encoder(diff.to_dict()))


@app.get("/api/v1/rosters/{roster_id}")
def get_roster(roster_id: int, lifecycle: RosterLifecycle = Depends(get_lifecycle)) -> JSONResponse:
    roster = lifecycle.get_roster(roster_id)
    payload = roster_to_dict(roster, include_shifts=True)
    payload["legacy_parent_id"] = legacy_parent_id(lifecycle.session, roster)
    return JSONResponse(content=jsonable_encoder(payload))


@app.patch("/api/v1/rosters/{roster_id}")
def update_roster(
    roster_id: int,
    payload: Dict[str, Any],
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    return _roster_response(lifecycle.update(roster_id, payload, actor or ""))


@app.delete("/api/v1/rosters/{roster_id}")
def delete_roster(
    roster_id: int,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(lifecycle.delete(roster_id, actor or "")))


@app.post("/api/v1/rosters/{roster_id}/shifts")
def add_shift(
    roster_id: int,
    payload: Dict[str, Any],
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    shift = lifecycle.add_shift(roster_id, payload, actor or "")
    return JSONResponse(status_code=201, content=jsonable_encoder(shift_to_dict(shift)))


@app.patch("/api/v1/shifts/{shift_id}")
def update_shift(
    shift_id: int,
    payload: Dict[str, Any],
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    shift = lifecycle.update_shift(shift_id, payload, actor or "")
    return JSONResponse(content=jsonable_encoder(shift_to_dict(shift)))


@app.delete("/api/v1/shifts/{shift_id}")
def remove_shift(
    shift_id: int,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    lifecycle.remove_shift(shift_id, actor or "")
    return JSONResponse(content={"removed": shift_id})


@app.post("/api/v1/rosters/{roster_id}/publish")
def publish_roster(
    roster_id: int,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    return _roster_response(lifecycle.publish(roster_id, actor or ""), include_shifts=False)


@app.post("/api/v1/rosters/{roster_id}/archive")
def archive_roster(
    roster_id: int,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    return _roster_response(lifecycle.archive(roster_id, actor or ""), include_shifts=False)


@app.post("/api/v1/rosters/{roster_id}/copy")
def copy_roster(
    roster_id: int,
    payload: Dict[str, Any] | None = None,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    payload = payload or {}
    target_week = payload.get("target_week_start")
    if target_week:
        roster = lifecycle.copy_different_week(roster_id, target_week, actor or "", name=payload.get("name"))
    else:
        roster = lifecycle.copy_same_week(roster_id, actor or "", name=payload.get("name"))
    return _roster_response(roster, status_code=201)


@app.post("/api/v1/rosters/{roster_id}/restore")
def restore_roster(
    roster_id: int,
    lifecycle: RosterLifecycle = Depends(get_lifecycle),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    return _roster_response(lifecycle.restore_version(roster_id, actor or ""), status_code=201)


@app.get("/api/v1/rosters/{roster_id}/history")
def roster_history(roster_id: int, lifecycle: RosterLifecycle = Depends(get_lifecycle)) -> JSONResponse:
    lifecycle.get_roster(roster_id)
    events = [event_to_dict(event) for event in lifecycle.history(roster_id)]
    return JSONResponse(content=jsonable_encoder(events))


@app.post("/api/v1/reconcile")
def reconcile_extraction(
    payload: Dict[str, Any],
    reconciler: ExtractionReconciler = Depends(get_reconciler),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    result = reconciler.reconcile(
        payload.get("records") or [],
        payload.get("venue_id"),
        payload.get("week_start"),
        actor or "",
        source_file=payload.get("source_file"),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(result))


@app.post("/api/v1/rosters/{roster_id}/merge/preview")
def preview_merge(
    roster_id: int,
    payload: Dict[str, Any],
    reconciler: ExtractionReconciler = Depends(get_reconciler),
) -> JSONResponse:
    preview = reconciler.preview_merge(roster_id, payload.get("records") or [])
    return JSONResponse(content=jsonable_encoder(preview.to_dict()))


@app.post("/api/v1/rosters/{roster_id}/merge")
def apply_merge(
    roster_id: int,
    payload: Dict[str, Any],
    reconciler: ExtractionReconciler = Depends(get_reconciler),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    result = reconciler.apply_merge(
        roster_id,
        payload.get("records") or [],
        actor or "",
        add=bool(payload.get("add", True)),
        remove=bool(payload.get("remove", False)),
        update=bool(payload.get("update", True)),
        expected_revision=payload.get("expected_revision"),
    )
    return JSONResponse(content=jsonable_encoder(result))


@app.post("/api/v1/unmatched/{entry_id}/resolve")
def resolve_unmatched(
    entry_id: int,
    payload: Dict[str, Any],
    reconciler: ExtractionReconciler = Depends(get_reconciler),
    actor: Optional[str] = Header(None, alias="X-Actor"),
) -> JSONResponse:
    shift = reconciler.resolve_unmatched(entry_id, payload.get("user_id"), actor or "")
    return JSONResponse(content=jsonable_encoder(shift_to_dict(shift)))


@app.get("/api/v1/chains/{chain_id}")
def chain_detail(chain_id: str, lifecycle: RosterLifecycle = Depends(get_lifecycle)) -> JSONResponse:
    detail = lifecycle.describe_chain(chain_id)
    if detail is None:
        raise NotFoundError(f"Chain {chain_id} was not found.", chain_id=chain_id)
    detail["summary"] = chain_summary(lifecycle.session, chain_id)
    return JSONResponse(content=jsonable_encoder(detail))


@app.get("/api/v1/chains/{chain_id}/history")
def chain_events(chain_id: str, lifecycle: RosterLifecycle = Depends(get_lifecycle)) -> JSONResponse:
    events = [event_to_dict(event) for event in lifecycle.chain_history(chain_id)]
    return JSONResponse(content=jsonable_encoder(events))
