"""
Brain API Router - residents, state, signals, correlation, trajectories.

Every endpoint answers with the BrainResponse envelope. Routine outcomes
(version conflicts, already-initialized records) come back as error
envelopes carrying the current state in ``data`` so the UI can re-read
and retry; duplicate submissions are successful replays.

Callers may bound an operation with the ``X-Deadline-Ms`` header.

Usage in server.py:
    from api.brain_router import brain_router
    app.include_router(brain_router, prefix="/api/brain")
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from api.response_models import (
    AcknowledgeRequest,
    BrainResponse,
    EvaluateRequest,
    InitializeStateRequest,
    OnboardRequest,
    ProjectRequest,
    ReviewRequest,
    SignalRequest,
    SubmitRequest,
    TransitionRequest,
)
from carebrain import clock
from carebrain import db as db_module
from carebrain.deadline import Deadline
from carebrain.errors import CareBrainError, CoreError, ErrorKind, InvalidInput
from carebrain.escalation import EscalationSink
from carebrain.gateway import IdempotentGateway
from carebrain.intelligence import CompoundEventStore, CorrelationEngine, TrajectoryProjector
from carebrain.residents import onboard
from carebrain.state_store import VersionedStateStore

logger = logging.getLogger(__name__)

brain_router = APIRouter(tags=["Brain"])

STATUS_BY_KIND = {
    ErrorKind.VERSION_CONFLICT: 409,
    ErrorKind.NOT_INITIALIZED: 409,
    ErrorKind.ALREADY_INITIALIZED: 409,
    ErrorKind.DUPLICATE_SUBMISSION: 409,
    ErrorKind.RESIDENT_NOT_FOUND: 404,
    ErrorKind.RULE_NOT_FOUND: 404,
    ErrorKind.EVENT_NOT_FOUND: 404,
    ErrorKind.PROJECTION_NOT_FOUND: 404,
    ErrorKind.DEADLINE_EXCEEDED: 504,
    ErrorKind.INVALID_INPUT: 422,
}

ONE_TARGET_MESSAGE = "Give exactly one of resident_id or agency_id"

# Engines are cached per database so rule seeding runs once per process.
_engines: dict[str, CorrelationEngine] = {}
_projectors: dict[str, TrajectoryProjector] = {}


def get_db_path() -> Path:
    return db_module.get_db_path()


def get_engine(db_path: Path) -> CorrelationEngine:
    key = str(db_path)
    if key not in _engines:
        _engines[key] = CorrelationEngine(db_path, sink=EscalationSink(db_path))
    return _engines[key]


def get_projector(db_path: Path) -> TrajectoryProjector:
    key = str(db_path)
    if key not in _projectors:
        _projectors[key] = TrajectoryProjector(db_path, sink=EscalationSink(db_path))
    return _projectors[key]


def request_deadline(x_deadline_ms: int | None = Header(default=None)) -> Deadline | None:
    if x_deadline_ms is None:
        return None
    return Deadline.after(x_deadline_ms / 1000.0)


def _wrap_response(data, params: dict | None = None) -> dict:
    """Wrap response in standard envelope."""
    return {
        "status": "ok",
        "data": data,
        "computed_at": clock.to_iso(clock.utc_now()),
        "params": params or {},
    }


def _error_response(error: CoreError, params: dict | None = None, data=None) -> JSONResponse:
    """Error envelope with the HTTP status for the error kind."""
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(error.kind, 500),
        content={
            "status": "error",
            "data": data,
            "computed_at": clock.to_iso(clock.utc_now()),
            "params": params or {},
            "error": error.message,
            "error_code": error.kind.value,
        },
    )


def _storage_failure(e: sqlite3.Error) -> HTTPException:
    logger.error("Storage failure: %s", e)
    return HTTPException(status_code=500, detail=str(e))


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return clock.parse_ts(value)
    except ValueError as e:
        raise InvalidInput(f"Invalid timestamp: {value!r}", now=value) from e


# =============================================================================
# RESIDENTS & STATE
# =============================================================================


@brain_router.post("/residents", response_model=BrainResponse)
def onboard_resident(
    body: OnboardRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """Register a resident and create its state record."""
    params = {"resident_id": body.resident_id, "agency_id": body.agency_id}
    try:
        result = onboard(
            body.resident_id,
            body.agency_id,
            body.actor_id,
            display_name=body.display_name,
            initial_fields=body.initial_fields,
            db_path=db_path,
            deadline=deadline,
        )
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    if not result.state.success:
        return _error_response(result.state.error, params, result.to_dict())
    return _wrap_response(result.to_dict(), params)


@brain_router.get("/state/{subject_id}", response_model=BrainResponse)
def get_state(subject_id: str, db_path: Path = Depends(get_db_path)):
    params = {"subject_id": subject_id}
    snapshot = VersionedStateStore(db_path).get(subject_id)
    if snapshot is None:
        return _error_response(CoreError(ErrorKind.NOT_INITIALIZED, f"No state record for {subject_id}"), params)
    return _wrap_response(snapshot.to_dict(), params)


@brain_router.post("/state/{subject_id}", response_model=BrainResponse)
def initialize_state(
    subject_id: str,
    body: InitializeStateRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """Create the version-1 state record for a subject."""
    params = {"subject_id": subject_id, "subject_type": body.subject_type}
    try:
        result = VersionedStateStore(db_path).initialize(
            subject_id, body.subject_type, body.actor_id, body.initial_fields, deadline
        )
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    if not result.success:
        return _error_response(result.error, params, result.to_dict())
    return _wrap_response(result.to_dict(), params)


@brain_router.get("/state/{subject_id}/history", response_model=BrainResponse)
def state_history(
    subject_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db_path: Path = Depends(get_db_path),
):
    entries = VersionedStateStore(db_path).history(subject_id, limit)
    return _wrap_response([e.to_dict() for e in entries], {"subject_id": subject_id, "limit": limit})


@brain_router.post("/state/{subject_id}/transition", response_model=BrainResponse)
def transition_state(
    subject_id: str,
    body: TransitionRequest,
    idempotency_key: str | None = Header(default=None),
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """
    Versioned transition. With an Idempotency-Key header the request goes
    through the gateway, so a retried request never applies twice.
    """
    params = {"subject_id": subject_id, "expected_version": body.expected_version}
    try:
        if idempotency_key:
            submission = IdempotentGateway(db_path).submit(
                idempotency_key,
                {"operation": "state_transition", "subject_id": subject_id, **body.model_dump()},
                deadline,
            )
            data = {**submission.result, "duplicate": submission.duplicate}
            error = submission.result.get("error")
            if not submission.accepted and error:
                kind = ErrorKind(error["kind"])
                return _error_response(CoreError(kind, error["message"], error["details"]), params, data)
            return _wrap_response(data, params)

        result = VersionedStateStore(db_path).transition(
            subject_id, body.expected_version, body.field_updates, body.reason, body.actor_id, deadline
        )
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    if not result.success:
        return _error_response(result.error, params, result.to_dict())
    return _wrap_response(result.to_dict(), params)


# =============================================================================
# GATEWAY & SIGNALS
# =============================================================================


@brain_router.post("/submit", response_model=BrainResponse)
def submit(
    body: SubmitRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """Generic idempotent submission of any registered gateway operation."""
    params = {"idempotency_key": body.idempotency_key, "operation": body.payload.get("operation")}
    try:
        submission = IdempotentGateway(db_path).submit(body.idempotency_key, body.payload, deadline)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    if not submission.accepted:
        error = submission.result.get("error") or {}
        kind = ErrorKind(error.get("kind", ErrorKind.INVALID_INPUT.value))
        return _error_response(
            CoreError(kind, error.get("message", "Submission rejected"), error.get("details", {})),
            params,
            submission.to_dict(),
        )
    return _wrap_response(submission.to_dict(), params)


@brain_router.post("/signals", response_model=BrainResponse)
def ingest_signal(
    body: SignalRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """Normalize and record one collaborator row."""
    params = {"source_table": body.source_table, "idempotency_key": body.idempotency_key}
    try:
        submission = IdempotentGateway(db_path).submit(
            body.idempotency_key,
            {"operation": "signal_ingest", "source_table": body.source_table, "row": body.row},
            deadline,
        )
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    return _wrap_response({**submission.result, "duplicate": submission.duplicate}, params)


# =============================================================================
# CORRELATION
# =============================================================================


@brain_router.post("/correlation/evaluate", response_model=BrainResponse)
def evaluate(
    body: EvaluateRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """Evaluate one resident, or every resident of an agency."""
    params = body.model_dump(exclude_none=True)
    if bool(body.resident_id) == bool(body.agency_id):
        return _error_response(CoreError(ErrorKind.INVALID_INPUT, ONE_TARGET_MESSAGE), params)
    try:
        engine = get_engine(db_path)
        now = _parse_now(body.now)
        if body.agency_id:
            summary = engine.evaluate_agency(body.agency_id, body.window_hours, now, deadline)
            return _wrap_response(summary.to_dict(), params)
        events = engine.evaluate(body.resident_id, body.window_hours, now, deadline)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    return _wrap_response([e.to_dict() for e in events], params)


@brain_router.get("/events", response_model=BrainResponse)
def unreviewed_events(
    agency_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db_path: Path = Depends(get_db_path),
):
    """Events awaiting supervisor review."""
    events = CompoundEventStore(db_path).unreviewed(agency_id, limit)
    return _wrap_response([e.to_dict() for e in events], {"agency_id": agency_id, "limit": limit})


@brain_router.get("/events/{event_id}", response_model=BrainResponse)
def get_event(event_id: str, db_path: Path = Depends(get_db_path)):
    params = {"event_id": event_id}
    try:
        event = CompoundEventStore(db_path).get(event_id)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    return _wrap_response(event.to_dict(), params)


@brain_router.post("/events/{event_id}/review", response_model=BrainResponse)
def review_event(event_id: str, body: ReviewRequest, db_path: Path = Depends(get_db_path)):
    params = {"event_id": event_id, "action": body.action}
    try:
        event = CompoundEventStore(db_path).review_event(event_id, body.supervisor_id, body.action, body.notes)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    return _wrap_response(event.to_dict(), params)


# =============================================================================
# TRAJECTORY
# =============================================================================


@brain_router.post("/trajectory/project", response_model=BrainResponse)
def project(
    body: ProjectRequest,
    db_path: Path = Depends(get_db_path),
    deadline: Deadline | None = Depends(request_deadline),
):
    """
    Project one resident (risk_type required) or an agency (all risk
    types unless one is given). INSUFFICIENT projections are normal data.
    """
    params = body.model_dump(exclude_none=True)
    if bool(body.resident_id) == bool(body.agency_id):
        return _error_response(CoreError(ErrorKind.INVALID_INPUT, ONE_TARGET_MESSAGE), params)
    try:
        projector = get_projector(db_path)
        now = _parse_now(body.now)
        if body.agency_id:
            projections = projector.project_agency(body.agency_id, body.risk_type, now, deadline)
            return _wrap_response([p.to_dict() for p in projections], params)
        if not body.risk_type:
            raise InvalidInput("risk_type is required for a single resident")
        projection = projector.project(body.resident_id, body.risk_type, now, deadline)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    return _wrap_response(projection.to_dict(), params)


@brain_router.get("/trajectory/{resident_id}", response_model=BrainResponse)
def latest_trajectories(resident_id: str, db_path: Path = Depends(get_db_path)):
    """Most recent projection per risk type."""
    projections = get_projector(db_path).latest_projections(resident_id)
    return _wrap_response([p.to_dict() for p in projections], {"resident_id": resident_id})


@brain_router.get("/trajectory/projections/{projection_id}/reproduce", response_model=BrainResponse)
def reproduce(projection_id: str, db_path: Path = Depends(get_db_path)):
    params = {"projection_id": projection_id}
    try:
        reproduction = get_projector(db_path).reproduce(projection_id)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    return _wrap_response(reproduction.to_dict(), params)


# =============================================================================
# ESCALATIONS
# =============================================================================


@brain_router.get("/escalations", response_model=BrainResponse)
def pending_escalations(
    agency_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db_path: Path = Depends(get_db_path),
):
    entries = EscalationSink(db_path).pending(agency_id, limit)
    return _wrap_response([e.to_dict() for e in entries], {"agency_id": agency_id, "limit": limit})


@brain_router.post("/escalations/{entry_id}/acknowledge", response_model=BrainResponse)
def acknowledge_escalation(entry_id: str, body: AcknowledgeRequest, db_path: Path = Depends(get_db_path)):
    params = {"entry_id": entry_id}
    try:
        entry = EscalationSink(db_path).acknowledge(entry_id, body.actor_id)
    except CareBrainError as e:
        return _error_response(e.to_error(), params)
    except sqlite3.Error as e:
        raise _storage_failure(e) from e
    return _wrap_response(entry.to_dict(), params)
