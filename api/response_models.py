"""
Shared Pydantic models for the brain API.

Responses use one envelope so UIs handle conflicts, duplicates and
insufficient data the same way they handle success.

Usage:
    from api.response_models import BrainResponse, TransitionRequest

    @router.post("/state/{subject_id}/transition", response_model=BrainResponse)
    def transition(subject_id: str, body: TransitionRequest): ...
"""

from typing import Any

from pydantic import BaseModel, Field

# ==== Brain Envelope ====
# Shape: {status, data, computed_at, params, error?, error_code?}


class BrainResponse(BaseModel):
    """Standard brain endpoint envelope."""

    status: str = Field(description="ok or error")
    data: Any = Field(default=None, description="Response payload")
    computed_at: str = Field(description="ISO timestamp of computation")
    params: dict[str, Any] = Field(default_factory=dict, description="Echo of request params")
    error: str | None = Field(default=None, description="Error message if status=error")
    error_code: str | None = Field(default=None, description="Error kind if status=error")


# ==== Health Check ====


class HealthResponse(BaseModel):
    status: str = Field(description="healthy or error")
    version: str = Field(description="Package version")
    schema_version: int = Field(description="Core schema version")
    timestamp: str = Field(description="ISO timestamp")


# ==== Requests ====


class OnboardRequest(BaseModel):
    resident_id: str
    agency_id: str
    actor_id: str
    display_name: str | None = None
    initial_fields: dict[str, str] | None = None


class InitializeStateRequest(BaseModel):
    subject_type: str = Field(default="resident", description="resident or system")
    actor_id: str
    initial_fields: dict[str, str] | None = None


class TransitionRequest(BaseModel):
    expected_version: int = Field(ge=1)
    field_updates: dict[str, str]
    reason: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)


class SubmitRequest(BaseModel):
    """Gateway submission; payload["operation"] selects the handler."""

    idempotency_key: str | None = None
    payload: dict[str, Any]


class SignalRequest(BaseModel):
    source_table: str
    row: dict[str, Any]
    idempotency_key: str | None = None


class EvaluateRequest(BaseModel):
    resident_id: str | None = None
    agency_id: str | None = None
    window_hours: float | None = Field(default=None, gt=0)
    now: str | None = Field(default=None, description="Window end, ISO timestamp")


class ReviewRequest(BaseModel):
    supervisor_id: str
    action: str = Field(description="ACKNOWLEDGED, ESCALATED, DISMISSED or CARE_PLAN_UPDATED")
    notes: str | None = None


class ProjectRequest(BaseModel):
    resident_id: str | None = None
    agency_id: str | None = None
    risk_type: str | None = None
    now: str | None = Field(default=None, description="Computation time, ISO timestamp")


class AcknowledgeRequest(BaseModel):
    actor_id: str
