"""API service for authoring care protocols and tracking patient runs."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List

from dotenv import find_dotenv, load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from protocol_core.config import CoreConfig
from protocol_core.errors import (
    InvalidStateError,
    InvalidTriggerError,
    NotFoundError,
    ProtocolError,
    StoreUnavailableError,
    ValidationError,
)
from protocol_core.models import (
    Assignment,
    AssignmentStatus,
    ButtonAction,
    EventKind,
    FeedbackButton,
    FeedbackConfig,
    MessageType,
    MoveDirection,
    Patient,
    PatientStatus,
    ProtocolDefinition,
    ProtocolStatus,
    ProtocolStep,
    StepEvent,
    TriggerSpec,
    TriggerType,
    content_from_payload,
    content_to_payload,
    utcnow,
)
from pydantic import BaseModel, Field
from reporting import export

from api_service import workflows
from api_service.dependencies import get_core_config, get_operator_id, get_storage
from api_service.storage import Storage, init_db

# Load .env from repo root (find_dotenv walks up to find it)
load_dotenv(find_dotenv())

# Configure logging level from environment or default to INFO
# Note: uvicorn may have already set up logging, so we need to override it
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_str, logging.INFO)
if not isinstance(log_level, int):
    log_level = logging.INFO

logging.basicConfig(
    level=log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    force=True,  # Override any existing configuration (including uvicorn's)
)

# These may have been created before basicConfig, so set explicitly
logging.getLogger("api_service").setLevel(log_level)
logging.getLogger("protocol_core").setLevel(log_level)
logging.getLogger("reporting").setLevel(log_level)
logging.getLogger("uvicorn").setLevel(log_level)
logging.getLogger("uvicorn.access").setLevel(log_level)
logging.getLogger("uvicorn.error").setLevel(log_level)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGE_SIZE = 100
RETRY_AFTER_SECONDS = 1


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the API service."""

    max_page_size: int

    @staticmethod
    def from_env() -> "ApiConfig":
        """Create ApiConfig from environment variables."""
        raw_value = os.getenv("API_SERVICE_MAX_PAGE_SIZE")
        try:
            value = int(raw_value) if raw_value else DEFAULT_MAX_PAGE_SIZE
        except ValueError:
            value = DEFAULT_MAX_PAGE_SIZE
        if value <= 0:
            value = DEFAULT_MAX_PAGE_SIZE
        return ApiConfig(max_page_size=value)


def get_config() -> ApiConfig:
    """Get the current API configuration."""
    return ApiConfig.from_env()


@asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncIterator[None]:
    """Initialize and teardown app state for the lifespan scope."""
    init_db()
    config = CoreConfig.from_env()
    logger.info(
        "API ready (timezone=%s store_timeout=%.1fs)",
        config.timezone,
        config.store_timeout_seconds,
    )
    yield
    logger.info("Shutdown complete")


app = FastAPI(title="Care Protocol API", version="0.1.0", lifespan=lifespan)

# CORS (UI integration)
# Defaults support local dev servers. Override with comma-separated origins in env.
_cors_origins_env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
allow_origins = (
    [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
    if _cors_origins_env
    else ["http://localhost:5173", "http://localhost:3000"]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_for(exc: ProtocolError) -> int:
    if isinstance(exc, (ValidationError, InvalidTriggerError)):
        return 422
    if isinstance(exc, InvalidStateError):
        return 409
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StoreUnavailableError):
        return 503
    return 500


@app.exception_handler(ProtocolError)
async def protocol_error_handler(request: Request, exc: ProtocolError) -> JSONResponse:
    """Map domain errors to HTTP responses with a uniform body."""
    status_code = _status_for(exc)
    violations = list(getattr(exc, "violations", []))
    if isinstance(exc, InvalidTriggerError) and not violations:
        violations = [exc.message]
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "violations": violations,
            "retryable": exc.retryable,
        },
        headers=headers,
    )


class PatientCreateRequest(BaseModel):
    """Request payload for registering a patient."""

    display_name: str = Field(min_length=1)
    real_name: str | None = None


class PatientStatusUpdateRequest(BaseModel):
    """Payload for changing a patient's status."""

    status: PatientStatus


class PatientResponse(BaseModel):
    """Response payload for a patient."""

    id: str
    display_name: str
    real_name: str | None
    status: PatientStatus
    created_at: datetime | None


class PatientListResponse(BaseModel):
    """Response payload for listing patients."""

    patients: List[PatientResponse]
    total: int


class PatientStatsResponse(BaseModel):
    """Patient counts by status."""

    total: int
    active: int
    inactive: int


class TriggerPayload(BaseModel):
    """Trigger of a step."""

    type: TriggerType
    value: str = ""


class FeedbackButtonPayload(BaseModel):
    """Response button of an action step."""

    label: str
    value: str
    action: ButtonAction = ButtonAction.complete


class FeedbackPayload(BaseModel):
    """Prompt and buttons of an action step."""

    question: str
    buttons: List[FeedbackButtonPayload] = []


class StepPayload(BaseModel):
    """Request payload for a step; position is decided by the endpoint."""

    trigger: TriggerPayload
    message_type: MessageType
    content: dict[str, Any] = {}
    requires_action: bool = False
    feedback: FeedbackPayload | None = None


class StepResponse(StepPayload):
    """Response payload for a step."""

    order: int


class ProtocolCreateRequest(BaseModel):
    """Request payload for creating a draft protocol."""

    name: str = Field(min_length=1)
    description: str | None = None
    steps: List[StepPayload] = []


class ProtocolUpdateRequest(BaseModel):
    """Payload for editing a protocol's header fields."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: ProtocolStatus | None = None


class ProtocolResponse(BaseModel):
    """Response payload for a protocol with its steps."""

    id: str
    name: str
    description: str | None
    status: ProtocolStatus
    created_by: str | None
    created_at: datetime | None
    updated_at: datetime | None
    total_steps: int
    steps: List[StepResponse]


class ProtocolListResponse(BaseModel):
    """Response for listing protocols."""

    protocols: List[ProtocolResponse]
    total: int
    skip: int
    limit: int


class ProtocolValidationResponse(BaseModel):
    """Outcome of validating a protocol."""

    is_valid: bool
    errors: List[str]


class StepListResponse(BaseModel):
    """Steps of a protocol in order."""

    protocol_id: str
    steps: List[StepResponse]


class StepMoveRequest(BaseModel):
    """Payload for moving a step one position."""

    direction: MoveDirection


class StepMoveResponse(BaseModel):
    """Steps after a move; ``moved`` is False at a boundary."""

    protocol_id: str
    moved: bool
    steps: List[StepResponse]


class StepReplaceResponse(BaseModel):
    """Steps after a whole-list replacement and what changed."""

    protocol_id: str
    steps: List[StepResponse]
    updated: List[int]
    added: List[int]
    removed: List[int]


class AssignmentCreateRequest(BaseModel):
    """Request payload for assigning a protocol to a patient."""

    patient_id: str
    protocol_id: str


class AssignmentResponse(BaseModel):
    """Response payload for an assignment."""

    id: str
    protocol_id: str
    patient_id: str
    status: AssignmentStatus
    assigned_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    current_step_index: int
    total_steps: int
    completed_steps: int
    adherence_rate: float | None
    next_fire_at: datetime | None
    version: int


class AssignmentListResponse(BaseModel):
    """Response for listing assignments."""

    assignments: List[AssignmentResponse]


class AssignmentAction(str, Enum):
    """Operator transitions of an assignment."""

    start = "start"
    pause = "pause"
    resume = "resume"
    complete = "complete"


class EventCreateRequest(BaseModel):
    """Payload for recording a step event; naive timestamps are UTC."""

    step_index: int
    kind: EventKind
    timestamp: datetime | None = None
    value: str | None = None


class EventResponse(BaseModel):
    """Response payload for a recorded step event."""

    id: str | None
    assignment_id: str
    step_index: int
    kind: EventKind
    timestamp: datetime
    value: str | None


class EventListResponse(BaseModel):
    """Events of an assignment in time order."""

    assignment_id: str
    events: List[EventResponse]


class EventRecordResponse(BaseModel):
    """Recorded event plus the assignment it moved."""

    event: EventResponse
    assignment: AssignmentResponse
    advanced: bool
    completed: bool
    postponed: bool


class StepMetricsResponse(BaseModel):
    """Per-step delivery and response counts."""

    step_index: int
    sent_count: int
    response_count: int
    adherence_rate: float
    average_response_time: float | None


class ProtocolAdherenceResponse(BaseModel):
    """Adherence summary of one protocol."""

    protocol_id: str
    total_patients: int
    total_assignments: int
    active_assignments: int
    completed_assignments: int
    completion_rate: float
    average_response_time: float | None
    step_metrics: List[StepMetricsResponse]


class PatientAdherenceResponse(BaseModel):
    """Adherence summary of one patient."""

    patient_id: str
    display_name: str
    real_name: str | None
    status: str
    active_protocols: int
    total_assignments: int
    overall_adherence_rate: float | None
    last_interaction: datetime | None


class PatientAdherenceListResponse(BaseModel):
    """Adherence summaries of patients."""

    patients: List[PatientAdherenceResponse]


class DashboardResponse(BaseModel):
    """System-wide totals."""

    total_patients: int
    active_patients: int
    active_protocols: int
    total_assignments: int
    overall_adherence_rate: float | None
    average_response_time: float | None


class ExportFormat(str, Enum):
    """Supported export formats."""

    csv = "csv"
    json = "json"


def _step_from_payload(payload: StepPayload, order: int = 0) -> ProtocolStep:
    feedback = None
    if payload.feedback is not None:
        feedback = FeedbackConfig(
            question=payload.feedback.question,
            buttons=[
                FeedbackButton(label=item.label, value=item.value, action=item.action)
                for item in payload.feedback.buttons
            ],
        )
    return ProtocolStep(
        order=order,
        trigger=TriggerSpec(payload.trigger.type, payload.trigger.value),
        message_type=payload.message_type,
        content=content_from_payload(payload.message_type, payload.content),
        requires_action=payload.requires_action,
        feedback=feedback,
    )


def _step_to_response(step: ProtocolStep) -> StepResponse:
    return StepResponse(
        order=step.order,
        trigger=TriggerPayload(type=step.trigger.type, value=step.trigger.value),
        message_type=step.message_type,
        content=content_to_payload(step.content),
        requires_action=step.requires_action,
        feedback=(
            FeedbackPayload(
                question=step.feedback.question,
                buttons=[
                    FeedbackButtonPayload(
                        label=item.label, value=item.value, action=item.action
                    )
                    for item in step.feedback.buttons
                ],
            )
            if step.feedback is not None
            else None
        ),
    )


def _protocol_to_response(definition: ProtocolDefinition) -> ProtocolResponse:
    return ProtocolResponse(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        status=definition.status,
        created_by=definition.created_by,
        created_at=definition.created_at,
        updated_at=definition.updated_at,
        total_steps=definition.total_steps,
        steps=[_step_to_response(step) for step in definition.steps],
    )


def _patient_to_response(patient: Patient) -> PatientResponse:
    return PatientResponse(**asdict(patient))


def _assignment_to_response(assignment: Assignment) -> AssignmentResponse:
    return AssignmentResponse(**asdict(assignment))


def _event_to_response(event: StepEvent) -> EventResponse:
    return EventResponse(**asdict(event))


# Patients


@app.post("/v1/patients")
def create_patient(
    payload: PatientCreateRequest,
    storage: Storage = Depends(get_storage),
) -> PatientResponse:
    """Register a patient."""
    patient = storage.create_patient(
        display_name=payload.display_name, real_name=payload.real_name
    )
    return _patient_to_response(patient)


@app.get("/v1/patients")
def list_patients(
    status: PatientStatus | None = None,
    storage: Storage = Depends(get_storage),
) -> PatientListResponse:
    """List patients, optionally filtered by status."""
    patients = storage.list_patients(status=status.value if status else None)
    return PatientListResponse(
        patients=[_patient_to_response(item) for item in patients],
        total=len(patients),
    )


@app.get("/v1/patients/stats")
def get_patient_stats(storage: Storage = Depends(get_storage)) -> PatientStatsResponse:
    """Count patients by status."""
    return PatientStatsResponse(**storage.patient_stats())


@app.put("/v1/patients/{patient_id}/status")
def update_patient_status(
    patient_id: str,
    payload: PatientStatusUpdateRequest,
    storage: Storage = Depends(get_storage),
) -> PatientResponse:
    """Activate or deactivate a patient."""
    patient = storage.update_patient_status(patient_id=patient_id, status=payload.status)
    if patient is None:
        raise NotFoundError(f"patient '{patient_id}' not found")
    return _patient_to_response(patient)


# Protocols


@app.get("/v1/protocols")
def list_protocols(
    status: ProtocolStatus | None = None,
    created_by: str | None = None,
    skip: int = 0,
    limit: int = 20,
    storage: Storage = Depends(get_storage),
) -> ProtocolListResponse:
    """List protocols with filters and pagination."""
    if skip < 0 or limit <= 0 or limit > get_config().max_page_size:
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")

    protocols, total = storage.list_protocols(
        status=status.value if status else None,
        created_by=created_by,
        skip=skip,
        limit=limit,
    )
    return ProtocolListResponse(
        protocols=[_protocol_to_response(item) for item in protocols],
        total=total,
        skip=skip,
        limit=limit,
    )


@app.post("/v1/protocols")
def create_protocol(
    payload: ProtocolCreateRequest,
    storage: Storage = Depends(get_storage),
    operator_id: str | None = Depends(get_operator_id),
) -> ProtocolResponse:
    """Create a draft protocol, optionally with its initial steps."""
    steps = [
        _step_from_payload(item, order)
        for order, item in enumerate(payload.steps, start=1)
    ]
    definition = storage.create_protocol(
        name=payload.name,
        description=payload.description,
        created_by=operator_id,
        steps=steps,
    )
    logger.info("Created protocol %s by %s", definition.id, operator_id or "unknown")
    return _protocol_to_response(definition)


@app.get("/v1/protocols/{protocol_id}")
def get_protocol(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> ProtocolResponse:
    """Get a protocol with its steps."""
    return _protocol_to_response(storage.require_protocol(protocol_id))


@app.put("/v1/protocols/{protocol_id}")
def update_protocol(
    protocol_id: str,
    payload: ProtocolUpdateRequest,
    storage: Storage = Depends(get_storage),
) -> ProtocolResponse:
    """Edit name, description or status."""
    definition = workflows.update_protocol(
        storage,
        protocol_id,
        name=payload.name,
        description=payload.description,
        status=payload.status,
    )
    return _protocol_to_response(definition)


@app.delete("/v1/protocols/{protocol_id}", status_code=204)
def delete_protocol(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> Response:
    """Delete a protocol without assignments."""
    workflows.delete_protocol(storage, protocol_id)
    return Response(status_code=204)


@app.post("/v1/protocols/{protocol_id}/activate")
def activate_protocol(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> ProtocolResponse:
    """Validate a draft and make it assignable."""
    return _protocol_to_response(workflows.activate_protocol(storage, protocol_id))


@app.get("/v1/protocols/{protocol_id}/validate")
def validate_protocol(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> ProtocolValidationResponse:
    """Report every violation of a protocol without changing it."""
    errors = workflows.validate_protocol(storage, protocol_id)
    return ProtocolValidationResponse(is_valid=not errors, errors=errors)


# Steps


@app.get("/v1/protocols/{protocol_id}/steps")
def list_steps(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> StepListResponse:
    """List the steps of a protocol in order."""
    definition = storage.require_protocol(protocol_id)
    return StepListResponse(
        protocol_id=protocol_id,
        steps=[_step_to_response(step) for step in definition.steps],
    )


@app.post("/v1/protocols/{protocol_id}/steps")
def add_step(
    protocol_id: str,
    payload: StepPayload,
    storage: Storage = Depends(get_storage),
) -> StepListResponse:
    """Append a step to a draft protocol."""
    definition = workflows.add_step(storage, protocol_id, _step_from_payload(payload))
    return StepListResponse(
        protocol_id=protocol_id,
        steps=[_step_to_response(step) for step in definition.steps],
    )


@app.put("/v1/protocols/{protocol_id}/steps")
def replace_steps(
    protocol_id: str,
    payload: List[StepPayload],
    storage: Storage = Depends(get_storage),
) -> StepReplaceResponse:
    """Replace the whole step list of a draft protocol."""
    definition, diff = workflows.replace_steps(
        storage, protocol_id, [_step_from_payload(item) for item in payload]
    )
    return StepReplaceResponse(
        protocol_id=protocol_id,
        steps=[_step_to_response(step) for step in definition.steps],
        updated=diff.updated,
        added=diff.added,
        removed=diff.removed,
    )


@app.put("/v1/protocols/{protocol_id}/steps/{order}")
def update_step(
    protocol_id: str,
    order: int,
    payload: StepPayload,
    storage: Storage = Depends(get_storage),
) -> StepListResponse:
    """Overwrite one step of a draft protocol."""
    definition = workflows.update_step(
        storage, protocol_id, order, _step_from_payload(payload, order)
    )
    return StepListResponse(
        protocol_id=protocol_id,
        steps=[_step_to_response(step) for step in definition.steps],
    )


@app.delete("/v1/protocols/{protocol_id}/steps/{order}")
def remove_step(
    protocol_id: str,
    order: int,
    storage: Storage = Depends(get_storage),
) -> StepListResponse:
    """Remove a step; later steps move up one position."""
    definition = workflows.remove_step(storage, protocol_id, order)
    return StepListResponse(
        protocol_id=protocol_id,
        steps=[_step_to_response(step) for step in definition.steps],
    )


@app.post("/v1/protocols/{protocol_id}/steps/{order}/move")
def move_step(
    protocol_id: str,
    order: int,
    payload: StepMoveRequest,
    storage: Storage = Depends(get_storage),
) -> StepMoveResponse:
    """Swap a step with its neighbour."""
    definition, moved = workflows.move_step(
        storage, protocol_id, order, payload.direction
    )
    return StepMoveResponse(
        protocol_id=protocol_id,
        moved=moved,
        steps=[_step_to_response(step) for step in definition.steps],
    )


# Assignments


@app.post("/v1/assignments")
def create_assignment(
    payload: AssignmentCreateRequest,
    storage: Storage = Depends(get_storage),
) -> AssignmentResponse:
    """Assign an active protocol to a patient."""
    assignment = workflows.assign_protocol(
        storage, patient_id=payload.patient_id, protocol_id=payload.protocol_id
    )
    return _assignment_to_response(assignment)


@app.get("/v1/assignments/due")
def list_due_assignments(
    now: datetime | None = None,
    storage: Storage = Depends(get_storage),
) -> AssignmentListResponse:
    """Active assignments whose current step is due to fire."""
    due = storage.list_due_assignments(now or utcnow())
    return AssignmentListResponse(
        assignments=[_assignment_to_response(item) for item in due]
    )


@app.get("/v1/assignments/{assignment_id}")
def get_assignment(
    assignment_id: str,
    storage: Storage = Depends(get_storage),
) -> AssignmentResponse:
    """Get an assignment."""
    return _assignment_to_response(storage.require_assignment(assignment_id))


@app.get("/v1/protocols/{protocol_id}/assignments")
def list_protocol_assignments(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> AssignmentListResponse:
    """List the assignments of a protocol."""
    storage.require_protocol(protocol_id)
    return AssignmentListResponse(
        assignments=[
            _assignment_to_response(item)
            for item in storage.list_assignments(protocol_id=protocol_id)
        ]
    )


@app.delete("/v1/assignments/{assignment_id}", status_code=204)
def delete_assignment(
    assignment_id: str,
    storage: Storage = Depends(get_storage),
) -> Response:
    """Delete an assignment and its events."""
    workflows.delete_assignment(storage, assignment_id)
    return Response(status_code=204)


# Events are registered before the action route so "events" is not an action.


@app.post("/v1/assignments/{assignment_id}/events")
def record_event(
    assignment_id: str,
    payload: EventCreateRequest,
    storage: Storage = Depends(get_storage),
    config: CoreConfig = Depends(get_core_config),
) -> EventRecordResponse:
    """Record a sent or responded event for a step."""
    assignment, outcome = workflows.record_step_event(
        storage,
        assignment_id,
        step_index=payload.step_index,
        kind=payload.kind,
        timestamp=payload.timestamp,
        value=payload.value,
        tz=config.tzinfo,
    )
    return EventRecordResponse(
        event=_event_to_response(outcome.event),
        assignment=_assignment_to_response(assignment),
        advanced=outcome.advanced,
        completed=outcome.completed,
        postponed=outcome.postponed,
    )


@app.get("/v1/assignments/{assignment_id}/events")
def list_events(
    assignment_id: str,
    storage: Storage = Depends(get_storage),
) -> EventListResponse:
    """List the events of an assignment."""
    storage.require_assignment(assignment_id)
    return EventListResponse(
        assignment_id=assignment_id,
        events=[
            _event_to_response(item)
            for item in storage.list_events(assignment_ids=[assignment_id])
        ],
    )


@app.post("/v1/assignments/{assignment_id}/{action}")
def transition_assignment(
    assignment_id: str,
    action: AssignmentAction,
    storage: Storage = Depends(get_storage),
    config: CoreConfig = Depends(get_core_config),
) -> AssignmentResponse:
    """Start, pause, resume or complete an assignment."""
    assignment = workflows.transition_assignment(
        storage, assignment_id, action.value, tz=config.tzinfo
    )
    return _assignment_to_response(assignment)


# Reports


@app.get("/v1/reports/protocols/{protocol_id}/adherence")
def get_protocol_adherence(
    protocol_id: str,
    storage: Storage = Depends(get_storage),
) -> ProtocolAdherenceResponse:
    """Adherence summary of one protocol."""
    report = workflows.protocol_report(storage, protocol_id)
    return ProtocolAdherenceResponse.model_validate(asdict(report))


@app.get("/v1/reports/patients")
def get_patient_adherence(
    status: PatientStatus | None = None,
    storage: Storage = Depends(get_storage),
) -> PatientAdherenceListResponse:
    """Adherence summaries of patients."""
    reports = workflows.patient_reports(storage, status)
    return PatientAdherenceListResponse(
        patients=[PatientAdherenceResponse(**asdict(item)) for item in reports]
    )


@app.get("/v1/reports/dashboard")
def get_dashboard(storage: Storage = Depends(get_storage)) -> DashboardResponse:
    """System-wide totals."""
    return DashboardResponse(**asdict(workflows.dashboard(storage)))


@app.get("/v1/reports/export", response_model=None)
def export_events(
    format: ExportFormat = ExportFormat.csv,
    protocol_id: str | None = None,
    patient_id: str | None = None,
    storage: Storage = Depends(get_storage),
) -> Response:
    """Export the event log joined with assignments as CSV or JSON."""
    rows = workflows.export_rows(storage, protocol_id=protocol_id, patient_id=patient_id)
    logger.info("Exporting %d rows as %s", len(rows), format.value)
    if format is ExportFormat.json:
        return JSONResponse(content=export.to_json(rows))
    return Response(
        content=export.to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="adherence_export.csv"'},
    )
