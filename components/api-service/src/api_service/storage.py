"""Storage layer for the API service."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, cast

from protocol_core import models as core
from protocol_core.config import CoreConfig
from protocol_core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
)
from protocol_core.scheduler import as_utc
from sqlalchemy import JSON, Column, DateTime, delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

logger = logging.getLogger(__name__)


def _utc_column(*, nullable: bool, index: bool = False) -> Any:
    return Column(DateTime(timezone=True), nullable=nullable, index=index)


class Patient(SQLModel, table=True):
    """Patient record persisted for API requests."""

    id: str = Field(primary_key=True)
    display_name: str
    real_name: str | None = None
    # active, inactive
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(
        default_factory=core.utcnow, sa_column=_utc_column(nullable=False)
    )


class Protocol(SQLModel, table=True):
    """Protocol definition header; steps live in ProtocolStep."""

    id: str = Field(primary_key=True)
    name: str
    description: str | None = None
    # draft, active, paused, completed
    status: str = Field(default="draft", index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=core.utcnow, sa_column=_utc_column(nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=core.utcnow, sa_column=_utc_column(nullable=False)
    )


class ProtocolStep(SQLModel, table=True):
    """Step row, addressed by (protocol_id, step_order)."""

    id: str = Field(primary_key=True)
    protocol_id: str = Field(foreign_key="protocol.id", index=True)
    step_order: int
    trigger_type: str
    trigger_value: str = ""
    message_type: str
    content: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    requires_action: bool = False
    feedback: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )


class Assignment(SQLModel, table=True):
    """Assignment record; ``version`` guards concurrent transitions."""

    id: str = Field(primary_key=True)
    protocol_id: str = Field(foreign_key="protocol.id", index=True)
    patient_id: str = Field(foreign_key="patient.id", index=True)
    # assigned, active, paused, completed
    status: str = Field(default="assigned", index=True)
    assigned_at: datetime = Field(
        default_factory=core.utcnow, sa_column=_utc_column(nullable=False)
    )
    started_at: datetime | None = Field(
        default=None, sa_column=_utc_column(nullable=True)
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=_utc_column(nullable=True)
    )
    current_step_index: int = Field(default=0)
    total_steps: int = Field(default=0)
    completed_steps: int = Field(default=0)
    adherence_rate: float | None = None
    next_fire_at: datetime | None = Field(
        default=None, sa_column=_utc_column(nullable=True, index=True)
    )
    version: int = Field(default=0)


class StepEvent(SQLModel, table=True):
    """Append-only step event log."""

    id: str = Field(primary_key=True)
    assignment_id: str = Field(foreign_key="assignment.id", index=True)
    step_index: int
    # sent, responded
    kind: str
    timestamp: datetime = Field(sa_column=_utc_column(nullable=False))
    value: str | None = None


DEFAULT_DB_PATH = (
    Path(__file__).resolve().parents[2] / ".data" / "api_service.db"
)


def _database_url() -> str:
    return (
        os.getenv("DATABASE_URL")
        or os.getenv("API_SERVICE_DB_URL")
        or f"sqlite:///{DEFAULT_DB_PATH}"
    )


@lru_cache
def get_engine() -> Engine:
    """Create or return the cached database engine.

    Every connection is bounded by ``STORE_TIMEOUT_SECONDS``: the SQLite busy
    timeout, or the pool checkout timeout for server databases.
    """
    timeout = CoreConfig.from_env().store_timeout_seconds
    url = _database_url()
    if "DATABASE_URL" not in os.environ and "API_SERVICE_DB_URL" not in os.environ:
        DEFAULT_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
    connect_args: dict[str, Any] = {}
    if url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    return create_engine(
        url,
        pool_timeout=timeout,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def init_db() -> None:
    """Initialize the database tables."""
    # Reference models to trigger registration
    _ = Patient, Protocol, ProtocolStep, Assignment, StepEvent
    SQLModel.metadata.create_all(get_engine())


def reset_storage() -> None:
    """Clear all stored data (used for tests and demos)."""
    if os.getenv("ALLOW_STORAGE_RESET") != "1":
        raise RuntimeError(
            "reset_storage() requires ALLOW_STORAGE_RESET=1 environment variable. "
            "This function destroys all data and should only be used in tests."
        )
    _ = Patient, Protocol, ProtocolStep, Assignment, StepEvent
    # Clear engine cache so a changed DATABASE_URL takes effect
    get_engine.cache_clear()
    SQLModel.metadata.drop_all(get_engine())
    init_db()


def _generate_id(prefix: str) -> str:
    """Generate a unique identifier with prefix.

    Args:
        prefix: Prefix for the ID (e.g., "proto", "asg", "evt").

    Returns:
        A unique identifier in the format "{prefix}-{uuid}".

    Examples:
        >>> _generate_id("proto")
        'proto-550e8400e29b41d4a716446655440000'
    """
    return f"{prefix}-{uuid.uuid4().hex}"


def _norm_opt(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned if cleaned else None


def _opt_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _feedback_to_json(feedback: core.FeedbackConfig | None) -> dict[str, Any] | None:
    if feedback is None:
        return None
    return {
        "question": feedback.question,
        "buttons": [
            {"label": item.label, "value": item.value, "action": item.action.value}
            for item in feedback.buttons
        ],
    }


def _feedback_from_json(raw: dict[str, Any] | None) -> core.FeedbackConfig | None:
    if raw is None:
        return None
    return core.FeedbackConfig(
        question=raw.get("question", ""),
        buttons=[
            core.FeedbackButton(
                label=item.get("label", ""),
                value=item.get("value", ""),
                action=core.ButtonAction(item.get("action", "complete")),
            )
            for item in raw.get("buttons", [])
        ],
    )


def _step_values(step: core.ProtocolStep) -> dict[str, Any]:
    return {
        "step_order": step.order,
        "trigger_type": step.trigger.type.value,
        "trigger_value": step.trigger.value or "",
        "message_type": step.message_type.value,
        "content": core.content_to_payload(step.content),
        "requires_action": step.requires_action,
        "feedback": _feedback_to_json(step.feedback),
    }


def _to_core_step(row: ProtocolStep) -> core.ProtocolStep:
    return core.ProtocolStep(
        order=row.step_order,
        trigger=core.TriggerSpec(core.TriggerType(row.trigger_type), row.trigger_value),
        message_type=core.MessageType(row.message_type),
        content=core.content_from_payload(row.message_type, row.content),
        requires_action=row.requires_action,
        feedback=_feedback_from_json(row.feedback),
    )


def _to_core_definition(
    row: Protocol, steps: Iterable[ProtocolStep]
) -> core.ProtocolDefinition:
    return core.ProtocolDefinition(
        id=row.id,
        name=row.name,
        description=row.description,
        status=core.ProtocolStatus(row.status),
        steps=[
            _to_core_step(step) for step in sorted(steps, key=lambda s: s.step_order)
        ],
        created_by=row.created_by,
        created_at=_opt_utc(row.created_at),
        updated_at=_opt_utc(row.updated_at),
    )


def _to_core_patient(row: Patient) -> core.Patient:
    return core.Patient(
        id=row.id,
        display_name=row.display_name,
        real_name=row.real_name,
        status=core.PatientStatus(row.status),
        created_at=_opt_utc(row.created_at),
    )


def _to_core_assignment(row: Assignment) -> core.Assignment:
    return core.Assignment(
        id=row.id,
        protocol_id=row.protocol_id,
        patient_id=row.patient_id,
        status=core.AssignmentStatus(row.status),
        assigned_at=_opt_utc(row.assigned_at),
        started_at=_opt_utc(row.started_at),
        completed_at=_opt_utc(row.completed_at),
        current_step_index=row.current_step_index,
        total_steps=row.total_steps,
        completed_steps=row.completed_steps,
        adherence_rate=row.adherence_rate,
        next_fire_at=_opt_utc(row.next_fire_at),
        version=row.version,
    )


def _to_core_event(row: StepEvent) -> core.StepEvent:
    return core.StepEvent(
        id=row.id,
        assignment_id=row.assignment_id,
        step_index=row.step_index,
        kind=core.EventKind(row.kind),
        timestamp=as_utc(row.timestamp),
        value=row.value,
    )


def _assignment_values(assignment: core.Assignment) -> dict[str, Any]:
    return {
        "status": assignment.status.value,
        "started_at": assignment.started_at,
        "completed_at": assignment.completed_at,
        "current_step_index": assignment.current_step_index,
        "total_steps": assignment.total_steps,
        "completed_steps": assignment.completed_steps,
        "adherence_rate": assignment.adherence_rate,
        "next_fire_at": assignment.next_fire_at,
        "version": assignment.version + 1,
    }


class Storage:
    """Repository wrapper around SQLModel sessions.

    Returns ``protocol_core`` dataclasses so that callers never hold live
    ORM rows.
    """

    def __init__(self, engine: Engine) -> None:
        """Initialize the storage with a database engine."""
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("Store call failed: %s", exc)
            raise StoreUnavailableError(
                "store is unavailable, retry with backoff"
            ) from exc

    # Patients

    def create_patient(
        self, *, display_name: str, real_name: str | None = None
    ) -> core.Patient:
        """Persist a patient record and return it."""
        with self._session() as session:
            patient = Patient(
                id=_generate_id("patient"),
                display_name=display_name.strip(),
                real_name=_norm_opt(real_name),
            )
            session.add(patient)
            session.commit()
            session.refresh(patient)
            return _to_core_patient(patient)

    def get_patient(self, patient_id: str) -> core.Patient | None:
        """Fetch a patient by ID."""
        with self._session() as session:
            row = session.get(Patient, patient_id)
            return _to_core_patient(row) if row is not None else None

    def list_patients(self, status: str | None = None) -> list[core.Patient]:
        """List patients, optionally filtered by status."""
        with self._session() as session:
            statement = select(Patient).order_by(Patient.display_name)
            if status is not None:
                statement = statement.where(col(Patient.status) == status)
            return [_to_core_patient(row) for row in session.exec(statement)]

    def patient_stats(self) -> dict[str, int]:
        """Count patients by status."""
        with self._session() as session:
            rows = session.exec(
                select(Patient.status, func.count(col(Patient.id))).group_by(
                    Patient.status
                )
            ).all()
        counts = {status: int(count) for status, count in rows}
        return {
            "total": sum(counts.values()),
            "active": counts.get(core.PatientStatus.active.value, 0),
            "inactive": counts.get(core.PatientStatus.inactive.value, 0),
        }

    def update_patient_status(
        self, *, patient_id: str, status: core.PatientStatus
    ) -> core.Patient | None:
        """Set a patient's status."""
        with self._session() as session:
            row = session.get(Patient, patient_id)
            if row is None:
                return None
            row.status = status.value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_core_patient(row)

    # Protocol definitions

    def create_protocol(
        self,
        *,
        name: str,
        description: str | None = None,
        created_by: str | None = None,
        steps: Iterable[core.ProtocolStep] = (),
    ) -> core.ProtocolDefinition:
        """Persist a draft definition with its initial steps."""
        with self._session() as session:
            protocol = Protocol(
                id=_generate_id("proto"),
                name=name.strip(),
                description=_norm_opt(description),
                created_by=_norm_opt(created_by),
            )
            session.add(protocol)
            rows = []
            for order, step in enumerate(steps, start=1):
                step.order = order
                row = ProtocolStep(
                    id=_generate_id("step"), protocol_id=protocol.id, **_step_values(step)
                )
                session.add(row)
                rows.append(row)
            session.commit()
            session.refresh(protocol)
            return _to_core_definition(protocol, rows)

    def _step_rows(self, session: Session, protocol_id: str) -> list[ProtocolStep]:
        statement = (
            select(ProtocolStep)
            .where(col(ProtocolStep.protocol_id) == protocol_id)
            .order_by(col(ProtocolStep.step_order))
        )
        return list(session.exec(statement))

    def get_protocol(self, protocol_id: str) -> core.ProtocolDefinition | None:
        """Fetch a definition with its steps."""
        with self._session() as session:
            row = session.get(Protocol, protocol_id)
            if row is None:
                return None
            return _to_core_definition(row, self._step_rows(session, protocol_id))

    def require_protocol(self, protocol_id: str) -> core.ProtocolDefinition:
        """Fetch a definition or raise NotFoundError."""
        definition = self.get_protocol(protocol_id)
        if definition is None:
            raise NotFoundError(f"protocol '{protocol_id}' not found")
        return definition

    def list_protocols(
        self,
        *,
        status: str | None = None,
        created_by: str | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[core.ProtocolDefinition], int]:
        """List definitions with filters and pagination."""
        with self._session() as session:
            count_statement = select(func.count(col(Protocol.id)))
            statement = select(Protocol)
            if status is not None:
                count_statement = count_statement.where(col(Protocol.status) == status)
                statement = statement.where(col(Protocol.status) == status)
            if created_by is not None:
                count_statement = count_statement.where(
                    col(Protocol.created_by) == created_by
                )
                statement = statement.where(col(Protocol.created_by) == created_by)
            total = session.exec(count_statement).one()
            # Order by name for consistent ordering (UUIDs are not ordered)
            rows = list(
                session.exec(
                    statement.order_by(Protocol.name, Protocol.id)
                    .offset(skip)
                    .limit(limit)
                )
            )
            definitions = [
                _to_core_definition(row, self._step_rows(session, row.id))
                for row in rows
            ]
            return definitions, int(total)

    def list_all_protocols(self) -> list[core.ProtocolDefinition]:
        """Return every definition with steps (reporting reads)."""
        with self._session() as session:
            rows = list(session.exec(select(Protocol).order_by(Protocol.name)))
            return [
                _to_core_definition(row, self._step_rows(session, row.id))
                for row in rows
            ]

    def save_protocol(
        self, definition: core.ProtocolDefinition
    ) -> core.ProtocolDefinition:
        """Write header fields and sync steps by order.

        Rows of existing orders are updated in place, new orders inserted and
        orders past the end deleted.
        """
        with self._session() as session:
            row = session.get(Protocol, definition.id)
            if row is None:
                raise NotFoundError(f"protocol '{definition.id}' not found")
            row.name = definition.name.strip()
            row.description = _norm_opt(definition.description)
            row.status = definition.status.value
            row.updated_at = core.utcnow()
            session.add(row)

            existing = {step.step_order: step for step in self._step_rows(session, row.id)}
            for step in definition.steps:
                values = _step_values(step)
                current = existing.pop(step.order, None)
                if current is None:
                    session.add(
                        ProtocolStep(
                            id=_generate_id("step"), protocol_id=row.id, **values
                        )
                    )
                    continue
                for key, value in values.items():
                    setattr(current, key, value)
                session.add(current)
            for stale in existing.values():
                session.delete(stale)
            session.commit()
            session.refresh(row)
            return _to_core_definition(row, self._step_rows(session, row.id))

    def delete_protocol(self, protocol_id: str) -> bool:
        """Delete a definition and its steps.

        Raises:
            InvalidStateError: While assignments still reference it.
        """
        with self._session() as session:
            row = session.get(Protocol, protocol_id)
            if row is None:
                return False
            referenced = session.exec(
                select(func.count(col(Assignment.id))).where(
                    col(Assignment.protocol_id) == protocol_id
                )
            ).one()
            if referenced:
                raise InvalidStateError(
                    f"protocol '{protocol_id}' still has {referenced} assignment(s); "
                    "delete them first"
                )
            session.exec(
                delete(ProtocolStep).where(
                    cast(Any, ProtocolStep.protocol_id) == protocol_id
                )
            )
            session.delete(row)
            session.commit()
            return True

    # Assignments

    def create_assignment(
        self, *, protocol_id: str, patient_id: str, total_steps: int
    ) -> core.Assignment:
        """Persist a new assignment in ``assigned``."""
        with self._session() as session:
            row = Assignment(
                id=_generate_id("asg"),
                protocol_id=protocol_id,
                patient_id=patient_id,
                total_steps=total_steps,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_core_assignment(row)

    def get_assignment(self, assignment_id: str) -> core.Assignment | None:
        """Fetch an assignment by ID."""
        with self._session() as session:
            row = session.get(Assignment, assignment_id)
            return _to_core_assignment(row) if row is not None else None

    def require_assignment(self, assignment_id: str) -> core.Assignment:
        """Fetch an assignment or raise NotFoundError."""
        assignment = self.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError(f"assignment '{assignment_id}' not found")
        return assignment

    def list_assignments(
        self, *, protocol_id: str | None = None, patient_id: str | None = None
    ) -> list[core.Assignment]:
        """List assignments filtered by protocol and/or patient."""
        with self._session() as session:
            statement = select(Assignment).order_by(
                col(Assignment.assigned_at), col(Assignment.id)
            )
            if protocol_id is not None:
                statement = statement.where(col(Assignment.protocol_id) == protocol_id)
            if patient_id is not None:
                statement = statement.where(col(Assignment.patient_id) == patient_id)
            return [_to_core_assignment(row) for row in session.exec(statement)]

    def list_due_assignments(self, now: datetime) -> list[core.Assignment]:
        """Active assignments whose next fire time has elapsed."""
        with self._session() as session:
            statement = (
                select(Assignment)
                .where(col(Assignment.status) == core.AssignmentStatus.active.value)
                .where(col(Assignment.next_fire_at).is_not(None))
                .where(col(Assignment.next_fire_at) <= as_utc(now))
                .order_by(col(Assignment.next_fire_at))
            )
            return [_to_core_assignment(row) for row in session.exec(statement)]

    def _compare_and_swap(self, session: Session, assignment: core.Assignment) -> None:
        result = session.exec(
            update(Assignment)
            .where(col(Assignment.id) == assignment.id)
            .where(col(Assignment.version) == assignment.version)
            .values(**_assignment_values(assignment))
        )
        if result.rowcount == 1:
            return
        session.rollback()
        if session.get(Assignment, assignment.id) is None:
            raise NotFoundError(f"assignment '{assignment.id}' not found")
        logger.warning(
            "Lost update race on assignment %s at version %d",
            assignment.id,
            assignment.version,
        )
        raise ConcurrencyConflictError(
            f"assignment '{assignment.id}' was modified concurrently; refetch and retry"
        )

    def save_assignment(self, assignment: core.Assignment) -> core.Assignment:
        """Write an assignment if nobody changed it since it was read.

        Raises:
            ConcurrencyConflictError: If the stored version moved on.
            NotFoundError: If the assignment was deleted meanwhile.
        """
        with self._session() as session:
            self._compare_and_swap(session, assignment)
            session.commit()
        assignment.version += 1
        return assignment

    def append_event(
        self, assignment: core.Assignment, event: core.StepEvent
    ) -> core.StepEvent:
        """Append an event and write the assignment in one transaction."""
        with self._session() as session:
            self._compare_and_swap(session, assignment)
            row = StepEvent(
                id=_generate_id("evt"),
                assignment_id=event.assignment_id,
                step_index=event.step_index,
                kind=event.kind.value,
                timestamp=as_utc(event.timestamp),
                value=event.value,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            stored = _to_core_event(row)
        assignment.version += 1
        return stored

    def delete_assignment(self, assignment_id: str) -> bool:
        """Delete an assignment and the events it owns."""
        with self._session() as session:
            row = session.get(Assignment, assignment_id)
            if row is None:
                return False
            session.exec(
                delete(StepEvent).where(
                    cast(Any, StepEvent.assignment_id) == assignment_id
                )
            )
            session.delete(row)
            session.commit()
            return True

    # Events

    def list_events(
        self, *, assignment_ids: Iterable[str] | None = None
    ) -> list[core.StepEvent]:
        """List events in time order, optionally for some assignments only."""
        with self._session() as session:
            statement = select(StepEvent).order_by(
                col(StepEvent.timestamp), col(StepEvent.id)
            )
            if assignment_ids is not None:
                ids = list(assignment_ids)
                if not ids:
                    return []
                statement = statement.where(col(StepEvent.assignment_id).in_(ids))
            return [_to_core_event(row) for row in session.exec(statement)]
