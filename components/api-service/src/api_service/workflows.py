"""Core operations run against the store.

Each function loads what it needs, applies a ``protocol_core`` operation and
writes the result back. Errors from the core propagate unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Callable, Iterable, cast

from protocol_core import definition as definitions
from protocol_core import lifecycle
from protocol_core.errors import InvalidStateError, NotFoundError
from protocol_core.models import (
    Assignment,
    AssignmentStatus,
    EventKind,
    MoveDirection,
    Patient,
    PatientStatus,
    ProtocolDefinition,
    ProtocolStatus,
    ProtocolStep,
    StepEvent,
    utcnow,
)
from reporting import export, metrics

from api_service.storage import Storage

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[str, Callable[..., Assignment]] = {
    "start": lifecycle.start,
    "pause": lifecycle.pause,
    "resume": lifecycle.resume,
    "complete": lifecycle.complete,
}


def require_patient(storage: Storage, patient_id: str) -> Patient:
    patient = storage.get_patient(patient_id)
    if patient is None:
        raise NotFoundError(f"patient '{patient_id}' not found")
    return patient


def _ensure_no_open_runs(storage: Storage, protocol_id: str) -> None:
    open_runs = [
        item
        for item in storage.list_assignments(protocol_id=protocol_id)
        if item.status is not AssignmentStatus.completed
    ]
    if open_runs:
        raise InvalidStateError(
            f"protocol '{protocol_id}' has {len(open_runs)} unfinished "
            "assignment(s); complete them before moving it back to draft"
        )


def update_protocol(
    storage: Storage,
    protocol_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    status: ProtocolStatus | None = None,
) -> ProtocolDefinition:
    """Edit header fields and, optionally, the status.

    Moving a draft to ``active`` goes through activation, so an invalid
    definition is rejected the same way as ``POST .../activate``. Moving back
    to ``draft`` is refused while unfinished assignments follow the protocol,
    since draft steps can be edited.
    """
    definition = storage.require_protocol(protocol_id)
    if name is not None:
        definition.name = name
    if description is not None:
        definition.description = description
    if status is not None and status is not definition.status:
        if status is ProtocolStatus.active and definition.status is ProtocolStatus.draft:
            definitions.activate(definition)
        else:
            if status is ProtocolStatus.draft:
                _ensure_no_open_runs(storage, protocol_id)
            definitions.change_status(definition, status)
            logger.info("Protocol %s moved to %s", protocol_id, status.value)
    return storage.save_protocol(definition)


def activate_protocol(storage: Storage, protocol_id: str) -> ProtocolDefinition:
    definition = storage.require_protocol(protocol_id)
    definitions.activate(definition)
    return storage.save_protocol(definition)


def validate_protocol(storage: Storage, protocol_id: str) -> list[str]:
    """Return the violations of the stored definition, empty when valid."""
    return definitions.collect_violations(storage.require_protocol(protocol_id))


def _edit_steps(
    storage: Storage,
    protocol_id: str,
    edit: Callable[[ProtocolDefinition], object],
) -> tuple[ProtocolDefinition, object]:
    definition = storage.require_protocol(protocol_id)
    definitions.ensure_editable(definition)
    result = edit(definition)
    return storage.save_protocol(definition), result


def add_step(
    storage: Storage, protocol_id: str, step: ProtocolStep
) -> ProtocolDefinition:
    definition, _ = _edit_steps(
        storage, protocol_id, lambda item: definitions.add_step(item, step)
    )
    return definition


def update_step(
    storage: Storage, protocol_id: str, order: int, step: ProtocolStep
) -> ProtocolDefinition:
    """Overwrite the step at ``order`` keeping its position."""

    def _apply(definition: ProtocolDefinition) -> None:
        definitions.get_step(definition, order)
        step.order = order
        definition.steps[order - 1] = step

    definition, _ = _edit_steps(storage, protocol_id, _apply)
    return definition


def remove_step(storage: Storage, protocol_id: str, order: int) -> ProtocolDefinition:
    definition, _ = _edit_steps(
        storage, protocol_id, lambda item: definitions.remove_step(item, order)
    )
    return definition


def move_step(
    storage: Storage, protocol_id: str, order: int, direction: MoveDirection
) -> tuple[ProtocolDefinition, bool]:
    """Swap a step with its neighbour; the flag is False at a boundary."""
    definition, moved = _edit_steps(
        storage,
        protocol_id,
        lambda item: definitions.move_step(item, order, direction),
    )
    return definition, bool(moved)


def replace_steps(
    storage: Storage, protocol_id: str, steps: Iterable[ProtocolStep]
) -> tuple[ProtocolDefinition, definitions.StepsDiff]:
    definition, result = _edit_steps(
        storage,
        protocol_id,
        lambda item: definitions.replace_steps(item, steps),
    )
    diff = cast(definitions.StepsDiff, result)
    logger.info(
        "Replaced steps of protocol %s (updated=%s added=%s removed=%s)",
        protocol_id,
        diff.updated,
        diff.added,
        diff.removed,
    )
    return definition, diff


def delete_protocol(storage: Storage, protocol_id: str) -> None:
    if not storage.delete_protocol(protocol_id):
        raise NotFoundError(f"protocol '{protocol_id}' not found")
    logger.info("Deleted protocol %s", protocol_id)


def assign_protocol(storage: Storage, *, patient_id: str, protocol_id: str) -> Assignment:
    """Create an ``assigned`` run of an active protocol for a patient.

    Raises:
        NotFoundError: If the patient or protocol does not exist.
        InvalidStateError: If the protocol is not active, the patient is
            inactive, or the patient already has an unfinished run of it.
    """
    patient = require_patient(storage, patient_id)
    definition = storage.require_protocol(protocol_id)
    if definition.status is not ProtocolStatus.active:
        raise InvalidStateError(
            f"protocol '{protocol_id}' is {definition.status.value}; "
            "only active protocols can be assigned"
        )
    if patient.status is not PatientStatus.active:
        raise InvalidStateError(f"patient '{patient_id}' is inactive")
    open_runs = [
        item
        for item in storage.list_assignments(
            protocol_id=protocol_id, patient_id=patient_id
        )
        if item.status is not AssignmentStatus.completed
    ]
    if open_runs:
        raise InvalidStateError(
            f"patient '{patient_id}' already has assignment '{open_runs[0].id}' "
            f"for protocol '{protocol_id}'"
        )
    assignment = storage.create_assignment(
        protocol_id=protocol_id,
        patient_id=patient_id,
        total_steps=definition.total_steps,
    )
    logger.info(
        "Assigned protocol %s to patient %s as %s", protocol_id, patient_id, assignment.id
    )
    return assignment


def transition_assignment(
    storage: Storage,
    assignment_id: str,
    action: str,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> Assignment:
    """Apply ``start``, ``pause``, ``resume`` or ``complete`` and persist it.

    Raises:
        NotFoundError: For an unknown assignment or action.
        InvalidStateError: If the transition is not allowed.
        ConcurrencyConflictError: If another transition won the race.
    """
    transition = _TRANSITIONS.get(action)
    if transition is None:
        raise NotFoundError(f"unknown assignment action '{action}'")
    assignment = storage.require_assignment(assignment_id)
    if action == "start":
        definition = storage.require_protocol(assignment.protocol_id)
        transition(assignment, definition, now=now, tz=tz)
    elif action == "complete":
        transition(assignment, now=now)
    else:
        transition(assignment)
    return storage.save_assignment(assignment)


def record_step_event(
    storage: Storage,
    assignment_id: str,
    *,
    step_index: int,
    kind: EventKind,
    timestamp: datetime | None = None,
    value: str | None = None,
    tz: tzinfo | None = None,
) -> tuple[Assignment, lifecycle.EventOutcome]:
    """Validate and append one step event, advancing the assignment.

    The event insert and the assignment update commit together.
    """
    assignment = storage.require_assignment(assignment_id)
    definition = storage.require_protocol(assignment.protocol_id)
    history = storage.list_events(assignment_ids=[assignment_id])
    event = StepEvent(
        assignment_id=assignment_id,
        step_index=step_index,
        kind=kind,
        timestamp=timestamp or utcnow(),
        value=value,
    )
    outcome = lifecycle.record_event(assignment, definition, history, event, tz)
    outcome.event = storage.append_event(assignment, event)
    logger.info(
        "Recorded %s for step %d of assignment %s (advanced=%s completed=%s)",
        kind.value,
        step_index,
        assignment_id,
        outcome.advanced,
        outcome.completed,
    )
    return assignment, outcome


def delete_assignment(storage: Storage, assignment_id: str) -> None:
    if not storage.delete_assignment(assignment_id):
        raise NotFoundError(f"assignment '{assignment_id}' not found")
    logger.info("Deleted assignment %s", assignment_id)


def protocol_report(storage: Storage, protocol_id: str) -> metrics.ProtocolAdherence:
    definition = storage.require_protocol(protocol_id)
    assignments = storage.list_assignments(protocol_id=protocol_id)
    events = storage.list_events(assignment_ids=[item.id for item in assignments])
    return metrics.protocol_adherence(definition, assignments, events)


def patient_reports(
    storage: Storage, status: PatientStatus | None = None
) -> list[metrics.PatientAdherence]:
    patients = storage.list_patients(status=status.value if status else None)
    assignments = storage.list_assignments()
    events = storage.list_events()
    return [
        metrics.patient_adherence(patient, assignments, events) for patient in patients
    ]


def dashboard(storage: Storage) -> metrics.DashboardMetrics:
    return metrics.dashboard_metrics(
        storage.list_patients(),
        storage.list_all_protocols(),
        storage.list_assignments(),
        storage.list_events(),
    )


def export_rows(
    storage: Storage,
    *,
    protocol_id: str | None = None,
    patient_id: str | None = None,
) -> list[export.ExportRow]:
    """Join the event log with assignments, protocols and patients."""
    assignments = storage.list_assignments(
        protocol_id=protocol_id, patient_id=patient_id
    )
    return export.build_export_rows(
        storage.list_all_protocols(),
        storage.list_patients(),
        assignments,
        storage.list_events(assignment_ids=[item.id for item in assignments]),
        protocol_id=protocol_id,
        patient_id=patient_id,
    )
