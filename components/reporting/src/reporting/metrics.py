"""Adherence metrics derived from the step event log.

Every function here is a pure reduction over assignments and step events.
Missing data never raises: rates fall back to ``0`` and averages to ``None``.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from statistics import fmean
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from protocol_core.models import (
    Assignment,
    AssignmentStatus,
    EventKind,
    Patient,
    ProtocolDefinition,
    ProtocolStatus,
    StepEvent,
)
from protocol_core.scheduler import as_utc


@dataclass
class StepMetrics:
    """Delivery and response counts for one step index of a protocol."""

    step_index: int
    sent_count: int = 0
    response_count: int = 0
    adherence_rate: float = 0.0
    average_response_time: Optional[float] = None


@dataclass
class ProtocolAdherence:
    """Adherence summary for one protocol across its assignments."""

    protocol_id: str
    total_patients: int
    total_assignments: int
    active_assignments: int
    completed_assignments: int
    completion_rate: float
    average_response_time: Optional[float]
    step_metrics: List[StepMetrics] = field(default_factory=list)


@dataclass
class PatientAdherence:
    """Adherence summary for one patient across their assignments."""

    patient_id: str
    display_name: str
    real_name: Optional[str]
    status: str
    active_protocols: int
    total_assignments: int
    overall_adherence_rate: Optional[float]
    last_interaction: Optional[datetime]


@dataclass
class DashboardMetrics:
    """System-wide totals for the reporting dashboard."""

    total_patients: int
    active_patients: int
    active_protocols: int
    total_assignments: int
    overall_adherence_rate: Optional[float]
    average_response_time: Optional[float]


def _percent(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator * 100


def _events_for(
    assignments: Iterable[Assignment], events: Iterable[StepEvent]
) -> List[StepEvent]:
    ids = {assignment.id for assignment in assignments}
    return [event for event in events if event.assignment_id in ids]


def response_times(events: Iterable[StepEvent]) -> List[float]:
    """Milliseconds between each response and the latest earlier send.

    Sends and responses are paired within the same assignment and step.
    Responses without a preceding send are ignored.

    Examples:
        >>> from datetime import timezone
        >>> t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> t1 = datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc)
        >>> response_times([
        ...     StepEvent("a", 1, EventKind.sent, t0),
        ...     StepEvent("a", 1, EventKind.responded, t1),
        ... ])
        [60000.0]
    """
    grouped: Dict[Tuple[str, int], List[StepEvent]] = defaultdict(list)
    for event in events:
        grouped[(event.assignment_id, event.step_index)].append(event)

    durations: List[float] = []
    for step_events in grouped.values():
        last_sent: Optional[datetime] = None
        for event in sorted(step_events, key=lambda item: as_utc(item.timestamp)):
            stamp = as_utc(event.timestamp)
            if event.kind is EventKind.sent:
                last_sent = stamp
            elif last_sent is not None:
                durations.append((stamp - last_sent).total_seconds() * 1000)
    return durations


def average_response_time(events: Iterable[StepEvent]) -> Optional[float]:
    """Mean response time in milliseconds, or None without any pair."""
    durations = response_times(events)
    return fmean(durations) if durations else None


def step_metrics(events: Iterable[StepEvent], step_count: int) -> List[StepMetrics]:
    """Per-step counts for steps ``1..step_count``.

    Args:
        events: Events of every assignment of one protocol.
        step_count: Number of steps currently in the definition.

    Returns:
        One entry per step, including steps with no events.

    Examples:
        >>> [m.adherence_rate for m in step_metrics([], 2)]
        [0.0, 0.0]
    """
    by_step: Dict[int, List[StepEvent]] = defaultdict(list)
    for event in events:
        by_step[event.step_index].append(event)

    results: List[StepMetrics] = []
    for index in range(1, step_count + 1):
        step_events = by_step.get(index, [])
        sent = sum(1 for event in step_events if event.kind is EventKind.sent)
        responded = sum(
            1 for event in step_events if event.kind is EventKind.responded
        )
        results.append(
            StepMetrics(
                step_index=index,
                sent_count=sent,
                response_count=responded,
                adherence_rate=_percent(responded, sent),
                average_response_time=average_response_time(step_events),
            )
        )
    return results


def completion_rate(assignments: Sequence[Assignment]) -> float:
    """Percentage of assignments in ``completed``; 0 with no assignments."""
    completed = sum(
        1 for item in assignments if item.status is AssignmentStatus.completed
    )
    return _percent(completed, len(assignments))


def overall_adherence_rate(
    assignments: Sequence[Assignment], events: Iterable[StepEvent]
) -> Optional[float]:
    """Mean completion fraction of the assignments, as a percentage.

    Returns None when none of the assignments has had a step sent.

    Examples:
        >>> overall_adherence_rate([], [])
    """
    sent_ids = {
        event.assignment_id for event in events if event.kind is EventKind.sent
    }
    if not any(item.id in sent_ids for item in assignments):
        return None
    fractions = [
        item.completed_steps / item.total_steps
        for item in assignments
        if item.total_steps > 0
    ]
    if not fractions:
        return None
    return fmean(fractions) * 100


def protocol_adherence(
    definition: ProtocolDefinition,
    assignments: Sequence[Assignment],
    events: Iterable[StepEvent],
) -> ProtocolAdherence:
    """Summarize adherence for one protocol."""
    own = [item for item in assignments if item.protocol_id == definition.id]
    own_events = _events_for(own, events)
    return ProtocolAdherence(
        protocol_id=definition.id,
        total_patients=len({item.patient_id for item in own}),
        total_assignments=len(own),
        active_assignments=sum(
            1 for item in own if item.status is AssignmentStatus.active
        ),
        completed_assignments=sum(
            1 for item in own if item.status is AssignmentStatus.completed
        ),
        completion_rate=completion_rate(own),
        average_response_time=average_response_time(own_events),
        step_metrics=step_metrics(own_events, definition.total_steps),
    )


def patient_adherence(
    patient: Patient,
    assignments: Sequence[Assignment],
    events: Iterable[StepEvent],
) -> PatientAdherence:
    """Summarize adherence for one patient."""
    own = [item for item in assignments if item.patient_id == patient.id]
    own_events = _events_for(own, events)
    last = max((as_utc(event.timestamp) for event in own_events), default=None)
    return PatientAdherence(
        patient_id=patient.id,
        display_name=patient.display_name,
        real_name=patient.real_name,
        status=patient.status.value,
        active_protocols=sum(
            1 for item in own if item.status is AssignmentStatus.active
        ),
        total_assignments=len(own),
        overall_adherence_rate=overall_adherence_rate(own, own_events),
        last_interaction=last,
    )


def dashboard_metrics(
    patients: Sequence[Patient],
    definitions: Sequence[ProtocolDefinition],
    assignments: Sequence[Assignment],
    events: Sequence[StepEvent],
) -> DashboardMetrics:
    """Apply the per-protocol and per-patient formulas across everything."""
    return DashboardMetrics(
        total_patients=len(patients),
        active_patients=len(
            {
                item.patient_id
                for item in assignments
                if item.status is AssignmentStatus.active
            }
        ),
        active_protocols=sum(
            1 for item in definitions if item.status is ProtocolStatus.active
        ),
        total_assignments=len(assignments),
        overall_adherence_rate=overall_adherence_rate(assignments, events),
        average_response_time=average_response_time(events),
    )
