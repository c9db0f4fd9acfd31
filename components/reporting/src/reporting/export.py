# components/reporting/src/reporting/export.py
import csv
import io
import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from protocol_core.models import Assignment, Patient, ProtocolDefinition, StepEvent
from protocol_core.scheduler import as_utc


@dataclass
class ExportRow:
    """One step event joined with its assignment, protocol and patient.

    Assignments without events export a single row with empty event fields.
    """
    assignment_id: str
    protocol_id: str
    protocol_name: Optional[str]
    patient_id: str
    patient_name: Optional[str]
    assignment_status: str
    completed_steps: int
    total_steps: int
    adherence_rate: Optional[float]
    step_index: Optional[int] = None
    event_kind: Optional[str] = None
    event_timestamp: Optional[str] = None
    event_value: Optional[str] = None


EXPORT_COLUMNS = [item.name for item in fields(ExportRow)]


def build_export_rows(
    definitions: Sequence[ProtocolDefinition],
    patients: Sequence[Patient],
    assignments: Sequence[Assignment],
    events: Sequence[StepEvent],
    protocol_id: Optional[str] = None,
    patient_id: Optional[str] = None,
) -> List[ExportRow]:
    """Flatten the event log for export.

    Args:
        definitions: Protocol definitions, used for names.
        patients: Patients, used for display names.
        assignments: Assignments to export.
        events: Step events of those assignments.
        protocol_id: Only export assignments of this protocol.
        patient_id: Only export assignments of this patient.

    Returns:
        Rows ordered by assignment, then event time.
    """
    names = {item.id: item.name for item in definitions}
    patient_names = {item.id: item.display_name for item in patients}
    by_assignment: Dict[str, List[StepEvent]] = {}
    for event in events:
        by_assignment.setdefault(event.assignment_id, []).append(event)

    rows: List[ExportRow] = []
    selected = [
        item
        for item in assignments
        if (protocol_id is None or item.protocol_id == protocol_id)
        and (patient_id is None or item.patient_id == patient_id)
    ]
    for assignment in sorted(selected, key=lambda item: item.id):
        base = dict(
            assignment_id=assignment.id,
            protocol_id=assignment.protocol_id,
            protocol_name=names.get(assignment.protocol_id),
            patient_id=assignment.patient_id,
            patient_name=patient_names.get(assignment.patient_id),
            assignment_status=assignment.status.value,
            completed_steps=assignment.completed_steps,
            total_steps=assignment.total_steps,
            adherence_rate=assignment.adherence_rate,
        )
        own = sorted(
            by_assignment.get(assignment.id, []),
            key=lambda item: as_utc(item.timestamp),
        )
        if not own:
            rows.append(ExportRow(**base))
            continue
        for event in own:
            rows.append(
                ExportRow(
                    **base,
                    step_index=event.step_index,
                    event_kind=event.kind.value,
                    event_timestamp=as_utc(event.timestamp).isoformat(),
                    event_value=event.value,
                )
            )
    return rows


def to_json(rows: Sequence[ExportRow]) -> List[Dict[str, Any]]:
    """Return rows as JSON-ready dicts."""
    return [asdict(row) for row in rows]


def to_csv(rows: Sequence[ExportRow]) -> str:
    """Render rows as CSV text with a fixed header."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {key: "" if value is None else value for key, value in asdict(row).items()}
        )
    return buffer.getvalue()


def write_export(rows: Sequence[ExportRow], output_path: Path, fmt: str = "csv") -> None:
    """Write rows to ``output_path`` as CSV or JSON.

    Args:
        rows: Rows from :func:`build_export_rows`.
        output_path: Destination file.
        fmt: ``csv`` or ``json``.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "csv":
        output_path.write_text(to_csv(rows))
    elif fmt == "json":
        output_path.write_text(json.dumps(to_json(rows), indent=2) + "\n")
    else:
        raise ValueError(f"Unsupported export format: {fmt!r}")
