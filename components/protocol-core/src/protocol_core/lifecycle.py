"""Assignment state machine.

``assigned -> active -> {paused <-> active} -> completed``. Operators drive
``start``, ``pause``, ``resume`` and ``complete``; ``advance`` only happens as
a consequence of :func:`record_event`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Iterable, Sequence

from protocol_core.definition import get_step
from protocol_core.errors import InvalidStateError, ValidationError
from protocol_core.models import (
    Assignment,
    AssignmentStatus,
    ButtonAction,
    EventKind,
    ProtocolDefinition,
    ProtocolStatus,
    ProtocolStep,
    StepEvent,
    utcnow,
)
from protocol_core.scheduler import as_utc, compute_fire_time, next_fire_time

logger = logging.getLogger(__name__)


@dataclass
class EventOutcome:
    """Bookkeeping applied by :func:`record_event`."""

    event: StepEvent
    advanced: bool = False
    completed: bool = False
    postponed: bool = False


def _require(
    assignment: Assignment, allowed: set[AssignmentStatus], action: str
) -> None:
    if assignment.status not in allowed:
        raise InvalidStateError(
            f"cannot {action} assignment '{assignment.id}' "
            f"while it is {assignment.status.value}"
        )


def _log_transition(assignment: Assignment, action: str) -> None:
    logger.info(
        "Assignment %s %s (status=%s step=%d/%d)",
        assignment.id,
        action,
        assignment.status.value,
        assignment.current_step_index,
        assignment.total_steps,
    )


def start(
    assignment: Assignment,
    definition: ProtocolDefinition,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> Assignment:
    """Begin the run: cursor on step 1, step 1 scheduled from ``started_at``.

    Raises:
        InvalidStateError: Unless the assignment is ``assigned`` and the
            definition is ``active``.
    """
    _require(assignment, {AssignmentStatus.assigned}, "start")
    if definition.status is not ProtocolStatus.active:
        raise InvalidStateError(
            f"protocol '{definition.id}' is {definition.status.value}; "
            "only active protocols can be started"
        )
    started_at = as_utc(now or utcnow())
    assignment.status = AssignmentStatus.active
    assignment.started_at = started_at
    assignment.total_steps = definition.total_steps
    if not definition.steps:
        assignment.status = AssignmentStatus.completed
        assignment.completed_at = started_at
        _log_transition(assignment, "completed on start")
        return assignment
    assignment.current_step_index = 1
    assignment.next_fire_at = compute_fire_time(
        definition.steps[0].trigger, started_at, tz
    )
    _log_transition(assignment, "started")
    return assignment


def pause(assignment: Assignment) -> Assignment:
    """Suspend step firing; cursor and fire time are kept.

    Raises:
        InvalidStateError: Unless the assignment is ``active``.
    """
    _require(assignment, {AssignmentStatus.active}, "pause")
    assignment.status = AssignmentStatus.paused
    _log_transition(assignment, "paused")
    return assignment


def resume(assignment: Assignment) -> Assignment:
    """Continue a paused run from where it stopped.

    Raises:
        InvalidStateError: Unless the assignment is ``paused``.
    """
    _require(assignment, {AssignmentStatus.paused}, "resume")
    assignment.status = AssignmentStatus.active
    _log_transition(assignment, "resumed")
    return assignment


def complete(assignment: Assignment, now: datetime | None = None) -> Assignment:
    """Terminate the run early regardless of the cursor.

    Raises:
        InvalidStateError: Unless the assignment is ``active`` or ``paused``.
    """
    _require(
        assignment, {AssignmentStatus.active, AssignmentStatus.paused}, "complete"
    )
    assignment.status = AssignmentStatus.completed
    assignment.completed_at = as_utc(now or utcnow())
    assignment.next_fire_at = None
    _log_transition(assignment, "completed by operator")
    return assignment


def adherence_rate(
    definition: ProtocolDefinition, events: Iterable[StepEvent]
) -> float | None:
    """Percentage of sent action steps that received a response.

    Returns None until an action-requiring step has been sent.
    """
    action_orders = {step.order for step in definition.steps if step.requires_action}
    sent: set[int] = set()
    responded: set[int] = set()
    for event in events:
        if event.step_index not in action_orders:
            continue
        if event.kind is EventKind.sent:
            sent.add(event.step_index)
        else:
            responded.add(event.step_index)
    if not sent:
        return None
    return len(responded & sent) / len(sent) * 100


def _response_action(step: ProtocolStep, value: str | None) -> ButtonAction:
    if value is None or step.feedback is None:
        return ButtonAction.complete
    button = step.feedback.button_for(value)
    if button is None:
        allowed = ", ".join(button.value for button in step.feedback.buttons)
        raise ValidationError(
            [f"step {step.order}: response '{value}' is not one of: {allowed}"]
        )
    return button.action


def _close_past_end(
    assignment: Assignment, definition: ProtocolDefinition, at: datetime
) -> None:
    assignment.total_steps = definition.total_steps
    assignment.completed_steps = min(assignment.completed_steps, assignment.total_steps)
    assignment.status = AssignmentStatus.completed
    assignment.completed_at = at
    assignment.next_fire_at = None
    _log_transition(assignment, "completed past the last step")


def _advance(
    assignment: Assignment,
    definition: ProtocolDefinition,
    events: Sequence[StepEvent],
    at: datetime,
    counted: bool,
    tz: tzinfo | None,
) -> None:
    if counted:
        assignment.completed_steps += 1
    assignment.current_step_index += 1
    assignment.total_steps = definition.total_steps
    if assignment.current_step_index > assignment.total_steps:
        assignment.status = AssignmentStatus.completed
        assignment.completed_at = at
        assignment.next_fire_at = None
        _log_transition(assignment, "completed")
        return
    assignment.next_fire_at = next_fire_time(
        definition,
        assignment.current_step_index,
        assignment.started_at,
        events,
        tz,
    )
    _log_transition(assignment, "advanced")


def record_event(
    assignment: Assignment,
    definition: ProtocolDefinition,
    history: Iterable[StepEvent],
    event: StepEvent,
    tz: tzinfo | None = None,
) -> EventOutcome:
    """Validate a step event and apply the bookkeeping it implies.

    A ``sent`` event finishes a step that needs no action; a ``responded``
    event finishes an action step according to the pressed button. Finishing
    a step advances the cursor, completing the run after the last step.

    Args:
        assignment: Assignment the event belongs to; updated in place.
        definition: Live definition the assignment follows.
        history: Events already recorded for the assignment.
        event: Event to append.
        tz: Zone for ``scheduled`` triggers.

    Returns:
        What happened to the assignment.

    Raises:
        InvalidStateError: If the assignment is not active or the event does
            not fit the cursor.
        NotFoundError: If the step index is outside the definition.
        ValidationError: If a response value matches no button.
    """
    if event.assignment_id != assignment.id:
        raise ValidationError(
            [f"event belongs to '{event.assignment_id}', not '{assignment.id}'"]
        )
    _require(assignment, {AssignmentStatus.active}, f"record a {event.kind.value} event for")
    at = as_utc(event.timestamp)
    events = list(history)
    cursor = assignment.current_step_index
    outcome = EventOutcome(event=event)

    if cursor > definition.total_steps:
        # The definition shrank under the run; no step is left to fire.
        events.append(event)
        _close_past_end(assignment, definition, at)
        outcome.completed = True
        assignment.adherence_rate = adherence_rate(definition, events)
        return outcome

    step = get_step(definition, event.step_index)

    if event.kind is EventKind.sent:
        if event.step_index != cursor:
            raise InvalidStateError(
                f"step {event.step_index} cannot be sent; "
                f"assignment '{assignment.id}' is at step {cursor}"
            )
        events.append(event)
        if not step.requires_action:
            _advance(assignment, definition, events, at, True, tz)
            outcome.advanced = True
    elif event.step_index < cursor and not step.requires_action:
        # Free-text reply to an informational step; nothing to advance.
        events.append(event)
    else:
        if event.step_index != cursor:
            raise InvalidStateError(
                f"step {event.step_index} cannot be answered; "
                f"assignment '{assignment.id}' is at step {cursor}"
            )
        if not step.requires_action:
            raise InvalidStateError(
                f"step {event.step_index} has not been sent yet"
            )
        action = _response_action(step, event.value)
        events.append(event)
        if action is ButtonAction.postpone:
            assignment.next_fire_at = compute_fire_time(step.trigger, at, tz)
            outcome.postponed = True
        else:
            _advance(
                assignment,
                definition,
                events,
                at,
                action is ButtonAction.complete,
                tz,
            )
            outcome.advanced = True

    outcome.completed = assignment.status is AssignmentStatus.completed
    assignment.adherence_rate = adherence_rate(definition, events)
    return outcome
