from datetime import datetime, timedelta, timezone

import pytest

from protocol_core import lifecycle
from protocol_core.errors import InvalidStateError, NotFoundError, ValidationError
from protocol_core.models import (
    Assignment,
    AssignmentStatus,
    EventKind,
    ProtocolDefinition,
    ProtocolStatus,
    StepEvent,
    TriggerType,
    build_assignment,
    build_definition,
    build_step,
)

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def _minutes(value: int) -> datetime:
    return T0 + timedelta(minutes=value)


def _daily_meds() -> ProtocolDefinition:
    """Reminder, then a medication check 30 minutes after it."""
    return build_definition(
        status=ProtocolStatus.active,
        steps=[
            build_step(order=1),
            build_step(
                order=2,
                trigger_type=TriggerType.delay,
                trigger_value="30",
                requires_action=True,
            ),
        ],
    )


class Run:
    """Assignment plus the event history a store would keep for it."""

    def __init__(self, definition: ProtocolDefinition) -> None:
        self.definition = definition
        self.assignment = build_assignment(total_steps=definition.total_steps)
        self.history: list[StepEvent] = []

    def start(self) -> Assignment:
        return lifecycle.start(self.assignment, self.definition, now=T0)

    def record(
        self, step: int, kind: EventKind, at: datetime, value: str | None = None
    ) -> lifecycle.EventOutcome:
        event = StepEvent(self.assignment.id, step, kind, at, value)
        outcome = lifecycle.record_event(
            self.assignment, self.definition, self.history, event
        )
        self.history.append(event)
        return outcome


@pytest.fixture()
def run() -> Run:
    started = Run(_daily_meds())
    started.start()
    return started


class TestTransitions:
    def test_start_schedules_first_step(self) -> None:
        started = Run(_daily_meds())

        assignment = started.start()

        assert assignment.status is AssignmentStatus.active
        assert assignment.started_at == T0
        assert assignment.current_step_index == 1
        assert assignment.total_steps == 2
        assert assignment.next_fire_at == T0

    def test_start_requires_active_definition(self) -> None:
        started = Run(build_definition())

        with pytest.raises(InvalidStateError):
            started.start()

        assert started.assignment.status is AssignmentStatus.assigned

    def test_start_twice_raises(self, run: Run) -> None:
        with pytest.raises(InvalidStateError):
            run.start()

    def test_start_without_steps_completes_immediately(self) -> None:
        started = Run(build_definition(status=ProtocolStatus.active, steps=[]))

        assignment = started.start()

        assert assignment.status is AssignmentStatus.completed
        assert assignment.completed_at == T0

    def test_pause_and_resume_keep_cursor(self, run: Run) -> None:
        lifecycle.pause(run.assignment)
        assert run.assignment.status is AssignmentStatus.paused
        fire_at = run.assignment.next_fire_at

        lifecycle.resume(run.assignment)

        assert run.assignment.status is AssignmentStatus.active
        assert run.assignment.current_step_index == 1
        assert run.assignment.next_fire_at == fire_at

    def test_pause_requires_active(self) -> None:
        with pytest.raises(InvalidStateError):
            lifecycle.pause(build_assignment())

    def test_resume_requires_paused(self, run: Run) -> None:
        with pytest.raises(InvalidStateError):
            lifecycle.resume(run.assignment)

    def test_complete_early_from_paused(self, run: Run) -> None:
        lifecycle.pause(run.assignment)

        lifecycle.complete(run.assignment, now=_minutes(5))

        assert run.assignment.status is AssignmentStatus.completed
        assert run.assignment.completed_at == _minutes(5)
        assert run.assignment.next_fire_at is None

    def test_complete_requires_started_run(self) -> None:
        with pytest.raises(InvalidStateError):
            lifecycle.complete(build_assignment())

    def test_completed_is_terminal(self, run: Run) -> None:
        lifecycle.complete(run.assignment)

        for action in (lifecycle.pause, lifecycle.resume, lifecycle.complete):
            with pytest.raises(InvalidStateError):
                action(run.assignment)


class TestRecordEvent:
    def test_sending_informational_step_advances(self, run: Run) -> None:
        outcome = run.record(1, EventKind.sent, T0)

        assert outcome.advanced is True
        assert run.assignment.current_step_index == 2
        assert run.assignment.completed_steps == 1
        assert run.assignment.next_fire_at == _minutes(30)

    def test_action_step_waits_for_response(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)

        outcome = run.record(2, EventKind.sent, _minutes(30))

        assert outcome.advanced is False
        assert run.assignment.current_step_index == 2
        assert run.assignment.adherence_rate == 0.0

    def test_done_response_completes_run(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        outcome = run.record(2, EventKind.responded, _minutes(35), "done")

        assert outcome.completed is True
        assert run.assignment.status is AssignmentStatus.completed
        assert run.assignment.completed_at == _minutes(35)
        assert run.assignment.completed_steps == 2
        assert run.assignment.current_step_index == 3
        assert run.assignment.adherence_rate == 100.0
        assert run.assignment.next_fire_at is None

    def test_response_without_value_counts_as_complete(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        outcome = run.record(2, EventKind.responded, _minutes(31))

        assert outcome.completed is True
        assert run.assignment.completed_steps == 2

    def test_postpone_reschedules_same_step(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        outcome = run.record(2, EventKind.responded, _minutes(35), "later")

        assert outcome.postponed is True
        assert outcome.advanced is False
        assert run.assignment.current_step_index == 2
        assert run.assignment.next_fire_at == _minutes(65)

    def test_skip_advances_without_counting(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        run.record(2, EventKind.responded, _minutes(32), "skip")

        assert run.assignment.status is AssignmentStatus.completed
        assert run.assignment.completed_steps == 1

    def test_unknown_button_value_is_rejected(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        with pytest.raises(ValidationError):
            run.record(2, EventKind.responded, _minutes(31), "maybe")

        assert run.assignment.current_step_index == 2

    def test_response_without_recorded_send_completes_action_step(
        self, run: Run
    ) -> None:
        run.record(1, EventKind.sent, T0)

        outcome = run.record(2, EventKind.responded, _minutes(31), "done")

        assert outcome.completed is True
        assert run.assignment.status is AssignmentStatus.completed
        assert run.assignment.completed_at is not None

    def test_response_to_unsent_informational_step_is_rejected(
        self, run: Run
    ) -> None:
        with pytest.raises(InvalidStateError):
            run.record(1, EventKind.responded, _minutes(1))

    def test_sending_a_step_out_of_order_is_rejected(self, run: Run) -> None:
        with pytest.raises(InvalidStateError):
            run.record(2, EventKind.sent, T0)

    def test_unknown_step_is_not_found(self, run: Run) -> None:
        with pytest.raises(NotFoundError):
            run.record(9, EventKind.sent, T0)

    def test_events_rejected_while_paused(self, run: Run) -> None:
        lifecycle.pause(run.assignment)

        with pytest.raises(InvalidStateError):
            run.record(1, EventKind.sent, T0)

    def test_events_rejected_after_completion(self, run: Run) -> None:
        lifecycle.complete(run.assignment)

        with pytest.raises(InvalidStateError):
            run.record(1, EventKind.sent, T0)

    def test_free_text_reply_to_earlier_step_is_kept(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)

        outcome = run.record(1, EventKind.responded, _minutes(2), "thanks!")

        assert outcome.advanced is False
        assert run.assignment.current_step_index == 2

    def test_resent_action_step_acts_as_reminder(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))

        outcome = run.record(2, EventKind.sent, _minutes(60))

        assert outcome.advanced is False
        assert run.assignment.current_step_index == 2

    def test_event_for_other_assignment_is_rejected(self, run: Run) -> None:
        event = StepEvent("asg-other", 1, EventKind.sent, T0)

        with pytest.raises(ValidationError):
            lifecycle.record_event(run.assignment, run.definition, [], event)

    def test_cursor_past_shrunk_definition_completes_run(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.definition.steps.pop()

        outcome = run.record(2, EventKind.sent, _minutes(30))

        assert outcome.completed is True
        assert outcome.advanced is False
        assert run.assignment.status is AssignmentStatus.completed
        assert run.assignment.completed_at == _minutes(30)
        assert run.assignment.next_fire_at is None
        assert run.assignment.total_steps == 1
        assert run.assignment.completed_steps == 1

    def test_completed_steps_never_exceed_total(self, run: Run) -> None:
        run.record(1, EventKind.sent, T0)
        run.record(2, EventKind.sent, _minutes(30))
        run.record(2, EventKind.responded, _minutes(35), "done")

        assert 0 <= run.assignment.completed_steps <= run.assignment.total_steps


class TestAdherenceRate:
    def test_none_before_any_action_step_is_sent(self) -> None:
        definition = _daily_meds()
        events = [StepEvent("asg-1", 1, EventKind.sent, T0)]

        assert lifecycle.adherence_rate(definition, events) is None

    def test_fraction_of_sent_action_steps_answered(self) -> None:
        definition = build_definition(
            status=ProtocolStatus.active,
            steps=[
                build_step(order=1, requires_action=True),
                build_step(order=2, requires_action=True),
            ],
        )
        events = [
            StepEvent("asg-1", 1, EventKind.sent, T0),
            StepEvent("asg-1", 1, EventKind.responded, _minutes(1), "done"),
            StepEvent("asg-1", 2, EventKind.sent, _minutes(2)),
        ]

        assert lifecycle.adherence_rate(definition, events) == 50.0
