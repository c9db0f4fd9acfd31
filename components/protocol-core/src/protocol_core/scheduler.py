"""Step trigger scheduling.

Computes when a step fires from its trigger and an anchor time. All returned
datetimes are timezone-aware UTC; ``scheduled`` triggers are interpreted in
the configured local zone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Sequence

from protocol_core.errors import InvalidTriggerError, NotFoundError
from protocol_core.models import (
    EventKind,
    ProtocolDefinition,
    ProtocolStep,
    StepEvent,
    TriggerSpec,
    TriggerType,
)

_DELAY_PATTERN = re.compile(r"^\d+$", re.ASCII)
_TIME_OF_DAY_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$", re.ASCII)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_delay_minutes(value: str | None) -> int:
    """Parse a ``delay`` trigger value.

    Args:
        value: Non-negative whole number of minutes.

    Returns:
        Minutes as an int.

    Raises:
        InvalidTriggerError: If the value is empty, negative or not an integer.

    Examples:
        >>> parse_delay_minutes(" 30 ")
        30
    """
    raw = (value or "").strip()
    if not _DELAY_PATTERN.match(raw):
        raise InvalidTriggerError(
            f"delay trigger value must be a non-negative integer of minutes, got {value!r}"
        )
    return int(raw)


def parse_time_of_day(value: str | None) -> time:
    """Parse a ``scheduled`` trigger value in 24h ``HH:MM`` form.

    Raises:
        InvalidTriggerError: If the value is empty or not a valid time of day.

    Examples:
        >>> parse_time_of_day("09:00")
        datetime.time(9, 0)
    """
    raw = (value or "").strip()
    match = _TIME_OF_DAY_PATTERN.match(raw)
    if match is None:
        raise InvalidTriggerError(
            f"scheduled trigger value must be a time of day HH:MM, got {value!r}"
        )
    return time(int(match.group(1)), int(match.group(2)))


def check_trigger(trigger: TriggerSpec) -> None:
    """Raise InvalidTriggerError if the trigger value does not parse."""
    if trigger.type is TriggerType.delay:
        parse_delay_minutes(trigger.value)
    elif trigger.type is TriggerType.scheduled:
        parse_time_of_day(trigger.value)


def _occurrences(day: date, target: time, zone: tzinfo) -> list[datetime]:
    """Instants on ``day`` whose local wall clock reads ``target``."""
    naive = datetime.combine(day, target)
    found: list[datetime] = []
    for fold in (0, 1):
        instant = naive.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)
        local = instant.astimezone(zone)
        if (local.hour, local.minute) == (target.hour, target.minute) and (
            instant not in found
        ):
            found.append(instant)
    if not found:
        found.append(_gap_end(naive, zone))
    return sorted(found)


def _gap_end(naive: datetime, zone: tzinfo) -> datetime:
    """First valid instant after the DST gap that swallows ``naive``."""
    # fold=1 applies the post-transition offset and lands before the gap;
    # fold=0 applies the pre-transition offset and lands after it.
    before = naive.replace(tzinfo=zone, fold=1).astimezone(timezone.utc)
    after = naive.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)
    target_offset = after.astimezone(zone).utcoffset()
    low, high = 0, int((after - before).total_seconds())
    while high - low > 1:
        middle = (low + high) // 2
        candidate = before + timedelta(seconds=middle)
        if candidate.astimezone(zone).utcoffset() == target_offset:
            high = middle
        else:
            low = middle
    return before + timedelta(seconds=high)


def compute_fire_time(
    trigger: TriggerSpec, anchor: datetime, tz: tzinfo | None = None
) -> datetime:
    """Compute the instant a step fires.

    Args:
        trigger: Trigger of the step.
        anchor: Completion time of the previous step, or the assignment start
            for step 1.
        tz: Zone for ``scheduled`` wall-clock times; UTC when omitted.

    Returns:
        Aware UTC datetime.

    Raises:
        InvalidTriggerError: If a ``delay`` or ``scheduled`` value is malformed.

    Examples:
        >>> start = datetime(2024, 5, 1, 9, 5, tzinfo=timezone.utc)
        >>> compute_fire_time(TriggerSpec(TriggerType.scheduled, "09:00"), start)
        datetime.datetime(2024, 5, 2, 9, 0, tzinfo=datetime.timezone.utc)
    """
    anchor_utc = as_utc(anchor)
    if trigger.type is TriggerType.immediate:
        return anchor_utc
    if trigger.type is TriggerType.delay:
        return anchor_utc + timedelta(minutes=parse_delay_minutes(trigger.value))

    target = parse_time_of_day(trigger.value)
    zone = tz or timezone.utc
    local_anchor = anchor_utc.astimezone(zone)
    if (local_anchor.hour, local_anchor.minute) == (target.hour, target.minute):
        return anchor_utc

    day = local_anchor.date()
    while True:
        for instant in _occurrences(day, target, zone):
            if instant >= anchor_utc:
                return instant
        day += timedelta(days=1)


def completion_time(step: ProtocolStep, events: Iterable[StepEvent]) -> datetime | None:
    """Return when ``step`` was completed, or None if it has not been.

    Action steps complete on their latest ``responded`` event; other steps on
    their latest ``sent`` event.
    """
    kind = EventKind.responded if step.requires_action else EventKind.sent
    times = [
        as_utc(event.timestamp)
        for event in events
        if event.step_index == step.order and event.kind is kind
    ]
    return max(times) if times else None


def anchor_for_step(
    definition: ProtocolDefinition,
    step_index: int,
    started_at: datetime | None,
    events: Sequence[StepEvent],
) -> datetime | None:
    """Return the anchor time for ``step_index`` of an assignment.

    Step 1 anchors on the assignment start; later steps on the completion
    time of the step before them. Returns None while that is unknown.

    Raises:
        NotFoundError: If ``step_index`` is outside the definition.
    """
    if step_index < 1 or step_index > definition.total_steps:
        raise NotFoundError(
            f"step {step_index} not found in protocol '{definition.id}'"
        )
    if step_index == 1:
        return as_utc(started_at) if started_at is not None else None
    previous = definition.steps[step_index - 2]
    return completion_time(previous, events)


def next_fire_time(
    definition: ProtocolDefinition,
    step_index: int,
    started_at: datetime | None,
    events: Sequence[StepEvent],
    tz: tzinfo | None = None,
) -> datetime | None:
    """Fire time of ``step_index`` given the assignment's event history."""
    anchor = anchor_for_step(definition, step_index, started_at, events)
    if anchor is None:
        return None
    step = definition.steps[step_index - 1]
    return compute_fire_time(step.trigger, anchor, tz)
