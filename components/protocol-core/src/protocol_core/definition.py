"""Protocol definition editing, validation and activation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from protocol_core.errors import (
    InvalidStateError,
    InvalidTriggerError,
    NotFoundError,
    ValidationError,
)
from protocol_core.models import (
    FeedbackConfig,
    MessageType,
    MoveDirection,
    ProtocolDefinition,
    ProtocolStatus,
    ProtocolStep,
)
from protocol_core.scheduler import check_trigger

logger = logging.getLogger(__name__)

MAX_FEEDBACK_BUTTONS = 5

_REQUIRED_CONTENT_FIELDS: dict[MessageType, tuple[str, ...]] = {
    MessageType.text: ("text",),
    MessageType.image: ("image_url",),
    MessageType.link: ("link_url", "link_text"),
    MessageType.flex: ("flex_message",),
}

# Operator-driven status edits; draft -> active goes through activate().
_STATUS_TRANSITIONS: dict[ProtocolStatus, frozenset[ProtocolStatus]] = {
    ProtocolStatus.draft: frozenset(),
    ProtocolStatus.active: frozenset(
        {ProtocolStatus.paused, ProtocolStatus.completed, ProtocolStatus.draft}
    ),
    ProtocolStatus.paused: frozenset(
        {ProtocolStatus.active, ProtocolStatus.completed, ProtocolStatus.draft}
    ),
    ProtocolStatus.completed: frozenset(),
}


@dataclass
class StepsDiff:
    """Orders touched by :func:`replace_steps`."""

    updated: list[int] = field(default_factory=list)
    added: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.added or self.removed)


def _renumber(definition: ProtocolDefinition) -> None:
    for index, step in enumerate(definition.steps, start=1):
        step.order = index


def get_step(definition: ProtocolDefinition, order: int) -> ProtocolStep:
    """Return the step at ``order``.

    Raises:
        NotFoundError: If ``order`` is outside 1..N.
    """
    if order < 1 or order > len(definition.steps):
        raise NotFoundError(f"step {order} not found in protocol '{definition.id}'")
    return definition.steps[order - 1]


def add_step(definition: ProtocolDefinition, step: ProtocolStep) -> ProtocolStep:
    """Append ``step`` and give it the next order."""
    step.order = len(definition.steps) + 1
    definition.steps.append(step)
    return step


def remove_step(definition: ProtocolDefinition, order: int) -> ProtocolStep:
    """Remove the step at ``order`` and close the gap it leaves.

    Raises:
        NotFoundError: If ``order`` is outside 1..N.
    """
    removed = get_step(definition, order)
    del definition.steps[order - 1]
    _renumber(definition)
    return removed


def move_step(
    definition: ProtocolDefinition, order: int, direction: MoveDirection | str
) -> bool:
    """Swap the step at ``order`` with its neighbour.

    Returns:
        False when the step is already at the boundary in that direction,
        True when the swap happened.

    Raises:
        NotFoundError: If ``order`` is outside 1..N.
    """
    get_step(definition, order)
    target = order - 1 if MoveDirection(direction) is MoveDirection.up else order + 1
    if target < 1 or target > len(definition.steps):
        logger.info(
            "Step %d of protocol %s is already at the %s boundary",
            order,
            definition.id,
            MoveDirection(direction).value,
        )
        return False
    steps = definition.steps
    steps[order - 1], steps[target - 1] = steps[target - 1], steps[order - 1]
    _renumber(definition)
    return True


def replace_steps(
    definition: ProtocolDefinition, steps: Iterable[ProtocolStep]
) -> StepsDiff:
    """Replace the step list, diffing by order.

    Existing orders are updated in place, new ones appended and surplus ones
    dropped. Incoming orders are ignored; list position decides the order.
    """
    previous = definition.steps
    incoming = list(steps)
    diff = StepsDiff()
    for index, step in enumerate(incoming, start=1):
        step.order = index
        if index <= len(previous):
            if step != previous[index - 1]:
                diff.updated.append(index)
        else:
            diff.added.append(index)
    diff.removed = list(range(len(incoming) + 1, len(previous) + 1))
    definition.steps = incoming
    return diff


def _feedback_violations(prefix: str, feedback: FeedbackConfig) -> list[str]:
    violations: list[str] = []
    if not (feedback.question or "").strip():
        violations.append(f"{prefix}feedback question is required")
    count = len(feedback.buttons)
    if count < 1 or count > MAX_FEEDBACK_BUTTONS:
        violations.append(
            f"{prefix}feedback needs 1 to {MAX_FEEDBACK_BUTTONS} buttons, got {count}"
        )
    seen: set[str] = set()
    for position, button in enumerate(feedback.buttons, start=1):
        if not (button.label or "").strip():
            violations.append(f"{prefix}button {position} label is required")
        if not (button.value or "").strip():
            violations.append(f"{prefix}button {position} value is required")
        elif button.value in seen:
            violations.append(f"{prefix}button value '{button.value}' is duplicated")
        seen.add(button.value)
    return violations


def _content_violations(prefix: str, step: ProtocolStep) -> list[str]:
    if step.content.message_type is not step.message_type:
        return [
            f"{prefix}content is {step.content.message_type.value} "
            f"but message type is {step.message_type.value}"
        ]
    violations = []
    for name in _REQUIRED_CONTENT_FIELDS[step.message_type]:
        value = getattr(step.content, name)
        if not value or (isinstance(value, str) and not value.strip()):
            violations.append(
                f"{prefix}{step.message_type.value} content requires '{name}'"
            )
    return violations


def _step_violations(step: ProtocolStep) -> list[str]:
    prefix = f"step {step.order}: "
    violations: list[str] = []
    try:
        check_trigger(step.trigger)
    except InvalidTriggerError as exc:
        violations.append(prefix + exc.message)

    if step.requires_action and step.feedback is None:
        violations.append(f"{prefix}requires_action is set but feedback config is missing")
    elif not step.requires_action and step.feedback is not None:
        violations.append(
            f"{prefix}feedback config is only allowed when requires_action is set"
        )
    elif step.feedback is not None:
        violations.extend(_feedback_violations(prefix, step.feedback))

    violations.extend(_content_violations(prefix, step))
    return violations


def collect_violations(definition: ProtocolDefinition) -> list[str]:
    """Return every rule the definition breaks, empty when valid."""
    violations: list[str] = []
    if not (definition.name or "").strip():
        violations.append("name is required")
    if not definition.steps:
        violations.append("protocol must have at least one step")

    orders = [step.order for step in definition.steps]
    if orders != list(range(1, len(orders) + 1)):
        violations.append(f"step orders must run 1..N without gaps, got {orders}")

    for step in definition.steps:
        violations.extend(_step_violations(step))
    return violations


def validate(definition: ProtocolDefinition) -> None:
    """Check a definition without changing it.

    Raises:
        ValidationError: Listing every violation found.
    """
    violations = collect_violations(definition)
    if violations:
        raise ValidationError(violations)


def activate(definition: ProtocolDefinition) -> ProtocolDefinition:
    """Move a valid draft definition to ``active``.

    Raises:
        InvalidStateError: If the definition is not a draft.
        ValidationError: If the definition is invalid; it is left unchanged.
    """
    if definition.status is not ProtocolStatus.draft:
        raise InvalidStateError(
            f"protocol '{definition.id}' is {definition.status.value}; "
            "only draft protocols can be activated"
        )
    validate(definition)
    definition.status = ProtocolStatus.active
    logger.info(
        "Activated protocol %s with %d steps", definition.id, definition.total_steps
    )
    return definition


def ensure_editable(definition: ProtocolDefinition) -> None:
    """Require the definition to be a draft before its steps change.

    Raises:
        InvalidStateError: If the definition is active, paused or completed.
    """
    if definition.status is not ProtocolStatus.draft:
        raise InvalidStateError(
            f"protocol '{definition.id}' is {definition.status.value}; "
            "move it back to draft before editing steps"
        )


def change_status(
    definition: ProtocolDefinition, status: ProtocolStatus | str
) -> ProtocolDefinition:
    """Apply an operator status edit other than activation.

    Raises:
        InvalidStateError: If the transition is not permitted.
    """
    target = ProtocolStatus(status)
    if target is definition.status:
        raise InvalidStateError(
            f"protocol '{definition.id}' is already {target.value}"
        )
    if target is ProtocolStatus.active and definition.status is ProtocolStatus.draft:
        raise InvalidStateError("draft protocols are activated through activate")
    if target not in _STATUS_TRANSITIONS[definition.status]:
        raise InvalidStateError(
            f"protocol '{definition.id}' cannot move from "
            f"{definition.status.value} to {target.value}"
        )
    definition.status = target
    return definition
