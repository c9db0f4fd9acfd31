"""Domain models for protocol definitions, assignments and step events."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union

from protocol_core.errors import ValidationError


class ProtocolStatus(str, Enum):
    """Lifecycle status of a protocol definition."""

    draft = "draft"
    active = "active"
    paused = "paused"
    completed = "completed"


class AssignmentStatus(str, Enum):
    """Lifecycle status of a patient's assignment."""

    assigned = "assigned"
    active = "active"
    paused = "paused"
    completed = "completed"


class PatientStatus(str, Enum):
    """Whether a patient is currently enrolled."""

    active = "active"
    inactive = "inactive"


class MessageType(str, Enum):
    """Content variant delivered by a step."""

    text = "text"
    image = "image"
    link = "link"
    flex = "flex"


class TriggerType(str, Enum):
    """Rule deciding when a step fires."""

    immediate = "immediate"
    delay = "delay"
    scheduled = "scheduled"


class ButtonAction(str, Enum):
    """Effect of a feedback button on the step it answers."""

    complete = "complete"
    postpone = "postpone"
    skip = "skip"


class EventKind(str, Enum):
    """Kind of step event recorded for an assignment."""

    sent = "sent"
    responded = "responded"


class MoveDirection(str, Enum):
    """Direction for reordering a step."""

    up = "up"
    down = "down"


@dataclass(frozen=True)
class TextContent:
    """Plain text message.

    Args:
        text: Message body.
    """

    message_type: ClassVar[MessageType] = MessageType.text

    text: str = ""


@dataclass(frozen=True)
class ImageContent:
    """Image message with an optional caption.

    Args:
        image_url: Public URL of the image.
        text: Optional caption.
    """

    message_type: ClassVar[MessageType] = MessageType.image

    image_url: str = ""
    text: Optional[str] = None


@dataclass(frozen=True)
class LinkContent:
    """Link message.

    Args:
        link_url: Target URL.
        link_text: Label shown for the link.
    """

    message_type: ClassVar[MessageType] = MessageType.link

    link_url: str = ""
    link_text: str = ""


@dataclass(frozen=True)
class FlexContent:
    """Structured message whose document is passed through untouched.

    Args:
        flex_message: Opaque structured document.
    """

    message_type: ClassVar[MessageType] = MessageType.flex

    flex_message: Dict[str, Any] = field(default_factory=dict)


Content = Union[TextContent, ImageContent, LinkContent, FlexContent]

CONTENT_TYPES: Dict[MessageType, type] = {
    MessageType.text: TextContent,
    MessageType.image: ImageContent,
    MessageType.link: LinkContent,
    MessageType.flex: FlexContent,
}


def content_from_payload(
    message_type: Union[MessageType, str], payload: Optional[Mapping[str, Any]]
) -> Content:
    """Build the content variant for a message type from a raw payload.

    Fields that do not belong to the variant are rejected. Required fields may
    still be empty; :func:`protocol_core.definition.validate` reports those.

    Args:
        message_type: Message type keying the variant.
        payload: Raw content fields.

    Returns:
        The content dataclass for ``message_type``.

    Raises:
        ValidationError: If the message type is unknown or the payload carries
            unrelated fields.

    Examples:
        >>> content_from_payload("link", {"link_url": "https://x.org", "link_text": "Go"})
        LinkContent(link_url='https://x.org', link_text='Go')
    """
    try:
        kind = MessageType(message_type)
    except ValueError:
        raise ValidationError([f"unknown message type '{message_type}'"]) from None
    content_cls = CONTENT_TYPES[kind]
    data = dict(payload or {})
    allowed = {item.name for item in fields(content_cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValidationError(
            [f"{kind.value} content does not accept field(s): {', '.join(unknown)}"]
        )
    return content_cls(**data)


def content_to_payload(content: Content) -> Dict[str, Any]:
    """Serialize a content variant to a plain dict, dropping unset optionals."""
    return {key: value for key, value in asdict(content).items() if value is not None}


@dataclass(frozen=True)
class TriggerSpec:
    """When a step fires relative to its anchor.

    Args:
        type: Trigger variant.
        value: Raw value; minutes for ``delay``, ``HH:MM`` for ``scheduled``,
            ignored for ``immediate``.

    Examples:
        >>> TriggerSpec(TriggerType.delay, "30")
        TriggerSpec(type=<TriggerType.delay: 'delay'>, value='30')
    """

    type: TriggerType
    value: str = ""


@dataclass(frozen=True)
class FeedbackButton:
    """Response button attached to an action-requiring step.

    Args:
        label: Text shown on the button.
        value: Value recorded when the patient presses it.
        action: Effect on the step.
    """

    label: str
    value: str
    action: ButtonAction = ButtonAction.complete


@dataclass
class FeedbackConfig:
    """Prompt and response buttons for an action-requiring step.

    Args:
        question: Prompt shown with the buttons.
        buttons: One to five response buttons.
    """

    question: str
    buttons: List[FeedbackButton] = field(default_factory=list)

    def button_for(self, value: str) -> Optional[FeedbackButton]:
        """Return the button whose value matches, if any."""
        for button in self.buttons:
            if button.value == value:
                return button
        return None


@dataclass
class ProtocolStep:
    """One ordered step of a protocol definition.

    Args:
        order: 1-based position within the parent definition.
        trigger: When the step fires.
        message_type: Content variant key.
        content: Content matching ``message_type``.
        requires_action: Whether the patient must respond to finish the step.
        feedback: Prompt and buttons; present exactly when ``requires_action``.

    Examples:
        >>> ProtocolStep(
        ...     order=1,
        ...     trigger=TriggerSpec(TriggerType.immediate),
        ...     message_type=MessageType.text,
        ...     content=TextContent(text="Good morning"),
        ... ).requires_action
        False
    """

    order: int
    trigger: TriggerSpec
    message_type: MessageType
    content: Content
    requires_action: bool = False
    feedback: Optional[FeedbackConfig] = None


@dataclass
class ProtocolDefinition:
    """Ordered template of messaging steps.

    Args:
        id: Stable protocol identifier.
        name: Human-readable name.
        description: Optional longer description.
        status: Lifecycle status.
        steps: Steps ordered 1..N.
        created_by: Operator who created the definition.

    Notes:
        Steps have no identity outside their parent; they are addressed by
        ``order`` only.
    """

    id: str
    name: str
    description: Optional[str] = None
    status: ProtocolStatus = ProtocolStatus.draft
    steps: List[ProtocolStep] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)


@dataclass
class Patient:
    """Patient who can receive protocol assignments."""

    id: str
    display_name: str
    real_name: Optional[str] = None
    status: PatientStatus = PatientStatus.active
    created_at: Optional[datetime] = None


@dataclass
class Assignment:
    """One patient's run through a protocol definition.

    Args:
        id: Assignment identifier.
        protocol_id: Definition being followed (live, not a snapshot).
        patient_id: Patient receiving the messages.
        status: Lifecycle status.
        assigned_at: When the assignment was created.
        started_at: When ``start`` was applied.
        completed_at: When the assignment reached ``completed``.
        current_step_index: 1-based cursor; 0 before start.
        total_steps: Step count of the definition at the last transition.
        completed_steps: Steps finished with a ``complete`` outcome.
        adherence_rate: Responded/sent percentage over action steps.
        next_fire_at: Fire time of the step at the cursor.
        version: Optimistic-lock counter, bumped on every write.
    """

    id: str
    protocol_id: str
    patient_id: str
    status: AssignmentStatus = AssignmentStatus.assigned
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step_index: int = 0
    total_steps: int = 0
    completed_steps: int = 0
    adherence_rate: Optional[float] = None
    next_fire_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class StepEvent:
    """Immutable record of a step being sent or answered.

    Args:
        assignment_id: Owning assignment.
        step_index: Step order the event refers to.
        kind: ``sent`` or ``responded``.
        timestamp: When the event happened.
        value: Button value or free text for ``responded`` events.
        id: Store identifier once persisted.
    """

    assignment_id: str
    step_index: int
    kind: EventKind
    timestamp: datetime
    value: Optional[str] = None
    id: Optional[str] = None


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def build_step(
    *,
    order: int = 1,
    trigger_type: TriggerType = TriggerType.immediate,
    trigger_value: str = "",
    message_type: MessageType = MessageType.text,
    content: Optional[Content] = None,
    requires_action: bool = False,
    feedback: Optional[FeedbackConfig] = None,
) -> ProtocolStep:
    """Create a ProtocolStep instance with defaults for tests and examples."""
    if requires_action and feedback is None:
        feedback = build_feedback()
    return ProtocolStep(
        order=order,
        trigger=TriggerSpec(trigger_type, trigger_value),
        message_type=message_type,
        content=content or TextContent(text="Please take your medication."),
        requires_action=requires_action,
        feedback=feedback,
    )


def build_feedback(
    *,
    question: str = "Did you take your medication?",
    buttons: Optional[List[FeedbackButton]] = None,
) -> FeedbackConfig:
    """Create a FeedbackConfig instance with defaults for tests and examples."""
    return FeedbackConfig(
        question=question,
        buttons=buttons
        or [
            FeedbackButton(label="Done", value="done", action=ButtonAction.complete),
            FeedbackButton(label="Later", value="later", action=ButtonAction.postpone),
            FeedbackButton(label="Skip", value="skip", action=ButtonAction.skip),
        ],
    )


def build_definition(
    *,
    id: str = "proto-1",
    name: str = "Daily Meds",
    description: Optional[str] = None,
    status: ProtocolStatus = ProtocolStatus.draft,
    steps: Optional[List[ProtocolStep]] = None,
) -> ProtocolDefinition:
    """Create a ProtocolDefinition instance with defaults for tests and examples."""
    return ProtocolDefinition(
        id=id,
        name=name,
        description=description,
        status=status,
        steps=steps if steps is not None else [build_step()],
    )


def build_assignment(
    *,
    id: str = "asg-1",
    protocol_id: str = "proto-1",
    patient_id: str = "patient-1",
    status: AssignmentStatus = AssignmentStatus.assigned,
    total_steps: int = 1,
    assigned_at: Optional[datetime] = None,
) -> Assignment:
    """Create an Assignment instance with defaults for tests and examples."""
    return Assignment(
        id=id,
        protocol_id=protocol_id,
        patient_id=patient_id,
        status=status,
        assigned_at=assigned_at or utcnow(),
        total_steps=total_steps,
    )
