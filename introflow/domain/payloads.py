"""Typed payloads for events and tasks.

Every event type and task type has one pydantic model, tagged by a literal
``kind`` field. Payloads are validated when they cross into the engine
(``EventLog.append``, ``TaskQueue.enqueue``) so handlers can match on the
model class instead of probing untyped dicts.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from introflow.core.errors import BusinessRuleViolation


class Payload(BaseModel):
    """Base for all payload models."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Event payloads
# =============================================================================


class TaskReady(Payload):
    """A task was claimed and is ready for its owning worker."""

    kind: Literal["task.ready"] = "task.ready"
    task_id: str
    task_type: str
    agent_type: str
    user_id: str | None = None
    context_type: str | None = None
    context_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1


class MessageReady(Payload):
    """Rendered outbound text ready for the delivery gateway."""

    kind: Literal["message.ready"] = "message.ready"
    message_id: str
    user_id: str
    text: str
    conversation_message_id: str
    sequence_id: str | None = None
    sequence_position: int | None = None
    sequence_total: int | None = None


class UserMessageReceived(Payload):
    """Inbound message from a user, already parsed by the channel layer."""

    kind: Literal["user.message_received"] = "user.message_received"
    user_id: str
    content: str


class PriorityPresented(Payload):
    """An agent surfaced a priority item to its user."""

    kind: Literal["priority.presented"] = "priority.presented"
    priority_id: str
    presentation_type: Literal["dedicated", "natural"] = "natural"


class OpportunityAccepted(Payload):
    kind: Literal["intro.opportunity_accepted"] = "intro.opportunity_accepted"
    opportunity_id: str
    response: str | None = None


class OpportunityDeclined(Payload):
    kind: Literal["intro.opportunity_declined"] = "intro.opportunity_declined"
    opportunity_id: str
    response: str | None = None


class OpportunityCompleted(Payload):
    kind: Literal["intro.opportunity_completed"] = "intro.opportunity_completed"
    opportunity_id: str


class ConnectionRequestAccepted(Payload):
    kind: Literal["connection.request_accepted"] = "connection.request_accepted"
    request_id: str
    response: str | None = None


class ConnectionRequestDeclined(Payload):
    kind: Literal["connection.request_declined"] = "connection.request_declined"
    request_id: str
    response: str | None = None


class ConnectionRequestCompleted(Payload):
    kind: Literal["connection.request_completed"] = "connection.request_completed"
    request_id: str


class OfferAccepted(Payload):
    kind: Literal["intro.offer_accepted"] = "intro.offer_accepted"
    offer_id: str
    response: str | None = None


class OfferDeclined(Payload):
    kind: Literal["intro.offer_declined"] = "intro.offer_declined"
    offer_id: str
    response: str | None = None


class OfferConfirmed(Payload):
    kind: Literal["intro.offer_confirmed"] = "intro.offer_confirmed"
    offer_id: str
    confirmation: str | None = None


class OpportunityCancelled(Payload):
    kind: Literal["intro.opportunity_cancelled"] = "intro.opportunity_cancelled"
    opportunity_id: str
    reason: str | None = None


class ConnectionRequestCancelled(Payload):
    kind: Literal["connection.request_cancelled"] = "connection.request_cancelled"
    request_id: str
    reason: str | None = None


class OfferCancelled(Payload):
    kind: Literal["intro.offer_cancelled"] = "intro.offer_cancelled"
    offer_id: str
    reason: str | None = None


class TaskCompleted(Payload):
    """An external worker finished a handed-off task."""

    kind: Literal["task.completed"] = "task.completed"
    task_id: str
    result: dict[str, Any] = Field(default_factory=dict)


class TaskFailed(Payload):
    """An external worker gave up on one attempt of a handed-off task.

    ``attempt`` echoes the value from ``task.ready``; a report for an
    earlier attempt than the current lease is ignored.
    """

    kind: Literal["task.failed"] = "task.failed"
    task_id: str
    error: str
    retryable: bool = True
    attempt: int | None = None


class MessageDeliveryStatus(Payload):
    """Delivery outcome reported by the channel gateway for a sent message."""

    kind: Literal["message.delivery_status"] = "message.delivery_status"
    message_id: str
    status: Literal["delivered", "failed"]
    error: str | None = None


EVENT_MODELS: tuple[type[Payload], ...] = (
    TaskReady,
    TaskCompleted,
    TaskFailed,
    MessageReady,
    MessageDeliveryStatus,
    UserMessageReceived,
    PriorityPresented,
    OpportunityAccepted,
    OpportunityDeclined,
    OpportunityCompleted,
    OpportunityCancelled,
    ConnectionRequestAccepted,
    ConnectionRequestDeclined,
    ConnectionRequestCompleted,
    ConnectionRequestCancelled,
    OfferAccepted,
    OfferDeclined,
    OfferConfirmed,
    OfferCancelled,
)

EventPayload = Annotated[Union[EVENT_MODELS], Field(discriminator="kind")]  # type: ignore[valid-type]

_event_adapter: TypeAdapter[Any] = TypeAdapter(EventPayload)

EVENT_TYPES: frozenset[str] = frozenset(model.model_fields["kind"].default for model in EVENT_MODELS)


# =============================================================================
# Task payloads
# =============================================================================


class ReEngagementCheck(Payload):
    """Decide whether to re-surface a priority item to its user."""

    kind: Literal["re_engagement_check"] = "re_engagement_check"
    priority_id: str | None = None
    note: str | None = None


class ReformulateMessage(Payload):
    """Rewrite a message that went stale before delivery."""

    kind: Literal["reformulate_message"] = "reformulate_message"
    message_id: str
    reason: str
    message_data: dict[str, Any] = Field(default_factory=dict)


class OfferConfirmationReminder(Payload):
    """Remind a connector to confirm an accepted offer."""

    kind: Literal["intro_offer_confirmation_reminder"] = "intro_offer_confirmation_reminder"
    offer_id: str


class OfferExpiryCheck(Payload):
    """Expire an offer still unconfirmed after the reminder grace period."""

    kind: Literal["intro_offer_expiry_check"] = "intro_offer_expiry_check"
    offer_id: str


class SagaExpirySweep(Payload):
    """Expire every saga instance past its expiry time."""

    kind: Literal["saga_expiry_sweep"] = "saga_expiry_sweep"


class AgentWork(Payload):
    """Base for work handed to external agents via ``task.ready``.

    The named fields are checked; anything else the producer attaches is
    kept and passed through to the agent as context.
    """

    model_config = ConfigDict(extra="allow")


class ResearchSolution(AgentWork):
    kind: Literal["research_solution"] = "research_solution"
    query: str = Field(min_length=1)
    category: str | None = None
    urgency: Literal["low", "medium", "high"] | None = None


class ScheduleFollowup(AgentWork):
    kind: Literal["schedule_followup"] = "schedule_followup"
    reason: str = Field(min_length=1)


class UpdateUserProfile(AgentWork):
    kind: Literal["update_user_profile"] = "update_user_profile"
    field: Literal[
        "name",
        "email",
        "company",
        "title",
        "linkedin_url",
        "expertise",
        "timezone",
        "quiet_hours_start",
        "quiet_hours_end",
        "expert_connector",
        "response_pattern",
    ]
    value: Any


class NotifyUserOfPriorities(AgentWork):
    kind: Literal["notify_user_of_priorities"] = "notify_user_of_priorities"
    reason: str | None = None


class IntroFollowupCheck(AgentWork):
    kind: Literal["intro_followup_check"] = "intro_followup_check"
    intro_id: str
    user_question: str | None = None


class CommunityRequestAvailable(AgentWork):
    """Tell an expert about a community request they may answer."""

    kind: Literal["community_request_available"] = "community_request_available"
    request_id: str
    question: str
    category: str | None = None
    urgency: Literal["low", "medium", "high"] | None = None


class ProcessCommunityResponse(AgentWork):
    kind: Literal["process_community_response"] = "process_community_response"
    response_id: str
    request_id: str


class CommunityResponseAvailable(AgentWork):
    """Tell the requester an expert answered."""

    kind: Literal["community_response_available"] = "community_response_available"
    response_id: str
    request_id: str
    response_summary: str | None = None


class NotifyExpertOfImpact(AgentWork):
    kind: Literal["notify_expert_of_impact"] = "notify_expert_of_impact"
    response_id: str
    impact: str | None = None


TASK_MODELS: tuple[type[Payload], ...] = (
    ReEngagementCheck,
    ReformulateMessage,
    OfferConfirmationReminder,
    OfferExpiryCheck,
    SagaExpirySweep,
    ResearchSolution,
    ScheduleFollowup,
    UpdateUserProfile,
    NotifyUserOfPriorities,
    IntroFollowupCheck,
    CommunityRequestAvailable,
    ProcessCommunityResponse,
    CommunityResponseAvailable,
    NotifyExpertOfImpact,
)

TaskPayload = Annotated[Union[TASK_MODELS], Field(discriminator="kind")]  # type: ignore[valid-type]

_task_adapter: TypeAdapter[Any] = TypeAdapter(TaskPayload)

TASK_TYPES: frozenset[str] = frozenset(model.model_fields["kind"].default for model in TASK_MODELS)


def _parse(adapter: TypeAdapter[Any], kind: str, data: dict[str, Any] | BaseModel) -> Any:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return adapter.validate_python({**data, "kind": kind})
    except ValidationError as e:
        raise BusinessRuleViolation(f"Invalid payload for '{kind}': {e}") from e


def parse_event_payload(event_type: str, data: dict[str, Any] | BaseModel) -> Any:
    """Validate an event payload against its type.

    Raises:
        BusinessRuleViolation: Unknown event type or invalid payload.
    """
    if event_type not in EVENT_TYPES:
        raise BusinessRuleViolation(f"Unknown event type: {event_type}")
    return _parse(_event_adapter, event_type, data)


def parse_task_payload(task_type: str, data: dict[str, Any] | BaseModel) -> Any:
    """Validate a task payload against its type.

    Raises:
        BusinessRuleViolation: Unknown task type or invalid payload.
    """
    if task_type not in TASK_TYPES:
        raise BusinessRuleViolation(f"Unknown task type: {task_type}")
    return _parse(_task_adapter, task_type, data)
