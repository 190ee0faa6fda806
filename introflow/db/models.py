"""SQLAlchemy ORM models for the IntroFlow coordination store."""

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from introflow.core.ids import new_id
from introflow.core.timezone import utc_now


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


# ============================================================================
# Enumerations
# ============================================================================


class Priority(StrEnum):
    """Dispatch priority shared by tasks and queued messages."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK: dict[str, int] = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class TaskStatus(StrEnum):
    """Agent task lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliveryStatus(StrEnum):
    """Event delivery state (kept apart from the immutable event row)."""

    PENDING = "pending"
    PROCESSED = "processed"
    DEAD_LETTERED = "dead_lettered"


class DeadLetterSource(StrEnum):
    """Origin of a dead-lettered work item."""

    EVENT = "event"
    TASK = "task"


class MessageStatus(StrEnum):
    """Outbound message lifecycle."""

    QUEUED = "queued"
    APPROVED = "approved"
    PROCESSING = "processing"
    SENT = "sent"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"


class MessageDirection(StrEnum):
    """Direction of a conversation message relative to the user."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class PriorityStatus(StrEnum):
    """Priority item presentation state."""

    ACTIVE = "active"
    PRESENTED = "presented"
    ACTIONED = "actioned"
    EXPIRED = "expired"
    DORMANT = "dormant"


class PresentationType(StrEnum):
    """How a priority item was surfaced to its user."""

    DEDICATED = "dedicated"
    NATURAL = "natural"


class AccountType(StrEnum):
    """User account classification."""

    MEMBER = "member"
    SOLUTION_PROVIDER = "solution_provider"


class OpportunityStatus(StrEnum):
    """Intro opportunity lifecycle."""

    OPEN = "open"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ConnectionRequestStatus(StrEnum):
    """Connection request lifecycle."""

    OPEN = "open"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OfferStatus(StrEnum):
    """Intro offer two-step handshake lifecycle."""

    PENDING_INTRODUCEE_RESPONSE = "pending_introducee_response"
    PENDING_CONNECTOR_CONFIRMATION = "pending_connector_confirmation"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# ============================================================================
# Users & Conversation Context
# ============================================================================


class User(Base):
    """Platform member as seen by the coordination engine.

    Only the fields the engine reads are kept here: scheduling preferences
    (timezone, quiet hours, response pattern) and scoring inputs.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quiet_hours_start: Mapped[str | None] = mapped_column(String(8), nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String(8), nullable=True)
    response_pattern: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    account_type: Mapped[str] = mapped_column(String(32), default=AccountType.MEMBER.value)
    warm_intro_bounty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    interests: Mapped[list[str]] = mapped_column(JSON, default=list)
    intro_success_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    reputation_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expert_connector: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class ConversationMessage(Base):
    """A message exchanged with a user, inbound or outbound.

    Drives the user-active check, relevance checks and the hourly budget.
    Outbound rows carry the gateway's delivery outcome once it is reported.
    """

    __tablename__ = "conversation_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    direction: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    delivery_unit_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    queued_message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    source_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    delivery_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_status_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        Index("ix_conversation_messages_user_dir_time", "user_id", "direction", "created_at"),
    )


# ============================================================================
# Event Log Tables
# ============================================================================


class Event(Base):
    """Immutable fact. Written once by its producer, never updated."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_type: Mapped[str] = mapped_column(String(128), index=True)
    aggregate_id: Mapped[str] = mapped_column(String(36))
    aggregate_type: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    created_by: Mapped[str] = mapped_column(String(128), default="system")

    __table_args__ = (Index("ix_events_aggregate", "aggregate_type", "aggregate_id"),)


class EventDelivery(Base):
    """Mutable delivery bookkeeping for one event."""

    __tablename__ = "event_deliveries"

    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(String(32), default=DeliveryStatus.PENDING.value, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DeadLetter(Base):
    """Work item that exhausted its retries, kept for manual replay."""

    __tablename__ = "dead_letters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source: Mapped[str] = mapped_column(String(16), index=True)
    reference_id: Mapped[str] = mapped_column(String(36), index=True)
    item_type: Mapped[str] = mapped_column(String(128))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    error_message: Mapped[str] = mapped_column(Text, default="")
    error_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    original_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# ============================================================================
# Task Queue Tables
# ============================================================================


class AgentTask(Base):
    """Unit of leased background work."""

    __tablename__ = "agent_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_type: Mapped[str] = mapped_column(String(128))
    agent_type: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    context_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    context_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    priority: Mapped[str] = mapped_column(String(16), default=Priority.MEDIUM.value)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.PENDING.value)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    last_attempted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    context_payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    result_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    created_by: Mapped[str] = mapped_column(String(128), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_agent_tasks_due", "status", "scheduled_for", "priority"),
        Index("ix_agent_tasks_context", "context_type", "context_id"),
    )


class AgentActionLog(Base):
    """Audit row for each task handler execution."""

    __tablename__ = "agent_actions_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_type: Mapped[str] = mapped_column(String(64), index=True)
    action_type: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    input_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# ============================================================================
# Message Orchestrator Tables
# ============================================================================


class QueuedMessage(Base):
    """Outbound message, standalone or one member of a sequence."""

    __tablename__ = "message_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36))
    source_agent: Mapped[str] = mapped_column(String(64))
    message_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    final_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    priority: Mapped[str] = mapped_column(String(16), default=Priority.MEDIUM.value)
    status: Mapped[str] = mapped_column(String(16), default=MessageStatus.QUEUED.value)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    superseded_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sequence_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    sequence_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence_incomplete: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_fresh_context: Mapped[bool] = mapped_column(Boolean, default=False)
    context_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    context_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_message_queue_due", "status", "scheduled_for", "priority"),
        Index("ix_message_queue_user_status", "user_id", "status"),
        Index("ix_message_queue_context", "user_id", "context_type", "context_id"),
    )


class MessageBudget(Base):
    """Per-user, per-local-day delivery budget."""

    __tablename__ = "user_message_budget"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36))
    budget_date: Mapped[date] = mapped_column(Date)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    daily_limit: Mapped[int] = mapped_column(Integer, default=10)
    hourly_limit: Mapped[int] = mapped_column(Integer, default=2)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (UniqueConstraint("user_id", "budget_date", name="uq_budget_user_date"),)


# ============================================================================
# Priority Ledger Tables
# ============================================================================


class PriorityItem(Base):
    """Ranked pointer to an actionable entity for one user."""

    __tablename__ = "user_priorities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36))
    rank: Mapped[int] = mapped_column(Integer, default=999)
    item_type: Mapped[str] = mapped_column(String(64))
    item_id: Mapped[str] = mapped_column(String(36))
    value_score: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=PriorityStatus.ACTIVE.value)
    presentation_count: Mapped[int] = mapped_column(Integer, default=0)
    last_presented_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_presentation_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    dormant_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actioned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    item_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_primary_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_secondary_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_context: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "item_type", "item_id", name="uq_priority_user_item"),
        Index("ix_user_priorities_user_status", "user_id", "status"),
    )


class PriorityPresentation(Base):
    """One surfacing of a priority item.

    ``source_event_id`` is the ``priority.presented`` event that recorded it,
    so a redelivered event cannot count twice.
    """

    __tablename__ = "priority_presentations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    priority_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_priorities.id", ondelete="CASCADE"), index=True
    )
    presentation_type: Mapped[str] = mapped_column(String(16))
    source_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    presented_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# ============================================================================
# Introduction Saga Tables
# ============================================================================


class SubjectMixin:
    """Person being introduced. Shared by every saga variant."""

    subject_name: Mapped[str] = mapped_column(String(255))
    subject_company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject_context: Mapped[str | None] = mapped_column(Text, nullable=True)


class IntroOpportunity(SubjectMixin, Base):
    """A connector is asked to introduce a prospect on behalf of a requestor."""

    __tablename__ = "intro_opportunities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    connector_user_id: Mapped[str] = mapped_column(String(36), index=True)
    requestor_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    bounty_credits: Mapped[int] = mapped_column(Integer, default=50)
    status: Mapped[str] = mapped_column(String(32), default=OpportunityStatus.OPEN.value)
    connector_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (Index("ix_intro_opportunities_status_subject", "status", "subject_name"),)


class ConnectionRequest(SubjectMixin, Base):
    """A third party (the subject) asks to be introduced to a platform member."""

    __tablename__ = "connection_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    introducee_user_id: Mapped[str] = mapped_column(String(36), index=True)
    requestor_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    vouched_by_user_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    bounty_credits: Mapped[int] = mapped_column(Integer, default=0)
    requestor_credits_spent: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(
        String(32), default=ConnectionRequestStatus.OPEN.value
    )
    introducee_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class IntroOffer(SubjectMixin, Base):
    """A connector offers to introduce the introducee to the subject."""

    __tablename__ = "intro_offers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    offering_user_id: Mapped[str] = mapped_column(String(36), index=True)
    introducee_user_id: Mapped[str] = mapped_column(String(36), index=True)
    context_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    context_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    bounty_credits: Mapped[int] = mapped_column(Integer, default=25)
    status: Mapped[str] = mapped_column(
        String(40), default=OfferStatus.PENDING_INTRODUCEE_RESPONSE.value
    )
    introducee_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    connector_confirmation: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


# ============================================================================
# Credit Ledger Tables
# ============================================================================


class CreditEvent(Base):
    """Append-only ledger line. Never updated or deleted."""

    __tablename__ = "credit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    amount: Mapped[int] = mapped_column(Integer)
    reference_type: Mapped[str] = mapped_column(String(64))
    reference_id: Mapped[str] = mapped_column(String(36))
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class CreditBalance(Base):
    """Cached per-user balance. Read optimization only; the ledger is authoritative."""

    __tablename__ = "credit_balances"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)
