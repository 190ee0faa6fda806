"""Repository package for database operations."""

from introflow.db.repositories.base import BaseRepository
from introflow.db.repositories.budget_repo import BudgetRepository
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.db.repositories.credit_repo import CreditRepository
from introflow.db.repositories.dead_letter_repo import DeadLetterRepository
from introflow.db.repositories.event_repo import EventRepository
from introflow.db.repositories.message_repo import MessageRepository
from introflow.db.repositories.priority_repo import PriorityRepository
from introflow.db.repositories.saga_repo import (
    ConnectionRequestRepository,
    OfferRepository,
    OpportunityRepository,
)
from introflow.db.repositories.task_repo import TaskRepository
from introflow.db.repositories.user_repo import UserRepository

__all__ = [
    "BaseRepository",
    "BudgetRepository",
    "ConnectionRequestRepository",
    "ConversationRepository",
    "CreditRepository",
    "DeadLetterRepository",
    "EventRepository",
    "MessageRepository",
    "OfferRepository",
    "OpportunityRepository",
    "PriorityRepository",
    "TaskRepository",
    "UserRepository",
]
