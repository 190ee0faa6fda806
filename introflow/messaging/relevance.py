"""Pre-send relevance check for messages that depend on fresh context."""

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from introflow.db.models import ConversationMessage, QueuedMessage
from introflow.db.repositories.conversation_repo import ConversationRepository
from introflow.db.repositories.priority_repo import TERMINAL_STATUSES, PriorityRepository
from introflow.db.repositories.saga_repo import SAGA_TERMINAL_STATUSES, saga_status

logger = logging.getLogger(__name__)


class Relevance(StrEnum):
    """Classifier verdict for a queued message."""

    RELEVANT = "relevant"
    STALE = "stale"
    CONTEXTUAL = "contextual"
    RESOLVED = "resolved"


@dataclass
class RelevanceResult:
    verdict: Relevance
    reason: str = ""

    @property
    def is_stale(self) -> bool:
        return self.verdict == Relevance.STALE

    @property
    def is_resolved(self) -> bool:
        return self.verdict == Relevance.RESOLVED


class RelevanceClassifier(Protocol):
    """Decides whether a queued message still makes sense after new inbound messages."""

    async def classify(
        self, message: QueuedMessage, inbound: list[ConversationMessage]
    ) -> RelevanceResult: ...


class KeywordRelevanceClassifier:
    """Deterministic classifier driven by ``message_data["stale_if_reply_contains"]``.

    If any recent inbound message contains one of the listed phrases the
    message is stale; otherwise it is sent with fresh context.
    """

    async def classify(
        self, message: QueuedMessage, inbound: list[ConversationMessage]
    ) -> RelevanceResult:
        phrases = [p.lower() for p in message.message_data.get("stale_if_reply_contains", [])]
        for reply in inbound:
            content = reply.content.lower()
            for phrase in phrases:
                if phrase in content:
                    return RelevanceResult(Relevance.STALE, f"user replied '{phrase}' since queueing")
        return RelevanceResult(Relevance.CONTEXTUAL, "user replied since queueing")


class RelevanceChecker:
    """Pre-send check for a message that requires fresh context.

    The entity the message is about (``context_type``/``context_id``) is
    re-read first: a resolved saga or priority item makes the message
    RESOLVED whatever the user said. Otherwise the classifier runs, but only
    when the user has written since the message was queued.
    """

    def __init__(self, session: AsyncSession, classifier: RelevanceClassifier | None = None):
        self.session = session
        self.classifier = classifier or KeywordRelevanceClassifier()
        self.conversations = ConversationRepository(session)

    async def check(self, message: QueuedMessage) -> RelevanceResult:
        resolved = await self.resolved_context(message)
        if resolved is not None:
            return RelevanceResult(Relevance.RESOLVED, resolved)
        inbound = await self.conversations.inbound_since(message.user_id, message.created_at)
        if not inbound:
            return RelevanceResult(Relevance.RELEVANT, "no new messages since queueing")
        try:
            return await self.classifier.classify(message, inbound)
        except Exception as e:
            logger.warning(f"Relevance classifier failed for message {message.id}, sending anyway: {e}")
            return RelevanceResult(Relevance.RELEVANT, "classifier error")

    async def resolved_context(self, message: QueuedMessage) -> str | None:
        """Why the message's subject no longer needs the user, or None if it is still open."""
        if not (message.context_type and message.context_id):
            return None
        item = await PriorityRepository(self.session).get_by_key(
            message.user_id, message.context_type, message.context_id
        )
        if item is not None:
            await self.session.refresh(item)
            if item.status in TERMINAL_STATUSES:
                return f"priority item for {message.context_type}:{message.context_id} is {item.status}"
        status = await saga_status(self.session, message.context_type, message.context_id)
        if status in SAGA_TERMINAL_STATUSES:
            return f"{message.context_type} {message.context_id} is {status}"
        return None
