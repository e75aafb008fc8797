"""Conversation lifecycle: messages, escalation, agent replies and stats."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from ..integrations.freshdesk import is_closed_status
from ..markup import html_to_text
from ..sentiment import rollup_sentiment
from . import schemas
from .models import (
    AgentReply,
    AgentReplyResult,
    ConversationStatus,
    EscalationOutcome,
    EscalationReason,
    MessageRole,
    Sentiment,
)
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationNotFoundError(LookupError):
    """Raised when a conversation cannot be located."""


class MessageNotFoundError(LookupError):
    """Raised when a message referenced by feedback does not exist."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationService:
    """Coordinates persistence, escalation and human handoff."""

    def __init__(self, repository: ConversationRepository, *, notifier=None) -> None:
        self._repository = repository
        self._notifier = notifier

    @property
    def repository(self) -> ConversationRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Chat turn

    async def start_or_resume(self, session_id: str) -> schemas.Conversation:
        """Return the session's active conversation, creating one if needed."""

        conversation = await self._repository.get_active_conversation(session_id)
        if conversation:
            return conversation
        conversation = await self._repository.create_conversation(session_id)
        logger.info("Conversation %s started for session %s", conversation.id, session_id)
        return conversation

    async def record_user_message(
        self, conversation_id: UUID, content: str, sentiment: Sentiment
    ) -> schemas.Message:
        """Store a user message with its label and refresh the rollup."""

        message = await self._repository.add_message(
            conversation_id, MessageRole.USER, content, {"sentiment": sentiment.value}
        )
        history = await self._repository.list_messages(conversation_id, role=MessageRole.USER)
        overall = rollup_sentiment(m.sentiment for m in history)
        await self._repository.update_sentiment(conversation_id, overall)
        return message

    async def record_assistant_message(
        self,
        conversation_id: UUID,
        content: str,
        *,
        sources: Sequence[dict[str, Any]] = (),
        response_time_ms: Optional[int] = None,
    ) -> schemas.Message:
        message = await self._repository.add_message(
            conversation_id,
            MessageRole.ASSISTANT,
            content,
            {"sources": list(sources)},
        )
        await self._repository.record_event(
            conversation_id,
            "message_sent",
            {"response_time_ms": response_time_ms, "sources_used": len(sources)},
        )
        return message

    # ------------------------------------------------------------------
    # Escalation

    async def escalate(
        self, conversation_id: UUID, reason: EscalationReason
    ) -> EscalationOutcome:
        """Move a conversation to ``escalated`` and notify humans once.

        Repeated calls are no-ops: only the call that flips the status from
        ``active`` dispatches notifications. Notification problems are logged
        and never undo the status change.
        """

        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        if conversation.status is not ConversationStatus.ACTIVE:
            logger.info(
                "Conversation %s is %s; skipping escalation",
                conversation_id,
                conversation.status.value,
            )
            return EscalationOutcome(
                conversation_id,
                reason,
                escalated=False,
                already_escalated=conversation.status is ConversationStatus.ESCALATED,
                ticket_id=conversation.ticket_id,
                ticket_url=conversation.metadata.get("ticket_url"),
            )

        won = await self._repository.mark_escalated(
            conversation_id,
            {"escalation_reason": reason.value, "escalated_at": _now().isoformat()},
        )
        if not won:
            logger.info("Conversation %s was escalated concurrently", conversation_id)
            return EscalationOutcome(
                conversation_id, reason, escalated=False, already_escalated=True
            )
        await self._repository.record_event(
            conversation_id, "escalated", {"reason": reason.value}
        )
        await self._repository.commit()
        logger.info("Conversation %s escalated: %s", conversation_id, reason.value)

        outcome = EscalationOutcome(conversation_id, reason, escalated=True)
        if self._notifier is None:
            return outcome
        try:
            await self._notify(conversation, reason, outcome)
        except Exception:
            logger.exception("Handoff notification failed for %s", conversation_id)
        return outcome

    async def _notify(
        self,
        conversation: schemas.Conversation,
        reason: EscalationReason,
        outcome: EscalationOutcome,
    ) -> None:
        transcript = await self._repository.list_messages(conversation.id)
        ticket = await self._notifier.open_ticket(conversation, reason, transcript)
        if ticket:
            outcome.ticket_id = ticket["ticket_id"]
            outcome.ticket_url = ticket["ticket_url"]
            await self._repository.merge_metadata(conversation.id, ticket)
            await self._repository.commit()
        outcome.notified = await self._notifier.notify_team(
            conversation, reason, transcript, ticket
        )

    # ------------------------------------------------------------------
    # Human agent replies

    async def ingest_agent_reply(self, reply: AgentReply) -> AgentReplyResult:
        text = html_to_text(reply.body)
        if not text:
            raise ValueError("Agent reply body is empty")
        conversation = await self._repository.find_by_ticket_id(reply.ticket_id)
        if conversation is None:
            raise ConversationNotFoundError(
                f"No conversation is linked to ticket {reply.ticket_id}"
            )
        message = await self._repository.add_message(
            conversation.id,
            MessageRole.AGENT,
            text,
            {
                "agent_name": reply.agent_name,
                "ticket_id": str(reply.ticket_id),
                "received_at": reply.received_at.isoformat(),
                "source": reply.source,
            },
        )
        await self._repository.record_event(
            conversation.id,
            "agent_reply",
            {"ticket_id": str(reply.ticket_id), "agent_name": reply.agent_name},
        )
        resolved = reply.resolved or is_closed_status(reply.external_status)
        if resolved:
            await self._resolve(conversation.id, via=reply.source)
        logger.info(
            "Agent reply stored for conversation %s (ticket %s)",
            conversation.id,
            reply.ticket_id,
        )
        return AgentReplyResult(conversation.id, message.id, resolved)

    async def poll_agent_messages(
        self, session_id: str, after: Optional[datetime] = None
    ) -> schemas.AgentPollResponse:
        conversation = await self._repository.latest_handoff_conversation(session_id)
        if conversation is None:
            return schemas.AgentPollResponse()
        messages = await self._repository.list_messages(
            conversation.id, role=MessageRole.AGENT, after=after
        )
        return schemas.AgentPollResponse(
            hasNewMessages=bool(messages),
            isResolved=conversation.status is ConversationStatus.RESOLVED,
            conversationId=conversation.id,
            messages=[
                schemas.AgentMessage(
                    id=m.id,
                    role=m.role,
                    content=m.content,
                    created_at=m.created_at,
                    metadata=m.metadata,
                )
                for m in messages
            ],
        )

    # ------------------------------------------------------------------
    # Feedback

    async def submit_feedback(
        self, message_id: UUID, rating: int, feedback_text: Optional[str] = None
    ) -> schemas.Feedback:
        if rating not in (1, -1):
            raise ValueError("Rating must be 1 or -1")
        message = await self._repository.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        feedback = await self._repository.upsert_feedback(message_id, rating, feedback_text)
        await self._repository.record_event(
            message.conversation_id,
            "feedback",
            {"message_id": str(message_id), "rating": rating},
        )
        return feedback

    # ------------------------------------------------------------------
    # Administration

    async def conversation_detail(self, conversation_id: UUID) -> schemas.ConversationDetail:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        messages = await self._repository.list_messages(conversation_id)
        ratings = await self._repository.feedback_for_messages([m.id for m in messages])
        return schemas.ConversationDetail(
            conversation=conversation,
            messages=[
                schemas.MessageWithFeedback(**m.model_dump(), feedback=ratings.get(m.id))
                for m in messages
            ],
        )

    async def resolve(self, conversation_id: UUID, *, via: str = "admin") -> schemas.Conversation:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        await self._resolve(conversation_id, via=via)
        refreshed = await self._repository.get_conversation(conversation_id)
        if refreshed is None:
            raise RuntimeError("Conversation disappeared after resolving")
        return refreshed

    async def _resolve(self, conversation_id: UUID, *, via: str) -> bool:
        changed = await self._repository.mark_resolved(
            conversation_id,
            {"resolved_at": _now().isoformat(), "resolved_via": via},
        )
        if changed:
            await self._repository.record_event(conversation_id, "resolved", {"via": via})
            logger.info("Conversation %s resolved via %s", conversation_id, via)
        return changed

    async def auto_resolve(self, days: int) -> int:
        """Resolve active conversations idle for more than ``days`` days."""

        cutoff = _now() - timedelta(days=days)
        count = await self._repository.resolve_stale(
            cutoff,
            {
                "resolved_at": _now().isoformat(),
                "resolved_via": "auto",
                "auto_resolved": True,
            },
        )
        logger.info("Auto-resolved %d stale conversations", count)
        return count

    async def dashboard(self, limit: int = 10) -> schemas.DashboardPayload:
        statuses = await self._repository.status_counts()
        sentiments = await self._repository.sentiment_counts()
        ratings = await self._repository.feedback_counts()
        average = await self._repository.average_response_time()
        conversations = await self._repository.recent_conversations(limit)

        labelled = sum(sentiments.values())
        distribution = {
            label.value: round(sentiments.get(label, 0) / labelled * 100) if labelled else 0
            for label in Sentiment
        }
        up, down = ratings.get(1, 0), ratings.get(-1, 0)
        stats = schemas.DashboardStats(
            totalConversations=sum(statuses.values()),
            activeConversations=statuses.get(ConversationStatus.ACTIVE, 0),
            resolvedConversations=statuses.get(ConversationStatus.RESOLVED, 0),
            escalatedConversations=statuses.get(ConversationStatus.ESCALATED, 0),
            avgResponseTime=round(average),
            sentimentDistribution=distribution,
            feedbackStats=schemas.FeedbackStats(thumbsUp=up, thumbsDown=down, total=up + down),
        )
        return schemas.DashboardPayload(stats=stats, conversations=conversations)
