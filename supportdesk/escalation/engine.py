"""Escalation decision engine."""
from __future__ import annotations

import logging
from uuid import UUID

from ..conversations.models import EscalationDecision, EscalationReason
from ..conversations.repository import ConversationRepository
from . import triggers

logger = logging.getLogger(__name__)

EXPLICIT_REQUEST_CONFIDENCE = 1.0
NEGATIVE_SENTIMENT_CONFIDENCE = 0.9
REPEATED_QUERY_CONFIDENCE = 0.85


class EscalationEngine:
    """Evaluate triggers in priority order against stored history.

    The engine only reads from the repository. Acting on a positive
    decision is left to :meth:`ConversationService.escalate`.
    """

    def __init__(self, repository: ConversationRepository) -> None:
        self._repository = repository

    async def evaluate(self, conversation_id: UUID, message: str) -> EscalationDecision:
        if triggers.is_explicit_request(message):
            logger.info("Explicit escalation request in conversation %s", conversation_id)
            return EscalationDecision(
                True, EscalationReason.EXPLICIT_REQUEST, EXPLICIT_REQUEST_CONFIDENCE
            )
        if await self._negative_sentiment(conversation_id):
            logger.info("Negative sentiment streak in conversation %s", conversation_id)
            return EscalationDecision(
                True, EscalationReason.NEGATIVE_SENTIMENT, NEGATIVE_SENTIMENT_CONFIDENCE
            )
        if await self._repeated_query(conversation_id, message):
            logger.info("Repeated query in conversation %s", conversation_id)
            return EscalationDecision(
                True, EscalationReason.REPEATED_QUERY, REPEATED_QUERY_CONFIDENCE
            )
        return EscalationDecision.no_escalation()

    async def _negative_sentiment(self, conversation_id: UUID) -> bool:
        try:
            recent = await self._repository.recent_user_messages(
                conversation_id, triggers.SENTIMENT_LOOKBACK
            )
        except Exception:
            logger.exception("Sentiment history lookup failed for %s", conversation_id)
            return False
        return triggers.has_negative_streak([m.sentiment for m in recent])

    async def _repeated_query(self, conversation_id: UUID, message: str) -> bool:
        try:
            recent = await self._repository.recent_user_messages(
                conversation_id, triggers.REPETITION_LOOKBACK
            )
        except Exception:
            logger.exception("Query history lookup failed for %s", conversation_id)
            return False
        return triggers.is_repeated_query(message, [m.content for m in recent])
