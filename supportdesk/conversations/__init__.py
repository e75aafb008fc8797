"""Conversation storage, lifecycle services and schemas."""

from . import schemas
from .models import (
    AgentReply,
    ConversationStatus,
    EscalationDecision,
    EscalationReason,
    MessageRole,
    Sentiment,
)
from .repository import InMemoryConversationRepository, PostgresConversationRepository
from .service import ConversationNotFoundError, ConversationService, MessageNotFoundError

__all__ = [
    "AgentReply",
    "ConversationNotFoundError",
    "ConversationService",
    "ConversationStatus",
    "EscalationDecision",
    "EscalationReason",
    "InMemoryConversationRepository",
    "MessageNotFoundError",
    "MessageRole",
    "PostgresConversationRepository",
    "Sentiment",
    "schemas",
]
