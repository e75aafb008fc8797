"""Pydantic schemas for conversation storage and the public APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from .models import ConversationStatus, EscalationReason, MessageRole, Sentiment


class Conversation(BaseModel):
    id: UUID
    session_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    sentiment: Sentiment | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def ticket_id(self) -> str | None:
        value = self.metadata.get("ticket_id")
        return str(value) if value is not None else None


class Message(BaseModel):
    id: UUID
    conversation_id: UUID
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def sentiment(self) -> Sentiment | None:
        return Sentiment.parse(self.metadata.get("sentiment"))


class Feedback(BaseModel):
    id: UUID
    message_id: UUID
    rating: Literal[1, -1]
    feedback_text: str | None = None
    created_at: datetime


# ----------------------------------------------------------------------
# Request / response payloads


class ChatRequest(BaseModel):
    # Loosely typed so malformed input is rejected with 400 by the router.
    message: Any = None
    sessionId: Any = None


class EscalationResponse(BaseModel):
    escalated: bool = True
    reason: EscalationReason
    message: str


class FeedbackIn(BaseModel):
    messageId: Any = None
    rating: Any = None
    feedbackText: str | None = None


class FeedbackSaved(BaseModel):
    success: bool = True
    message: str = "Feedback saved successfully"


class AgentMessage(BaseModel):
    id: UUID
    role: MessageRole
    content: str
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentPollResponse(BaseModel):
    hasNewMessages: bool = False
    isResolved: bool = False
    conversationId: UUID | None = None
    messages: list[AgentMessage] = Field(default_factory=list)


class AgentReplyAccepted(BaseModel):
    success: bool = True
    message_id: UUID
    conversation_id: UUID


# ----------------------------------------------------------------------
# Admin views


class ConversationSummary(BaseModel):
    id: UUID
    session_id: str
    status: ConversationStatus
    sentiment: Sentiment = Sentiment.NEUTRAL
    created_at: datetime
    message_count: int = 0
    last_message: str = "No messages"


class MessageWithFeedback(Message):
    feedback: int | None = None


class ConversationDetail(BaseModel):
    conversation: Conversation
    messages: list[MessageWithFeedback] = Field(default_factory=list)


class FeedbackStats(BaseModel):
    thumbsUp: int = 0
    thumbsDown: int = 0
    total: int = 0


class DashboardStats(BaseModel):
    totalConversations: int = 0
    activeConversations: int = 0
    resolvedConversations: int = 0
    escalatedConversations: int = 0
    avgResponseTime: float = 0.0
    sentimentDistribution: dict[str, int] = Field(default_factory=dict)
    feedbackStats: FeedbackStats = Field(default_factory=FeedbackStats)


class DashboardPayload(BaseModel):
    stats: DashboardStats
    conversations: list[ConversationSummary]


class AutoResolveResult(BaseModel):
    resolved: int
