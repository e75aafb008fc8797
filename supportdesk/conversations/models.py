"""Domain models used by the conversation and escalation services."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    AGENT = "agent"


class Sentiment(str, enum.Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value: Any) -> Sentiment | None:
        """Return the label for ``value`` or ``None`` when it is not one."""

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class EscalationReason(str, enum.Enum):
    EXPLICIT_REQUEST = "explicit_request"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    REPEATED_QUERY = "repeated_query"


@dataclass(frozen=True)
class EscalationDecision:
    """Verdict of :class:`~supportdesk.escalation.engine.EscalationEngine`.

    ``confidence`` is informational only; callers branch on
    ``should_escalate``.
    """

    should_escalate: bool
    reason: EscalationReason | None = None
    confidence: float = 0.0

    @classmethod
    def no_escalation(cls) -> EscalationDecision:
        return cls(False, None, 0.0)


@dataclass
class EscalationOutcome:
    """Result of applying an escalation to a conversation."""

    conversation_id: UUID
    reason: EscalationReason
    escalated: bool
    already_escalated: bool = False
    ticket_id: str | None = None
    ticket_url: str | None = None
    notified: bool = False


@dataclass
class AgentReply:
    """Reply from a human agent received through the ticketing webhook."""

    ticket_id: str
    body: str
    agent_name: str = "Support Agent"
    external_status: str | None = None
    resolved: bool = False
    source: str = "freshdesk"
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AgentReplyResult:
    conversation_id: UUID
    message_id: UUID
    resolved: bool
