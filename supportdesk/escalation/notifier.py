"""Human handoff notifications: ticket creation and internal email."""
from __future__ import annotations

import html
import logging
import os
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Optional

from ..conversations import schemas
from ..conversations.models import EscalationReason, MessageRole
from ..integrations.freshdesk import (
    PRIORITY_HIGH,
    PRIORITY_MEDIUM,
    STATUS_OPEN,
    FreshdeskClient,
    TicketingError,
)
from ..integrations.mailer import EmailDeliveryError, ResendMailer

logger = logging.getLogger(__name__)

PUBLIC_APP_URL = os.getenv("PUBLIC_APP_URL", "http://localhost:8000").rstrip("/")
FRESHDESK_EMAIL = os.getenv("FRESHDESK_EMAIL")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL")

TICKET_TRANSCRIPT_LIMIT = 10
EMAIL_TRANSCRIPT_LIMIT = 5

_ROLE_LABELS = {
    MessageRole.USER: "Customer",
    MessageRole.ASSISTANT: "Bot",
    MessageRole.AGENT: "Agent",
}


def reason_label(reason: EscalationReason) -> str:
    return reason.value.replace("_", " ")


def admin_url(conversation_id) -> str:
    return f"{PUBLIC_APP_URL}/admin/conversation/{conversation_id}"


class HandoffNotifier:
    """Tell humans that a conversation needs them.

    Both steps are best effort: failures are logged and reported through the
    return value, never raised, so they cannot undo a committed escalation.
    """

    def __init__(
        self,
        ticketing: Optional[FreshdeskClient] = None,
        mailer: Optional[ResendMailer] = None,
        *,
        requester_email: Optional[str] = FRESHDESK_EMAIL,
        support_email: Optional[str] = SUPPORT_EMAIL,
    ) -> None:
        self.ticketing = ticketing
        self.mailer = mailer
        self.requester_email = requester_email
        self.support_email = support_email

    @classmethod
    def from_env(cls) -> HandoffNotifier:
        return cls(FreshdeskClient.from_env(), ResendMailer.from_env())

    async def open_ticket(
        self,
        conversation: schemas.Conversation,
        reason: EscalationReason,
        transcript: Sequence[schemas.Message],
    ) -> Optional[dict[str, str]]:
        """Create a ticket and return ``{"ticket_id", "ticket_url"}``."""

        if self.ticketing is None or not self.requester_email:
            logger.info("Ticketing not configured; skipping ticket for %s", conversation.id)
            return None
        try:
            ticket = await self.ticketing.create_ticket(
                subject=f"[Live Chat] {reason_label(reason)}",
                description=self._ticket_description(
                    conversation, reason, transcript[-TICKET_TRANSCRIPT_LIMIT:]
                ),
                email=self.requester_email,
                priority=PRIORITY_HIGH
                if reason is EscalationReason.EXPLICIT_REQUEST
                else PRIORITY_MEDIUM,
                status=STATUS_OPEN,
                tags=["chatbot", "live-chat", "escalation", reason.value],
            )
        except TicketingError:
            logger.exception("Ticket creation failed for conversation %s", conversation.id)
            return None
        ticket_id = str(ticket["id"])
        return {"ticket_id": ticket_id, "ticket_url": self.ticketing.ticket_url(ticket_id)}

    async def notify_team(
        self,
        conversation: schemas.Conversation,
        reason: EscalationReason,
        transcript: Sequence[schemas.Message],
        ticket: Optional[dict[str, str]] = None,
    ) -> bool:
        if self.mailer is None or not self.support_email:
            return False
        ticket_id = ticket["ticket_id"] if ticket else None
        subject = f"New Escalation: {reason_label(reason)}"
        if ticket_id:
            subject = f"New Escalation - Ticket #{ticket_id}: {reason_label(reason)}"
        body = self._email_body(
            conversation, reason, transcript[-EMAIL_TRANSCRIPT_LIMIT:], ticket
        )
        try:
            await self.mailer.send([self.support_email], subject, body)
        except EmailDeliveryError:
            logger.exception("Internal notification failed for conversation %s", conversation.id)
            return False
        return True

    # ------------------------------------------------------------------
    # Rendering

    @staticmethod
    def _transcript_text(messages: Sequence[schemas.Message]) -> str:
        if not messages:
            return "No messages"
        return "\n\n".join(
            f"{_ROLE_LABELS.get(m.role, m.role.value)}: {m.content}" for m in messages
        )

    def _ticket_description(
        self,
        conversation: schemas.Conversation,
        reason: EscalationReason,
        messages: Sequence[schemas.Message],
    ) -> str:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        return (
            "<h3>Live Chat Escalation</h3>"
            "<p><strong>Important:</strong> the customer is chatting live. "
            "Replies to this ticket appear in their chat window.</p>"
            "<h3>Escalation Details</h3>"
            f"<p><strong>Reason:</strong> {reason_label(reason)}</p>"
            f"<p><strong>Conversation ID:</strong> {conversation.id}</p>"
            f"<p><strong>Time:</strong> {now}</p>"
            "<h3>Conversation History</h3>"
            f"<pre>{html.escape(self._transcript_text(messages))}</pre>"
            f'<p><a href="{admin_url(conversation.id)}">View Full Conversation</a></p>'
            "<p>Reply to this ticket normally and mark it Resolved when done.</p>"
        )

    def _email_body(
        self,
        conversation: schemas.Conversation,
        reason: EscalationReason,
        messages: Sequence[schemas.Message],
        ticket: Optional[dict[str, str]],
    ) -> str:
        rows = "".join(
            f'<div class="message {m.role.value}"><strong>'
            f"{_ROLE_LABELS.get(m.role, m.role.value)}:</strong>"
            f"<p>{html.escape(m.content)}</p>"
            f"<small>{m.created_at.isoformat(timespec='seconds')}</small></div>"
            for m in messages
        )
        if ticket:
            link = ticket["ticket_url"]
            cta = "Reply in Freshdesk (appears in chat)"
            ticket_line = f"<p><strong>Freshdesk Ticket:</strong> #{ticket['ticket_id']}</p>"
        else:
            link = admin_url(conversation.id)
            cta = "View in Admin Dashboard"
            ticket_line = ""
        return (
            "<html><body>"
            "<h1>New Escalation - Support Needed</h1>"
            f"<p><strong>Reason:</strong> {reason_label(reason).upper()}</p>"
            f"{ticket_line}"
            f"<p><strong>Session ID:</strong> <code>{html.escape(conversation.session_id)}</code></p>"
            f"<p><strong>Conversation ID:</strong> <code>{conversation.id}</code></p>"
            "<h3>Recent Conversation:</h3>"
            f"{rows}"
            f'<a href="{link}">{cta}</a>'
            "</body></html>"
        )
