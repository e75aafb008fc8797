"""Inbound webhooks from the ticketing system."""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Mapping, Optional

from fastapi import APIRouter, HTTPException, Request

from ..conversations import schemas
from ..conversations.models import AgentReply
from ..integrations.freshdesk import FreshdeskClient, TicketingError
from .deps import service_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

FRESHDESK_WEBHOOK_SECRET = os.getenv("FRESHDESK_WEBHOOK_SECRET")
DEFAULT_AGENT_NAME = "Support Agent"

ticket_client = FreshdeskClient.from_env()

_BODY_FIELDS = ("reply_body", "note_body", "content", "body")


def _first(payload: Mapping[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _check_secret(request: Request) -> None:
    if not FRESHDESK_WEBHOOK_SECRET:
        return
    received = request.headers.get("x-freshdesk-secret") or ""
    if not hmac.compare_digest(received, FRESHDESK_WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/freshdesk", response_model=schemas.AgentReplyAccepted)
async def freshdesk_webhook(request: Request) -> schemas.AgentReplyAccepted:
    """Store a Freshdesk agent reply in the linked conversation.

    Freshdesk automations are configured with different placeholders, so
    several field names are accepted for the ticket id, body and author.
    When the payload carries no body the newest ticket conversation is
    fetched from the Freshdesk API instead.
    """
    _check_secret(request)
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    ticket_id = _first(payload, "ticket_id", "freshdesk_ticket_id")
    body = _first(payload, *_BODY_FIELDS)
    agent_name = _first(payload, "agent_name", "user_name")

    if ticket_id is not None and not body and ticket_client is not None:
        try:
            latest = await ticket_client.latest_reply(ticket_id)
        except TicketingError:
            logger.exception("Could not fetch conversations for ticket %s", ticket_id)
            latest = None
        if latest:
            body, author = latest
            agent_name = agent_name or author

    if ticket_id is None or not body:
        raise HTTPException(status_code=400, detail="ticket_id and reply body are required")

    reply = AgentReply(
        ticket_id=str(ticket_id),
        body=str(body),
        agent_name=str(agent_name or DEFAULT_AGENT_NAME),
        external_status=_first(payload, "ticket_status", "status"),
        resolved=_truthy(payload.get("is_resolved")),
        source=str(payload.get("source") or "freshdesk"),
    )
    async with service_context() as service:
        result = await service.ingest_agent_reply(reply)
    return schemas.AgentReplyAccepted(
        message_id=result.message_id, conversation_id=result.conversation_id
    )
