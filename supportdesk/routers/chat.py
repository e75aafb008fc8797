"""Customer chat endpoints: streamed answers and agent reply polling."""

import asyncio
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..conversations import schemas
from ..conversations.service import ConversationService
from ..core import db
from ..escalation import EscalationEngine, HandoffNotifier
from ..generation import FALLBACK_ANSWER, AnswerGenerator
from ..rag import RETRIEVAL_LIMIT, RETRIEVAL_THRESHOLD, Retriever, format_as_context
from ..ratelimit import CHAT_RATE_LIMIT, limiter
from ..sentiment import SentimentClassifier
from ..sse_utils import DONE_EVENT, buffer_words, format_event, token_event
from .deps import service_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

CHAT_MAX_MESSAGE_LENGTH = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "5000"))
SESSION_ID_MAX_LENGTH = int(os.getenv("SESSION_ID_MAX_LENGTH", "64"))
ESCALATION_MESSAGE = (
    "Your conversation has been escalated to a human agent. "
    "Someone will be with you shortly."
)

classifier = SentimentClassifier.from_env()
retriever = Retriever()
generator = AnswerGenerator.from_env()
notifier = HandoffNotifier.from_env()


def _validate(payload: schemas.ChatRequest) -> tuple[str, str]:
    for value in (payload.message, payload.sessionId):
        if value is not None and not isinstance(value, str):
            raise HTTPException(status_code=400, detail="Message and sessionId must be strings")
    message = (payload.message or "").strip()
    session_id = (payload.sessionId or "").strip()
    if not message or not session_id:
        raise HTTPException(status_code=400, detail="Message and sessionId are required")
    if len(message) > CHAT_MAX_MESSAGE_LENGTH:
        raise HTTPException(status_code=400, detail="Message too long")
    if len(session_id) > SESSION_ID_MAX_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid sessionId")
    return message, session_id


@router.post("/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat(request: Request, payload: schemas.ChatRequest):
    """Answer one user message, or hand the conversation to a human.

    Sentiment, the escalation decision and retrieval run concurrently. The
    decision only looks at earlier messages; the new message is stored
    afterwards together with its sentiment label.
    """
    message, session_id = _validate(payload)
    started = time.perf_counter()

    async with service_context(notifier) as service:
        conversation = await service.start_or_resume(session_id)
        engine = EscalationEngine(service.repository)
        sentiment, decision, docs = await asyncio.gather(
            classifier.classify(message),
            engine.evaluate(conversation.id, message),
            retriever.retrieve(message, RETRIEVAL_LIMIT, RETRIEVAL_THRESHOLD),
        )
        await service.record_user_message(conversation.id, message, sentiment)
        if decision.should_escalate:
            await service.escalate(conversation.id, decision.reason)
            return schemas.EscalationResponse(
                reason=decision.reason, message=ESCALATION_MESSAGE
            )

    context = format_as_context(docs)
    sources = [doc.as_source() for doc in docs]
    return StreamingResponse(
        _answer_stream(conversation.id, message, context, sources, started),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _answer_stream(
    conversation_id: UUID,
    question: str,
    context: str,
    sources: list[dict],
    started: float,
):
    parts: list[str] = []
    async for chunk in buffer_words(generator.stream(context, question)):
        parts.append(chunk)
        yield token_event(chunk)

    answer = "".join(parts).strip() or FALLBACK_ANSWER
    try:
        async with db.repository_scope() as repository:
            saved = await ConversationService(repository).record_assistant_message(
                conversation_id,
                answer,
                sources=sources,
                response_time_ms=int((time.perf_counter() - started) * 1000),
            )
    except Exception:
        logger.exception("Failed to store assistant reply for %s", conversation_id)
    else:
        yield format_event({"type": "message_id", "message_id": str(saved.id)})
    yield DONE_EVENT


_DECODED_OFFSET = re.compile(r"(\d{2}:\d{2}:\d{2}(?:\.\d+)?) (\d{2}:?\d{2})$")


def _parse_cursor(after: Optional[str]) -> Optional[datetime]:
    if not after:
        return None
    try:
        value = after.strip().replace("Z", "+00:00")
        # An unencoded "+" in the query string arrives as a space.
        value = _DECODED_OFFSET.sub(r"\1+\2", value)
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid 'after' timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@router.get("/chat/poll-agent", response_model=schemas.AgentPollResponse)
async def poll_agent(
    sessionId: Optional[str] = None, after: Optional[str] = None
) -> schemas.AgentPollResponse:
    """Return human agent replies posted after the ``after`` cursor."""
    if not sessionId:
        raise HTTPException(status_code=400, detail="sessionId is required")
    cursor = _parse_cursor(after)
    async with service_context() as service:
        return await service.poll_agent_messages(sessionId, cursor)
