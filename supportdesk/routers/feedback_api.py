"""Thumbs up/down feedback on assistant answers."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException

from ..conversations import schemas
from .deps import service_context

router = APIRouter(prefix="/api", tags=["feedback"])

logger = logging.getLogger(__name__)


def _parse_message_id(value: Any) -> UUID:
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid messageId") from exc


@router.post("/feedback", response_model=schemas.FeedbackSaved)
async def submit_feedback(payload: schemas.FeedbackIn) -> schemas.FeedbackSaved:
    """Record one rating per message; a later rating replaces the earlier one."""
    if payload.messageId in (None, "") or payload.rating is None:
        raise HTTPException(status_code=400, detail="messageId and rating are required")
    message_id = _parse_message_id(payload.messageId)
    # bool is an int subclass; True must not count as a thumbs up.
    if isinstance(payload.rating, bool) or payload.rating not in (1, -1):
        raise HTTPException(status_code=400, detail="Rating must be 1 or -1")
    async with service_context() as service:
        await service.submit_feedback(message_id, int(payload.rating), payload.feedbackText)
    logger.info("Feedback %+d stored for message %s", payload.rating, message_id)
    return schemas.FeedbackSaved()
