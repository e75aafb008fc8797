"""Request-scoped service construction shared by the API routers."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import HTTPException

from ..conversations.service import (
    ConversationNotFoundError,
    ConversationService,
    MessageNotFoundError,
)
from ..core import db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def service_context(notifier=None) -> AsyncIterator[ConversationService]:
    """Yield a service over a fresh transaction and map domain errors to HTTP."""

    try:
        async with db.repository_scope() as repository:
            yield ConversationService(repository, notifier=notifier)
    except (ConversationNotFoundError, MessageNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Request failed while talking to the conversation store")
        raise HTTPException(status_code=500, detail="Internal server error") from exc
