"""Operator endpoints: dashboard, transcripts and resolution."""

from __future__ import annotations

import os
from uuid import UUID

from fastapi import APIRouter, Query

from ..conversations import schemas
from .deps import service_context

router = APIRouter(prefix="/api/admin", tags=["admin"])

AUTO_RESOLVE_DAYS = int(os.getenv("AUTO_RESOLVE_DAYS", "7"))


@router.get("/dashboard", response_model=schemas.DashboardPayload)
async def dashboard(limit: int = Query(10, ge=1, le=100)) -> schemas.DashboardPayload:
    async with service_context() as service:
        return await service.dashboard(limit=limit)


@router.get("/conversations/{conversation_id}", response_model=schemas.ConversationDetail)
async def conversation_detail(conversation_id: UUID) -> schemas.ConversationDetail:
    async with service_context() as service:
        return await service.conversation_detail(conversation_id)


@router.post("/conversations/{conversation_id}/resolve", response_model=schemas.Conversation)
async def resolve_conversation(conversation_id: UUID) -> schemas.Conversation:
    """Close a conversation on behalf of an operator."""
    async with service_context() as service:
        return await service.resolve(conversation_id, via="admin")


@router.post("/auto-resolve", response_model=schemas.AutoResolveResult)
async def auto_resolve() -> schemas.AutoResolveResult:
    """Resolve active conversations idle for ``AUTO_RESOLVE_DAYS`` days."""
    async with service_context() as service:
        resolved = await service.auto_resolve(AUTO_RESOLVE_DAYS)
    return schemas.AutoResolveResult(resolved=resolved)
