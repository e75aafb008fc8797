"""Storage for conversations, messages, feedback and analytics events."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID, uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from . import schemas
from .models import ConversationStatus, MessageRole, Sentiment


class ConversationRepository(Protocol):
    """Read/write contract used by the conversation and escalation services."""

    async def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]: ...

    async def get_active_conversation(self, session_id: str) -> Optional[schemas.Conversation]: ...

    async def create_conversation(self, session_id: str) -> schemas.Conversation: ...

    async def find_by_ticket_id(self, ticket_id: str) -> Optional[schemas.Conversation]: ...

    async def latest_handoff_conversation(self, session_id: str) -> Optional[schemas.Conversation]: ...

    async def add_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message: ...

    async def get_message(self, message_id: UUID) -> Optional[schemas.Message]: ...

    async def list_messages(
        self,
        conversation_id: UUID,
        *,
        role: Optional[MessageRole] = None,
        after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[schemas.Message]: ...

    async def recent_user_messages(self, conversation_id: UUID, limit: int) -> List[schemas.Message]: ...

    async def mark_escalated(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool: ...

    async def mark_resolved(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool: ...

    async def merge_metadata(self, conversation_id: UUID, metadata: Dict[str, Any]) -> None: ...

    async def update_sentiment(self, conversation_id: UUID, sentiment: Sentiment) -> None: ...

    async def resolve_stale(self, before: datetime, metadata: Dict[str, Any]) -> int: ...

    async def record_event(
        self, conversation_id: UUID, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> None: ...

    async def upsert_feedback(
        self, message_id: UUID, rating: int, feedback_text: Optional[str]
    ) -> schemas.Feedback: ...

    async def feedback_for_messages(self, message_ids: Sequence[UUID]) -> Dict[UUID, int]: ...

    async def status_counts(self) -> Dict[ConversationStatus, int]: ...

    async def sentiment_counts(self) -> Dict[Sentiment, int]: ...

    async def feedback_counts(self) -> Dict[int, int]: ...

    async def average_response_time(self) -> float: ...

    async def recent_conversations(self, limit: int = 10) -> List[schemas.ConversationSummary]: ...

    async def commit(self) -> None: ...


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    def __init__(self, conn: psycopg.AsyncConnection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    async def commit(self) -> None:
        await self._conn.commit()

    async def _fetch_conversation(self, query: str, params: Sequence[Any]) -> Optional[schemas.Conversation]:
        async with self._cursor() as cur:
            await cur.execute(query, params)
            row = await cur.fetchone()
        if not row:
            return None
        return schemas.Conversation(**row)

    # Conversations ------------------------------------------------------------
    async def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]:
        return await self._fetch_conversation(
            "SELECT * FROM conversations WHERE id = %s", (conversation_id,)
        )

    async def get_active_conversation(self, session_id: str) -> Optional[schemas.Conversation]:
        return await self._fetch_conversation(
            """
            SELECT * FROM conversations
            WHERE session_id = %s AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (session_id,),
        )

    async def create_conversation(self, session_id: str) -> schemas.Conversation:
        # The partial unique index keeps a single active conversation per
        # session; a racing insert falls back to the winner's row.
        created = await self._fetch_conversation(
            """
            INSERT INTO conversations (session_id, status)
            VALUES (%s, 'active')
            ON CONFLICT (session_id) WHERE status = 'active' DO NOTHING
            RETURNING *
            """,
            (session_id,),
        )
        if created:
            return created
        existing = await self.get_active_conversation(session_id)
        if existing is None:
            raise RuntimeError(f"Failed to create conversation for session {session_id}")
        return existing

    async def find_by_ticket_id(self, ticket_id: str) -> Optional[schemas.Conversation]:
        return await self._fetch_conversation(
            """
            SELECT * FROM conversations
            WHERE metadata->>'ticket_id' = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (str(ticket_id),),
        )

    async def latest_handoff_conversation(self, session_id: str) -> Optional[schemas.Conversation]:
        return await self._fetch_conversation(
            """
            SELECT * FROM conversations
            WHERE session_id = %s AND status IN ('escalated', 'resolved')
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (session_id,),
        )

    async def mark_escalated(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE conversations
                SET status = 'escalated', metadata = metadata || %s, updated_at = now()
                WHERE id = %s AND status = 'active'
                RETURNING id
                """,
                (Jsonb(metadata), conversation_id),
            )
            row = await cur.fetchone()
        return row is not None

    async def mark_resolved(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE conversations
                SET status = 'resolved', metadata = metadata || %s, updated_at = now()
                WHERE id = %s AND status <> 'resolved'
                RETURNING id
                """,
                (Jsonb(metadata), conversation_id),
            )
            row = await cur.fetchone()
        return row is not None

    async def merge_metadata(self, conversation_id: UUID, metadata: Dict[str, Any]) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE conversations
                SET metadata = metadata || %s, updated_at = now()
                WHERE id = %s
                """,
                (Jsonb(metadata), conversation_id),
            )

    async def update_sentiment(self, conversation_id: UUID, sentiment: Sentiment) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                "UPDATE conversations SET sentiment = %s, updated_at = now() WHERE id = %s",
                (sentiment.value, conversation_id),
            )

    async def resolve_stale(self, before: datetime, metadata: Dict[str, Any]) -> int:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE conversations
                SET status = 'resolved', metadata = metadata || %s, updated_at = now()
                WHERE status = 'active' AND updated_at < %s
                """,
                (Jsonb(metadata), before),
            )
            return cur.rowcount

    # Messages -------------------------------------------------------------------
    async def add_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO messages (conversation_id, role, content, metadata)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (conversation_id, role.value, content, Jsonb(metadata or {})),
            )
            row = await cur.fetchone()
            await cur.execute(
                "UPDATE conversations SET updated_at = now() WHERE id = %s",
                (conversation_id,),
            )
        return schemas.Message(**row)

    async def get_message(self, message_id: UUID) -> Optional[schemas.Message]:
        async with self._cursor() as cur:
            await cur.execute("SELECT * FROM messages WHERE id = %s", (message_id,))
            row = await cur.fetchone()
        return schemas.Message(**row) if row else None

    async def list_messages(
        self,
        conversation_id: UUID,
        *,
        role: Optional[MessageRole] = None,
        after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[schemas.Message]:
        clauses = ["conversation_id = %s"]
        params: List[Any] = [conversation_id]
        if role is not None:
            clauses.append("role = %s")
            params.append(role.value)
        if after is not None:
            clauses.append("created_at > %s")
            params.append(after)
        query = (
            "SELECT * FROM messages WHERE "
            f"{' AND '.join(clauses)} ORDER BY created_at ASC"
        )
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        async with self._cursor() as cur:
            await cur.execute(query, params)
            rows = await cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    async def recent_user_messages(self, conversation_id: UUID, limit: int) -> List[schemas.Message]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s AND role = 'user'
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (conversation_id, limit),
            )
            rows = await cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    # Analytics & feedback -------------------------------------------------------
    async def record_event(
        self, conversation_id: UUID, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO chat_analytics (conversation_id, event_type, event_data)
                VALUES (%s, %s, %s)
                """,
                (conversation_id, event_type, Jsonb(data or {})),
            )

    async def upsert_feedback(
        self, message_id: UUID, rating: int, feedback_text: Optional[str]
    ) -> schemas.Feedback:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO message_feedback (message_id, rating, feedback_text)
                VALUES (%s, %s, %s)
                ON CONFLICT (message_id)
                DO UPDATE SET rating = EXCLUDED.rating, feedback_text = EXCLUDED.feedback_text
                RETURNING *
                """,
                (message_id, rating, feedback_text),
            )
            row = await cur.fetchone()
        return schemas.Feedback(**row)

    async def feedback_for_messages(self, message_ids: Sequence[UUID]) -> Dict[UUID, int]:
        if not message_ids:
            return {}
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT message_id, rating FROM message_feedback WHERE message_id = ANY(%s)",
                (list(message_ids),),
            )
            rows = await cur.fetchall()
        return {row["message_id"]: row["rating"] for row in rows}

    async def status_counts(self) -> Dict[ConversationStatus, int]:
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT status, COUNT(*) AS total FROM conversations GROUP BY status"
            )
            rows = await cur.fetchall()
        return {ConversationStatus(row["status"]): row["total"] for row in rows}

    async def sentiment_counts(self) -> Dict[Sentiment, int]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT sentiment, COUNT(*) AS total FROM conversations
                WHERE sentiment IS NOT NULL
                GROUP BY sentiment
                """
            )
            rows = await cur.fetchall()
        return {Sentiment(row["sentiment"]): row["total"] for row in rows}

    async def feedback_counts(self) -> Dict[int, int]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE rating = 1) AS up,
                    COUNT(*) FILTER (WHERE rating = -1) AS down
                FROM message_feedback
                """
            )
            row = await cur.fetchone() or {"up": 0, "down": 0}
        return {1: row["up"], -1: row["down"]}

    async def average_response_time(self) -> float:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT AVG((event_data->>'response_time_ms')::float) AS average
                FROM chat_analytics
                WHERE event_type = 'message_sent'
                  AND event_data->>'response_time_ms' IS NOT NULL
                """
            )
            row = await cur.fetchone()
        return float(row["average"]) if row and row["average"] is not None else 0.0

    async def recent_conversations(self, limit: int = 10) -> List[schemas.ConversationSummary]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT c.id, c.session_id, c.status, c.created_at,
                       COALESCE(c.sentiment, 'neutral') AS sentiment,
                       (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id)
                           AS message_count,
                       COALESCE(
                           (SELECT m.content FROM messages m
                            WHERE m.conversation_id = c.id
                            ORDER BY m.created_at DESC LIMIT 1),
                           'No messages'
                       ) AS last_message
                FROM conversations c
                ORDER BY c.created_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = await cur.fetchall()
        return [schemas.ConversationSummary(**row) for row in rows]


class InMemoryConversationRepository:
    """Process-local :class:`ConversationRepository` for tests and local runs."""

    def __init__(self) -> None:
        self._conversations: Dict[UUID, schemas.Conversation] = {}
        self._messages: Dict[UUID, schemas.Message] = {}
        self._feedback: Dict[UUID, schemas.Feedback] = {}
        self.events: List[Dict[str, Any]] = []
        self._last_tick: Optional[datetime] = None
        self.commits = 0

    async def commit(self) -> None:
        self.commits += 1

    def _now(self) -> datetime:
        # Strictly increasing so ordering by creation time is deterministic.
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def _touch(self, conversation_id: UUID, **updates: Any) -> None:
        current = self._conversations[conversation_id]
        self._conversations[conversation_id] = current.model_copy(
            update={**updates, "updated_at": self._now()}
        )

    @staticmethod
    def _newest_first(conversations: Iterable[schemas.Conversation]) -> List[schemas.Conversation]:
        return sorted(conversations, key=lambda c: c.created_at, reverse=True)

    # Conversations ------------------------------------------------------------
    async def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]:
        convo = self._conversations.get(conversation_id)
        return convo.model_copy(deep=True) if convo else None

    async def get_active_conversation(self, session_id: str) -> Optional[schemas.Conversation]:
        for convo in self._newest_first(self._conversations.values()):
            if convo.session_id == session_id and convo.status is ConversationStatus.ACTIVE:
                return convo.model_copy(deep=True)
        return None

    async def create_conversation(self, session_id: str) -> schemas.Conversation:
        existing = await self.get_active_conversation(session_id)
        if existing:
            return existing
        now = self._now()
        convo = schemas.Conversation(
            id=uuid4(),
            session_id=session_id,
            status=ConversationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self._conversations[convo.id] = convo
        return convo.model_copy(deep=True)

    async def find_by_ticket_id(self, ticket_id: str) -> Optional[schemas.Conversation]:
        for convo in self._newest_first(self._conversations.values()):
            if convo.ticket_id == str(ticket_id):
                return convo.model_copy(deep=True)
        return None

    async def latest_handoff_conversation(self, session_id: str) -> Optional[schemas.Conversation]:
        handoff = {ConversationStatus.ESCALATED, ConversationStatus.RESOLVED}
        for convo in self._newest_first(self._conversations.values()):
            if convo.session_id == session_id and convo.status in handoff:
                return convo.model_copy(deep=True)
        return None

    async def mark_escalated(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool:
        convo = self._conversations.get(conversation_id)
        if convo is None or convo.status is not ConversationStatus.ACTIVE:
            return False
        self._touch(
            conversation_id,
            status=ConversationStatus.ESCALATED,
            metadata={**convo.metadata, **metadata},
        )
        return True

    async def mark_resolved(self, conversation_id: UUID, metadata: Dict[str, Any]) -> bool:
        convo = self._conversations.get(conversation_id)
        if convo is None or convo.status is ConversationStatus.RESOLVED:
            return False
        self._touch(
            conversation_id,
            status=ConversationStatus.RESOLVED,
            metadata={**convo.metadata, **metadata},
        )
        return True

    async def merge_metadata(self, conversation_id: UUID, metadata: Dict[str, Any]) -> None:
        convo = self._conversations.get(conversation_id)
        if convo is not None:
            self._touch(conversation_id, metadata={**convo.metadata, **metadata})

    async def update_sentiment(self, conversation_id: UUID, sentiment: Sentiment) -> None:
        if conversation_id in self._conversations:
            self._touch(conversation_id, sentiment=sentiment)

    async def resolve_stale(self, before: datetime, metadata: Dict[str, Any]) -> int:
        stale = [
            convo.id
            for convo in self._conversations.values()
            if convo.status is ConversationStatus.ACTIVE and convo.updated_at < before
        ]
        for conversation_id in stale:
            await self.mark_resolved(conversation_id, metadata)
        return len(stale)

    # Messages -------------------------------------------------------------------
    async def add_message(
        self,
        conversation_id: UUID,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Message:
        if conversation_id not in self._conversations:
            raise KeyError(f"Conversation {conversation_id} does not exist")
        message = schemas.Message(
            id=uuid4(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            metadata=dict(metadata or {}),
            created_at=self._now(),
        )
        self._messages[message.id] = message
        self._touch(conversation_id)
        return message.model_copy(deep=True)

    async def get_message(self, message_id: UUID) -> Optional[schemas.Message]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_messages(
        self,
        conversation_id: UUID,
        *,
        role: Optional[MessageRole] = None,
        after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[schemas.Message]:
        messages = [
            m
            for m in self._messages.values()
            if m.conversation_id == conversation_id
            and (role is None or m.role is role)
            and (after is None or m.created_at > after)
        ]
        messages.sort(key=lambda m: m.created_at)
        if limit is not None:
            messages = messages[:limit]
        return [m.model_copy(deep=True) for m in messages]

    async def recent_user_messages(self, conversation_id: UUID, limit: int) -> List[schemas.Message]:
        messages = await self.list_messages(conversation_id, role=MessageRole.USER)
        return list(reversed(messages))[:limit]

    # Analytics & feedback -------------------------------------------------------
    async def record_event(
        self, conversation_id: UUID, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        self.events.append(
            {
                "conversation_id": conversation_id,
                "event_type": event_type,
                "event_data": dict(data or {}),
                "created_at": self._now(),
            }
        )

    async def upsert_feedback(
        self, message_id: UUID, rating: int, feedback_text: Optional[str]
    ) -> schemas.Feedback:
        existing = self._feedback.get(message_id)
        feedback = schemas.Feedback(
            id=existing.id if existing else uuid4(),
            message_id=message_id,
            rating=rating,
            feedback_text=feedback_text,
            created_at=existing.created_at if existing else self._now(),
        )
        self._feedback[message_id] = feedback
        return feedback

    async def feedback_for_messages(self, message_ids: Sequence[UUID]) -> Dict[UUID, int]:
        return {
            message_id: self._feedback[message_id].rating
            for message_id in message_ids
            if message_id in self._feedback
        }

    async def status_counts(self) -> Dict[ConversationStatus, int]:
        counts: Dict[ConversationStatus, int] = {}
        for convo in self._conversations.values():
            counts[convo.status] = counts.get(convo.status, 0) + 1
        return counts

    async def sentiment_counts(self) -> Dict[Sentiment, int]:
        counts: Dict[Sentiment, int] = {}
        for convo in self._conversations.values():
            if convo.sentiment is not None:
                counts[convo.sentiment] = counts.get(convo.sentiment, 0) + 1
        return counts

    async def feedback_counts(self) -> Dict[int, int]:
        ratings = [fb.rating for fb in self._feedback.values()]
        return {1: ratings.count(1), -1: ratings.count(-1)}

    async def average_response_time(self) -> float:
        times = [
            float(event["event_data"]["response_time_ms"])
            for event in self.events
            if event["event_type"] == "message_sent"
            and event["event_data"].get("response_time_ms") is not None
        ]
        return sum(times) / len(times) if times else 0.0

    async def recent_conversations(self, limit: int = 10) -> List[schemas.ConversationSummary]:
        summaries: List[schemas.ConversationSummary] = []
        for convo in self._newest_first(self._conversations.values())[:limit]:
            messages = await self.list_messages(convo.id)
            summaries.append(
                schemas.ConversationSummary(
                    id=convo.id,
                    session_id=convo.session_id,
                    status=convo.status,
                    sentiment=convo.sentiment or Sentiment.NEUTRAL,
                    created_at=convo.created_at,
                    message_count=len(messages),
                    last_message=messages[-1].content if messages else "No messages",
                )
            )
        return summaries
