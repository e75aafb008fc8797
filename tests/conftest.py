import json
import os
import pathlib
import sys
import tempfile
import types
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

# Keep importing the app from writing log files into the working tree.
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="supportdesk-logs-"))

from supportdesk.app_logging import init_logging
from supportdesk.conversations.models import Sentiment
from supportdesk.conversations.repository import InMemoryConversationRepository
from supportdesk.core import db
from supportdesk.generation import AnswerGenerator
from supportdesk.rag import RetrievedDocument


class RecordingNotifier:
    """Stands in for ``HandoffNotifier`` and records every dispatch."""

    def __init__(self, ticket_id: str | None = "101", fail_ticket: bool = False):
        self.ticket_id = ticket_id
        self.fail_ticket = fail_ticket
        self.tickets: list[dict] = []
        self.emails: list[dict] = []

    async def open_ticket(self, conversation, reason, transcript):
        self.tickets.append(
            {"conversation_id": conversation.id, "reason": reason, "transcript": list(transcript)}
        )
        if self.fail_ticket or self.ticket_id is None:
            return None
        return {
            "ticket_id": self.ticket_id,
            "ticket_url": f"https://example.freshdesk.com/a/tickets/{self.ticket_id}",
        }

    async def notify_team(self, conversation, reason, transcript, ticket=None):
        self.emails.append({"conversation_id": conversation.id, "reason": reason, "ticket": ticket})
        return True


class ScriptedClassifier:
    """Returns ``Sentiment`` labels keyed by message text (neutral otherwise)."""

    def __init__(self, labels: dict[str, Sentiment] | None = None):
        self.labels = dict(labels or {})
        self.calls: list[str] = []

    async def classify(self, text: str) -> Sentiment:
        self.calls.append(text)
        return self.labels.get(text, Sentiment.NEUTRAL)


class StaticRetriever:
    def __init__(self, docs: list[RetrievedDocument] | None = None):
        self.docs = list(docs or [])
        self.queries: list[tuple[str, int, float]] = []

    async def retrieve(self, query: str, limit: int = 5, threshold: float = 0.3):
        self.queries.append((query, limit, threshold))
        return list(self.docs)


def parse_sse(text: str) -> list:
    """Decode ``data:`` events from an event-stream body."""

    events = []
    for block in text.split("\n\n"):
        block = block.strip()
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


@pytest.fixture
def repository() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def in_memory_store(monkeypatch, repository):
    """Route every ``repository_scope`` to the shared in-memory repository."""

    @asynccontextmanager
    async def _scope():
        yield repository

    monkeypatch.setattr(db, "repository_scope", _scope)
    return repository


@pytest.fixture
def chat_stubs(monkeypatch):
    from supportdesk.routers import chat

    stubs = types.SimpleNamespace(
        classifier=ScriptedClassifier(),
        retriever=StaticRetriever(
            [
                RetrievedDocument(
                    content="Hold the reset button for 10 seconds.",
                    source_id="hub_manual.txt",
                    similarity=0.82,
                    title="Hub manual",
                )
            ]
        ),
        generator=AnswerGenerator(None),
        notifier=RecordingNotifier(),
    )
    monkeypatch.setattr(chat, "classifier", stubs.classifier)
    monkeypatch.setattr(chat, "retriever", stubs.retriever)
    monkeypatch.setattr(chat, "generator", stubs.generator)
    monkeypatch.setattr(chat, "notifier", stubs.notifier)
    return stubs


@pytest.fixture
def client(in_memory_store, chat_stubs):
    from supportdesk.main import app
    from supportdesk.ratelimit import limiter

    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
