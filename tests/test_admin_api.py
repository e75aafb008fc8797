import asyncio
import uuid
from datetime import timedelta

from supportdesk.conversations.models import ConversationStatus, MessageRole, Sentiment


def _seed(repo):
    async def run():
        convo = await repo.create_conversation("widget-1")
        question = await repo.add_message(
            convo.id, MessageRole.USER, "How do I reset?", {"sentiment": "neutral"}
        )
        answer = await repo.add_message(convo.id, MessageRole.ASSISTANT, "Hold reset.")
        await repo.update_sentiment(convo.id, Sentiment.POSITIVE)
        await repo.upsert_feedback(answer.id, 1, None)
        await repo.record_event(convo.id, "message_sent", {"response_time_ms": 250})
        return convo, question, answer

    return asyncio.run(run())


def test_dashboard_summarises_conversations(client, in_memory_store):
    convo, _, _ = _seed(in_memory_store)

    resp = client.get("/api/admin/dashboard", params={"limit": 5})

    assert resp.status_code == 200
    body = resp.json()
    stats = body["stats"]
    assert stats["totalConversations"] == 1
    assert stats["activeConversations"] == 1
    assert stats["avgResponseTime"] == 250
    assert stats["sentimentDistribution"] == {"positive": 100, "neutral": 0, "negative": 0}
    assert stats["feedbackStats"] == {"thumbsUp": 1, "thumbsDown": 0, "total": 1}
    summary = body["conversations"][0]
    assert summary["id"] == str(convo.id)
    assert summary["message_count"] == 2
    assert summary["last_message"] == "Hold reset."


def test_dashboard_on_empty_store(client):
    stats = client.get("/api/admin/dashboard").json()["stats"]
    assert stats["totalConversations"] == 0
    assert stats["avgResponseTime"] == 0
    assert stats["sentimentDistribution"] == {"positive": 0, "neutral": 0, "negative": 0}


def test_conversation_detail_includes_feedback(client, in_memory_store):
    convo, question, answer = _seed(in_memory_store)

    resp = client.get(f"/api/admin/conversations/{convo.id}")

    assert resp.status_code == 200
    body = resp.json()
    assert body["conversation"]["session_id"] == "widget-1"
    messages = {m["id"]: m for m in body["messages"]}
    assert messages[str(answer.id)]["feedback"] == 1
    assert messages[str(question.id)]["feedback"] is None


def test_conversation_detail_unknown(client):
    resp = client.get(f"/api/admin/conversations/{uuid.uuid4()}")
    assert resp.status_code == 404


def test_resolve_conversation(client, in_memory_store):
    convo, _, _ = _seed(in_memory_store)

    resp = client.post(f"/api/admin/conversations/{convo.id}/resolve")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "resolved"
    assert body["metadata"]["resolved_via"] == "admin"
    again = client.post(f"/api/admin/conversations/{convo.id}/resolve")
    assert again.json()["status"] == "resolved"
    resolved_events = [e for e in in_memory_store.events if e["event_type"] == "resolved"]
    assert len(resolved_events) == 1


def test_auto_resolve_endpoint(client, in_memory_store):
    convo, _, _ = _seed(in_memory_store)
    stored = in_memory_store._conversations[convo.id]
    in_memory_store._conversations[convo.id] = stored.model_copy(
        update={"updated_at": stored.updated_at - timedelta(days=30)}
    )

    resp = client.post("/api/admin/auto-resolve")

    assert resp.json() == {"resolved": 1}
    resolved = asyncio.run(in_memory_store.get_conversation(convo.id))
    assert resolved.status is ConversationStatus.RESOLVED
    assert resolved.metadata["auto_resolved"] is True
