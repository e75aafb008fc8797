import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from conftest import RecordingNotifier

from supportdesk.conversations.models import (
    AgentReply,
    ConversationStatus,
    EscalationReason,
    MessageRole,
    Sentiment,
)
from supportdesk.conversations.repository import InMemoryConversationRepository
from supportdesk.conversations.service import (
    ConversationNotFoundError,
    ConversationService,
    MessageNotFoundError,
)


def _service(notifier=None):
    repo = InMemoryConversationRepository()
    return repo, ConversationService(repo, notifier=notifier)


def test_start_or_resume_reuses_active_conversation():
    repo, service = _service()

    async def _run():
        first = await service.start_or_resume("s1")
        second = await service.start_or_resume("s1")
        other = await service.start_or_resume("s2")
        return first, second, other

    first, second, other = asyncio.run(_run())

    assert first.id == second.id
    assert other.id != first.id


def test_record_user_message_updates_rollup():
    repo, service = _service()

    async def _run():
        convo = await service.start_or_resume("s1")
        await service.record_user_message(convo.id, "awful", Sentiment.NEGATIVE)
        await service.record_user_message(convo.id, "still awful", Sentiment.NEGATIVE)
        await service.record_user_message(convo.id, "ok thanks", Sentiment.POSITIVE)
        return await repo.get_conversation(convo.id)

    convo = asyncio.run(_run())

    assert convo.sentiment is Sentiment.NEGATIVE


def test_escalate_twice_notifies_once():
    notifier = RecordingNotifier()
    repo, service = _service(notifier)

    async def _run():
        convo = await service.start_or_resume("s1")
        first = await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        second = await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        return convo, first, second

    convo, first, second = asyncio.run(_run())

    assert first.escalated is True
    assert second.escalated is False
    assert second.already_escalated is True
    assert len(notifier.tickets) == 1
    assert len(notifier.emails) == 1
    assert [e["event_type"] for e in repo.events] == ["escalated"]


def test_concurrent_escalations_notify_once():
    notifier = RecordingNotifier()
    repo, service = _service(notifier)

    async def _run():
        convo = await service.start_or_resume("s1")
        return await asyncio.gather(
            service.escalate(convo.id, EscalationReason.REPEATED_QUERY),
            service.escalate(convo.id, EscalationReason.REPEATED_QUERY),
        )

    outcomes = asyncio.run(_run())

    assert sorted(o.escalated for o in outcomes) == [False, True]
    assert len(notifier.tickets) == 1


def test_escalation_records_metadata_and_ticket():
    repo, service = _service(RecordingNotifier(ticket_id="555"))

    async def _run():
        convo = await service.start_or_resume("s1")
        outcome = await service.escalate(convo.id, EscalationReason.NEGATIVE_SENTIMENT)
        return outcome, await repo.get_conversation(convo.id)

    outcome, convo = asyncio.run(_run())

    assert convo.status is ConversationStatus.ESCALATED
    assert convo.metadata["escalation_reason"] == "negative_sentiment"
    assert "escalated_at" in convo.metadata
    assert convo.metadata["ticket_id"] == "555"
    assert outcome.ticket_url.endswith("/555")
    assert outcome.notified is True


def test_ticket_failure_keeps_escalation():
    notifier = RecordingNotifier(fail_ticket=True)
    repo, service = _service(notifier)

    async def _run():
        convo = await service.start_or_resume("s1")
        outcome = await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        return outcome, await repo.get_conversation(convo.id)

    outcome, convo = asyncio.run(_run())

    assert outcome.escalated is True
    assert outcome.ticket_id is None
    assert convo.status is ConversationStatus.ESCALATED
    assert "ticket_id" not in convo.metadata
    # the team is still told, with a link to the admin view
    assert notifier.emails[0]["ticket"] is None


def test_notifier_exception_does_not_propagate():
    class ExplodingNotifier(RecordingNotifier):
        async def notify_team(self, *args, **kwargs):
            raise RuntimeError("smtp down")

    repo, service = _service(ExplodingNotifier())

    async def _run():
        convo = await service.start_or_resume("s1")
        outcome = await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        return outcome, await repo.get_conversation(convo.id)

    outcome, convo = asyncio.run(_run())

    assert outcome.escalated is True
    assert convo.status is ConversationStatus.ESCALATED


def test_escalating_resolved_conversation_is_a_no_op():
    notifier = RecordingNotifier()
    repo, service = _service(notifier)

    async def _run():
        convo = await service.start_or_resume("s1")
        await service.resolve(convo.id)
        return await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)

    outcome = asyncio.run(_run())

    assert outcome.escalated is False
    assert outcome.already_escalated is False
    assert notifier.tickets == []


def test_escalate_unknown_conversation_raises():
    _, service = _service()
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(service.escalate(uuid4(), EscalationReason.EXPLICIT_REQUEST))


def test_ticket_round_trip_to_agent_reply():
    repo, service = _service(RecordingNotifier(ticket_id="777"))

    async def _run():
        convo = await service.start_or_resume("s1")
        await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        result = await service.ingest_agent_reply(
            AgentReply(ticket_id="777", body="<p>Hi, I'm <b>Dana</b>.</p>", agent_name="Dana")
        )
        messages = await repo.list_messages(convo.id, role=MessageRole.AGENT)
        return convo, result, messages

    convo, result, messages = asyncio.run(_run())

    assert result.conversation_id == convo.id
    assert result.resolved is False
    assert [m.content for m in messages] == ["Hi, I'm Dana."]
    assert messages[0].metadata["agent_name"] == "Dana"
    assert messages[0].metadata["ticket_id"] == "777"
    assert messages[0].metadata["source"] == "freshdesk"


def test_agent_reply_for_unknown_ticket_creates_nothing():
    repo, service = _service()

    async def _run():
        convo = await service.start_or_resume("s1")
        with pytest.raises(ConversationNotFoundError):
            await service.ingest_agent_reply(AgentReply(ticket_id="404", body="hello"))
        return await repo.list_messages(convo.id)

    assert asyncio.run(_run()) == []


def test_empty_agent_reply_is_rejected():
    _, service = _service()
    with pytest.raises(ValueError):
        asyncio.run(service.ingest_agent_reply(AgentReply(ticket_id="1", body="<div> </div>")))


@pytest.mark.parametrize("status", ["Resolved", "Closed", "4", "5"])
def test_closed_ticket_status_resolves_conversation(status):
    repo, service = _service(RecordingNotifier(ticket_id="900"))

    async def _run():
        convo = await service.start_or_resume("s1")
        await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        result = await service.ingest_agent_reply(
            AgentReply(ticket_id="900", body="All sorted!", external_status=status)
        )
        return result, await repo.get_conversation(convo.id)

    result, convo = asyncio.run(_run())

    assert result.resolved is True
    assert convo.status is ConversationStatus.RESOLVED
    assert convo.metadata["resolved_via"] == "freshdesk"
    assert "resolved_at" in convo.metadata
    assert "escalated_at" in convo.metadata


def test_poll_returns_agent_messages_after_cursor_in_order():
    repo, service = _service(RecordingNotifier(ticket_id="42"))

    async def _run():
        convo = await service.start_or_resume("s1")
        await service.record_user_message(convo.id, "help me", Sentiment.NEUTRAL)
        await service.escalate(convo.id, EscalationReason.EXPLICIT_REQUEST)
        first = await service.ingest_agent_reply(AgentReply(ticket_id="42", body="first"))
        await service.ingest_agent_reply(AgentReply(ticket_id="42", body="second"))
        await service.ingest_agent_reply(AgentReply(ticket_id="42", body="third"))
        first_msg = await repo.get_message(first.message_id)
        everything = await service.poll_agent_messages("s1")
        newer = await service.poll_agent_messages("s1", after=first_msg.created_at)
        return everything, newer

    everything, newer = asyncio.run(_run())

    assert [m.content for m in everything.messages] == ["first", "second", "third"]
    assert [m.content for m in newer.messages] == ["second", "third"]
    assert newer.hasNewMessages is True
    assert newer.isResolved is False


def test_poll_without_handoff_returns_empty():
    _, service = _service()

    async def _run():
        await service.start_or_resume("s1")
        return await service.poll_agent_messages("s1")

    result = asyncio.run(_run())

    assert result.hasNewMessages is False
    assert result.isResolved is False
    assert result.messages == []
    assert result.conversationId is None


def test_feedback_upserts_per_message():
    repo, service = _service()

    async def _run():
        convo = await service.start_or_resume("s1")
        message = await service.record_assistant_message(convo.id, "Try turning it off and on.")
        await service.submit_feedback(message.id, 1)
        await service.submit_feedback(message.id, -1, "did not help")
        return message, await repo.feedback_for_messages([message.id])

    message, ratings = asyncio.run(_run())

    assert ratings == {message.id: -1}


def test_feedback_validation():
    _, service = _service()
    with pytest.raises(ValueError):
        asyncio.run(service.submit_feedback(uuid4(), 5))
    with pytest.raises(MessageNotFoundError):
        asyncio.run(service.submit_feedback(uuid4(), 1))


def test_auto_resolve_only_touches_stale_active_conversations():
    repo, service = _service()

    async def _run():
        stale = await service.start_or_resume("old")
        fresh = await service.start_or_resume("new")
        old_time = datetime.now(timezone.utc) - timedelta(days=10)
        repo._conversations[stale.id] = repo._conversations[stale.id].model_copy(
            update={"updated_at": old_time}
        )
        count = await service.auto_resolve(7)
        return count, await repo.get_conversation(stale.id), await repo.get_conversation(fresh.id)

    count, stale, fresh = asyncio.run(_run())

    assert count == 1
    assert stale.status is ConversationStatus.RESOLVED
    assert stale.metadata["auto_resolved"] is True
    assert fresh.status is ConversationStatus.ACTIVE


def test_dashboard_aggregates_counts():
    repo, service = _service(RecordingNotifier())

    async def _run():
        a = await service.start_or_resume("a")
        b = await service.start_or_resume("b")
        await service.record_user_message(a.id, "great", Sentiment.POSITIVE)
        await service.record_user_message(b.id, "bad", Sentiment.NEGATIVE)
        reply = await service.record_assistant_message(a.id, "Glad to help", response_time_ms=300)
        await service.record_assistant_message(b.id, "Sorry", response_time_ms=500)
        await service.submit_feedback(reply.id, 1)
        await service.escalate(b.id, EscalationReason.NEGATIVE_SENTIMENT)
        return await service.dashboard()

    payload = asyncio.run(_run())

    assert payload.stats.totalConversations == 2
    assert payload.stats.activeConversations == 1
    assert payload.stats.escalatedConversations == 1
    assert payload.stats.avgResponseTime == 400
    assert payload.stats.sentimentDistribution == {"positive": 50, "neutral": 0, "negative": 50}
    assert payload.stats.feedbackStats.thumbsUp == 1
    assert payload.stats.feedbackStats.total == 1
    assert payload.conversations[0].session_id == "b"
    assert payload.conversations[0].message_count == 2
    assert payload.conversations[0].last_message == "Sorry"
