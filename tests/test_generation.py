import asyncio
from types import SimpleNamespace

from supportdesk import generation
from supportdesk.generation import (
    FALLBACK_ANSWER,
    NO_DOCUMENTATION_ANSWER,
    AnswerGenerator,
    build_system_prompt,
    build_user_prompt,
    offline_answer,
)
from supportdesk.rag import NO_CONTEXT

CONTEXT = "=== DOCUMENT 1: HUB_MANUAL ===\n\nHold the reset button for 10 seconds."


def _collect(generator, context, question):
    async def run():
        return [token async for token in generator.stream(context, question)]

    return asyncio.run(run())


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeStream:
    def __init__(self, tokens, error=None):
        self.tokens = list(tokens)
        self.error = error

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.tokens:
            return _chunk(self.tokens.pop(0))
        if self.error:
            raise self.error
        raise StopAsyncIteration


def _client(stream=None, error=None):
    async def create(**kwargs):
        if error:
            raise error
        return stream

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def test_offline_stream_echoes_context_body():
    tokens = _collect(AnswerGenerator(None), CONTEXT, "How do I reset?")
    assert "".join(tokens).strip() == "Hold the reset button for 10 seconds."
    assert all(token.endswith(" ") for token in tokens)


def test_offline_answer_without_context():
    assert offline_answer(NO_CONTEXT) == NO_DOCUMENTATION_ANSWER


def test_stream_yields_model_tokens():
    generator = AnswerGenerator(_client(FakeStream(["Hold ", "the ", "button."])))
    assert _collect(generator, CONTEXT, "How?") == ["Hold ", "the ", "button."]


def test_stream_falls_back_on_request_error():
    generator = AnswerGenerator(_client(error=RuntimeError("provider down")))
    assert _collect(generator, CONTEXT, "How?") == [FALLBACK_ANSWER]


def test_stream_appends_fallback_after_partial_output():
    generator = AnswerGenerator(
        _client(FakeStream(["Hold "], error=RuntimeError("connection reset")))
    )
    assert _collect(generator, CONTEXT, "How?") == ["Hold ", "\n\n" + FALLBACK_ANSWER]


def test_user_prompt_includes_context_and_question():
    prompt = build_user_prompt(CONTEXT, "How do I reset?")
    assert CONTEXT in prompt
    assert "User Question: How do I reset?" in prompt


def test_user_prompt_without_context_declines():
    prompt = build_user_prompt(NO_CONTEXT, "What is the weather?")
    assert "No relevant documentation found" in prompt
    assert NO_CONTEXT not in prompt


def test_system_prompt_honours_overrides(monkeypatch):
    monkeypatch.setenv("SYSTEM_PROMPT", "You work for Acme.")
    monkeypatch.setenv("OPENAI_LANG", "pt")
    prompt = build_system_prompt("How do I reset?")
    assert prompt.startswith("You work for Acme. ")
    assert prompt.endswith("Reply in pt.")


def test_system_prompt_detects_language(monkeypatch):
    monkeypatch.delenv("SYSTEM_PROMPT", raising=False)
    monkeypatch.delenv("OPENAI_LANG", raising=False)
    monkeypatch.setattr(generation, "detect", lambda text: "es")
    assert build_system_prompt("¿Cómo reinicio el equipo?").endswith("Reply in es.")


class StallingStream:
    """Emits ``tokens`` and then never produces another chunk."""

    def __init__(self, tokens=()):
        self.tokens = list(tokens)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.tokens:
            return _chunk(self.tokens.pop(0))
        await asyncio.sleep(10)
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


def test_stream_times_out_to_fallback_and_closes_provider_stream():
    stream = StallingStream()
    generator = AnswerGenerator(_client(stream), timeout=0.1)

    assert _collect(generator, CONTEXT, "How?") == [FALLBACK_ANSWER]
    assert stream.closed is True


def test_stream_timeout_after_partial_output_appends_fallback():
    stream = StallingStream(["Hold ", "the "])
    generator = AnswerGenerator(_client(stream), timeout=0.1)

    assert _collect(generator, CONTEXT, "How?") == ["Hold ", "the ", "\n\n" + FALLBACK_ANSWER]
    assert stream.closed is True


def test_stream_closes_provider_stream_when_consumer_stops_early():
    stream = StallingStream(["Hold ", "the "])
    generator = AnswerGenerator(_client(stream))

    async def run():
        tokens = generator.stream(CONTEXT, "How?")
        first = await tokens.__anext__()
        await tokens.aclose()
        return first

    assert asyncio.run(run()) == "Hold "
    assert stream.closed is True


def test_stream_closes_provider_stream_after_error():
    stream = FakeStream(["Hold "], error=RuntimeError("connection reset"))
    closed = []

    async def close():
        closed.append(True)

    stream.close = close
    generator = AnswerGenerator(_client(stream))

    _collect(generator, CONTEXT, "How?")
    assert closed == [True]
