"""Answer generation over retrieved context."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from typing import Optional

from langdetect import LangDetectException, detect
from openai import AsyncOpenAI

from .rag import NO_CONTEXT

logger = logging.getLogger(__name__)

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "30"))

FALLBACK_ANSWER = (
    "I'm sorry, I'm having trouble answering right now. "
    "Please try again in a moment or ask to speak with a support agent."
)
NO_DOCUMENTATION_ANSWER = (
    "I don't have specific documentation about that. "
    "Could you rephrase the question or ask about one of our products?"
)

BASE_SYSTEM_PROMPT = """You are the official support assistant for our products.
Use the documentation supplied with each question to answer.
State facts from the documentation directly, without disclaimers.
Only when the documentation is explicitly unavailable, say you do not have specific documentation.
Keep answers concise (under 100 words unless detail is needed) and format multi-step instructions as numbered lists."""


def build_user_prompt(context: str, question: str) -> str:
    if not context or context == NO_CONTEXT:
        return (
            "KNOWLEDGE BASE: No relevant documentation found for this query.\n\n"
            f"User Question: {question}\n\n"
            "Instructions: Since no relevant documentation was found, politely tell the "
            "user you don't have specific information. If the question is off-topic, "
            "redirect them to product-related questions."
        )
    return (
        f"KNOWLEDGE BASE (Official Documentation):\n{context}\n\n"
        f"User Question: {question}\n\n"
        "Instructions: Answer using ONLY the information from the knowledge base above, "
        "without mentioning that it comes from a knowledge base. Treat it as authoritative."
    )


def _language_instruction(question: str) -> str:
    lang = os.getenv("OPENAI_LANG")
    if not lang:
        try:
            lang = detect(question)
        except LangDetectException:
            lang = None
    return f"Reply in {lang}." if lang else "Reply in the same language as the question."


def build_system_prompt(question: str) -> str:
    custom_prompt = os.getenv("SYSTEM_PROMPT")
    system_prompt = f"{custom_prompt} {BASE_SYSTEM_PROMPT}" if custom_prompt else BASE_SYSTEM_PROMPT
    return f"{system_prompt} {_language_instruction(question)}"


def offline_answer(context: str) -> str:
    """Deterministic answer used when no LLM is configured."""

    if not context or context == NO_CONTEXT:
        return NO_DOCUMENTATION_ANSWER
    lines = [
        line for line in context.splitlines() if line.strip() and not line.startswith("=== ")
    ]
    return " ".join(lines)


async def _close_stream(completion) -> None:
    """Release the provider's HTTP response behind a streamed completion."""

    close = getattr(completion, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        logger.debug("Closing the completion stream failed: %s", exc)


class AnswerGenerator:
    """Stream answer tokens, falling back to canned text on failure."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: str = OPENAI_MODEL,
        timeout: float = GENERATION_TIMEOUT,
    ) -> None:
        self._client = client
        self._model = model
        self._timeout = timeout

    @classmethod
    def from_env(cls) -> AnswerGenerator:
        client = None
        if os.getenv("OPENAI_API_KEY"):
            client = AsyncOpenAI(base_url=os.getenv("OPENAI_BASE_URL") or None)
        return cls(client)

    async def stream(self, context: str, question: str) -> AsyncIterator[str]:
        if self._client is None:
            for word in offline_answer(context).split(" "):
                yield word + " "
            return

        emitted = False
        failed = False
        completion = None
        deadline = time.monotonic() + self._timeout
        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": build_system_prompt(question)},
                        {"role": "user", "content": build_user_prompt(context, question)},
                    ],
                    stream=True,
                ),
                self._timeout,
            )
            chunks = completion.__aiter__()
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), remaining)
                except StopAsyncIteration:
                    break
                if not chunk.choices:
                    continue
                token = getattr(chunk.choices[0].delta, "content", None)
                if token:
                    emitted = True
                    yield token
        except asyncio.TimeoutError:
            logger.warning("Answer generation timed out after %ss", self._timeout)
            failed = True
        except Exception as exc:
            logger.warning("Answer generation failed: %s", exc)
            failed = True
        finally:
            # Also runs when the client disconnects mid-stream.
            if completion is not None:
                await _close_stream(completion)
        if failed:
            yield ("\n\n" if emitted else "") + FALLBACK_ANSWER
