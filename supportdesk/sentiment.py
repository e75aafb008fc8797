"""Per-message sentiment classification and conversation rollup."""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Optional

from openai import AsyncOpenAI, RateLimitError

from .conversations.models import Sentiment

logger = logging.getLogger(__name__)

SENTIMENT_MODEL = os.getenv("SENTIMENT_MODEL", "gpt-4o-mini")
SENTIMENT_TIMEOUT = float(os.getenv("SENTIMENT_TIMEOUT", "10"))
SENTIMENT_RETRIES = 3

SENTIMENT_PROMPT = """Analyze sentiment. Respond with ONE WORD only: positive, neutral, or negative

POSITIVE (gratitude, satisfaction, appreciation):
- "This is great, thank you!"
- "I really appreciate this"
- "Perfect!"

NEUTRAL (questions, requests):
- "How do I reset?"
- "I need help"
- "What are the specs?"

NEGATIVE (frustration, disappointment, anger):
- "This is frustrating"
- "Doesn't work"
- "I'm disappointed"

Gratitude and appreciation = POSITIVE, not neutral."""

# Keyword lexicon used when no LLM is configured.
_POSITIVE = {"great", "good", "awesome", "love", "thanks", "thank you", "helpful", "perfect", "appreciate"}
_NEGATIVE = {
    "bad",
    "terrible",
    "angry",
    "hate",
    "upset",
    "frustrat",
    "disappoint",
    "useless",
    "broken",
    "doesn't work",
    "not working",
    "sucks",
}


def parse_label(raw: Optional[str]) -> Sentiment:
    """Map free-form model output onto a label; anything unclear is neutral."""

    lowered = (raw or "").strip().lower()
    if "positive" in lowered:
        return Sentiment.POSITIVE
    if "negative" in lowered:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def lexicon_sentiment(text: str) -> Sentiment:
    lowered = (text or "").lower()
    positives = sum(1 for token in _POSITIVE if token in lowered)
    negatives = sum(1 for token in _NEGATIVE if token in lowered)
    if negatives > positives:
        return Sentiment.NEGATIVE
    if positives > negatives:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def _is_rate_limited(exc: Exception) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    return getattr(exc, "status_code", None) == 429 or "429" in str(exc)


class SentimentClassifier:
    """Label a single message as positive, neutral or negative.

    ``classify`` never raises: timeouts, provider errors and exhausted
    rate-limit retries all resolve to :attr:`Sentiment.NEUTRAL`.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: str = SENTIMENT_MODEL,
        timeout: float = SENTIMENT_TIMEOUT,
        retries: int = SENTIMENT_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._model = model
        self._timeout = timeout
        self._retries = retries
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> SentimentClassifier:
        client = None
        if os.getenv("OPENAI_API_KEY"):
            client = AsyncOpenAI(base_url=os.getenv("OPENAI_BASE_URL") or None)
        return cls(client)

    async def classify(self, text: str) -> Sentiment:
        if not text or not text.strip():
            return Sentiment.NEUTRAL
        if self._client is None:
            return lexicon_sentiment(text)
        try:
            return await asyncio.wait_for(self._classify_remote(text), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Sentiment classification timed out after %ss", self._timeout)
        except Exception as exc:
            logger.warning("Sentiment classification failed: %s", exc)
        return Sentiment.NEUTRAL

    async def _classify_remote(self, text: str) -> Sentiment:
        attempt = 0
        while True:
            try:
                completion = await self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": SENTIMENT_PROMPT},
                        {"role": "user", "content": text},
                    ],
                    temperature=0.1,
                    max_tokens=10,
                )
            except Exception as exc:
                if not _is_rate_limited(exc) or attempt >= self._retries:
                    raise
                attempt += 1
                logger.info("Sentiment provider rate limited; retrying in %ss", attempt)
                await self._sleep(float(attempt))
                continue
            raw = completion.choices[0].message.content if completion.choices else None
            return parse_label(raw)


def rollup_sentiment(labels: Iterable[Optional[Sentiment]]) -> Sentiment:
    """Collapse message labels into one conversation label.

    A label wins only with a strict majority; ties and mixed histories are
    neutral.
    """

    known = [label for label in labels if label is not None]
    if not known:
        return Sentiment.NEUTRAL
    total = len(known)
    if known.count(Sentiment.NEGATIVE) / total > 0.5:
        return Sentiment.NEGATIVE
    if known.count(Sentiment.POSITIVE) / total > 0.5:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL
