"""Heuristics that decide whether a conversation needs a human agent.

Every function here is pure: history is passed in by the caller so the
checks can be evaluated without touching storage.
"""
from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Optional

from ..conversations.models import Sentiment

EXPLICIT_REQUEST_PHRASES = (
    "human",
    "agent",
    "person",
    "representative",
    "support",
    "speak to someone",
    "talk to someone",
    "real person",
    "customer service",
    "escalate",
    "manager",
    "supervisor",
    "connect me",
    "transfer me",
    "live agent",
    "live person",
)

SENTIMENT_LOOKBACK = 3
SENTIMENT_MIN_LABELLED = 2
SENTIMENT_NEGATIVE_THRESHOLD = 3

REPETITION_LOOKBACK = 6
REPETITION_MIN_USER_MESSAGES = 4
REPETITION_MIN_TOKENS = 3
REPETITION_EXACT_THRESHOLD = 2
REPETITION_SIMILAR_THRESHOLD = 3
SIMILARITY_CUTOFF = 0.8
SIGNIFICANT_TOKEN_LENGTH = 3

_STRIP_PUNCT = re.compile(r"[?.!,]")
_WHITESPACE = re.compile(r"\s+")


def is_explicit_request(message: str) -> bool:
    """Return ``True`` when ``message`` asks for a human in plain words."""

    lowered = (message or "").lower()
    return any(phrase in lowered for phrase in EXPLICIT_REQUEST_PHRASES)


def has_negative_streak(labels: Sequence[Optional[Sentiment]]) -> bool:
    """Check the stored labels of the most recent prior user messages.

    ``labels`` is ordered newest first; only the first
    :data:`SENTIMENT_LOOKBACK` entries are considered and unlabelled
    messages are ignored.
    """

    window = [label for label in labels[:SENTIMENT_LOOKBACK] if label is not None]
    if len(window) < SENTIMENT_MIN_LABELLED:
        return False
    negatives = sum(1 for label in window if label is Sentiment.NEGATIVE)
    return negatives >= SENTIMENT_NEGATIVE_THRESHOLD


def normalize_query(text: str) -> str:
    stripped = _STRIP_PUNCT.sub("", (text or "").lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def _significant_tokens(normalized: str) -> set[str]:
    return {tok for tok in normalized.split(" ") if len(tok) > SIGNIFICANT_TOKEN_LENGTH}


def query_similarity(first: str, second: str) -> float:
    """Token overlap ratio between two already normalised queries."""

    left = _significant_tokens(first)
    right = _significant_tokens(second)
    denominator = max(len(left), len(right))
    if not denominator:
        return 0.0
    return len(left & right) / denominator


def is_repeated_query(message: str, prior_messages: Sequence[str]) -> bool:
    """Return ``True`` when the user keeps asking the same thing.

    ``prior_messages`` holds earlier user messages, newest first, without
    the current one.
    """

    window = list(prior_messages[:REPETITION_LOOKBACK])
    if len(window) + 1 < REPETITION_MIN_USER_MESSAGES:
        return False
    current = normalize_query(message)
    if len(current.split()) < REPETITION_MIN_TOKENS:
        return False

    exact = 0
    similar = 0
    for previous in window:
        candidate = normalize_query(previous)
        if candidate == current:
            exact += 1
            continue
        if query_similarity(current, candidate) > SIMILARITY_CUTOFF:
            similar += 1
    return exact >= REPETITION_EXACT_THRESHOLD or similar >= REPETITION_SIMILAR_THRESHOLD
