"""Server-Sent Events helpers for the chat stream.

LLM providers emit very small tokens. :func:`buffer_words` regroups them
into word or phrase sized chunks before they are framed as ``data:`` events,
which keeps the widget from flickering without adding noticeable latency.
"""

import asyncio
import json
from typing import Any, AsyncIterator

FLUSH_AFTER = set(".,;:!?)]}")
MAX_BUFFER = 80
DONE_EVENT = "data: [DONE]\n\n"


def _should_flush(buf: str) -> bool:
    if not buf:
        return False
    return buf[-1].isspace() or buf[-1] in FLUSH_AFTER or len(buf) >= MAX_BUFFER


async def buffer_words(token_iter: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield whitespace or punctuation delimited chunks from ``token_iter``.

    The concatenation of the yielded chunks equals the concatenation of the
    input tokens.
    """
    buf = ""
    async for tok in token_iter:
        if not tok:
            continue
        buf += str(tok)
        if _should_flush(buf):
            yield buf
            buf = ""
        await asyncio.sleep(0)
    if buf:
        yield buf


def format_event(payload: Any) -> str:
    """Frame ``payload`` as a single ``data:`` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def token_event(content: str) -> str:
    return format_event({"type": "token", "content": content})
