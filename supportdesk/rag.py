"""Knowledge-base retrieval (fastembed query embedding + pgvector search).

The chat endpoint asks the :class:`Retriever` for the documents closest to
the user's question and turns them into a prompt-ready context block with
:func:`format_as_context`. When nothing clears the similarity threshold the
context is the :data:`NO_CONTEXT` sentinel so the generator can decline
instead of guessing.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from fastembed import TextEmbedding
from pgvector.psycopg import register_vector_async
from psycopg.rows import dict_row

from .core.db import connect

logger = logging.getLogger(__name__)

NO_CONTEXT = "NO_KNOWLEDGE_BASE_CONTEXT_AVAILABLE"
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "BAAI/bge-small-en-v1.5")
RETRIEVAL_LIMIT = int(os.getenv("RETRIEVAL_LIMIT", "5"))
RETRIEVAL_THRESHOLD = float(os.getenv("RETRIEVAL_THRESHOLD", "0.3"))

_embedder: Optional[TextEmbedding] = None


def get_embedder() -> TextEmbedding:
    """Load the embedding model on first use; the download is slow."""

    global _embedder
    if _embedder is None:
        _embedder = TextEmbedding(model_name=EMBEDDING_MODEL)
    return _embedder


def embed_text(text: str) -> list[float]:
    sanitized = " ".join(text.split())[:8000]
    vector = next(iter(get_embedder().embed([sanitized])))
    return [float(x) for x in vector]


@dataclass
class RetrievedDocument:
    content: str
    source_id: str
    similarity: float
    title: str = ""

    def as_source(self) -> dict:
        return {
            "title": self.title,
            "source_file": self.source_id,
            "similarity": round(self.similarity, 4),
        }


def _display_name(source_id: str) -> str:
    name = source_id.rsplit("/", 1)[-1]
    for suffix in (".txt", ".md"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name.upper()


def format_as_context(docs: Sequence[RetrievedDocument]) -> str:
    """Group documents by source and render one labelled block per source."""

    if not docs:
        return NO_CONTEXT
    grouped: dict[str, list[RetrievedDocument]] = {}
    for doc in docs:
        grouped.setdefault(doc.source_id, []).append(doc)
    blocks = []
    for index, (source_id, source_docs) in enumerate(grouped.items(), start=1):
        body = "\n\n".join(doc.content for doc in source_docs)
        blocks.append(f"=== DOCUMENT {index}: {_display_name(source_id)} ===\n\n{body}")
    return "\n\n".join(blocks)


class Retriever:
    """Cosine-similarity search over the ``knowledge_base`` table.

    Failures are logged and reported as "no documents" so a broken index
    degrades answers instead of the whole chat request.
    """

    async def retrieve(
        self,
        query: str,
        limit: int = RETRIEVAL_LIMIT,
        threshold: float = RETRIEVAL_THRESHOLD,
    ) -> list[RetrievedDocument]:
        try:
            vector = await asyncio.to_thread(embed_text, query)
            rows = await self._search(vector, limit, threshold)
        except Exception:
            logger.exception("Knowledge base retrieval failed")
            return []
        docs = [
            RetrievedDocument(
                content=row["content"],
                source_id=row["source_file"],
                similarity=float(row["similarity"]),
                title=row["title"] or "",
            )
            for row in rows
        ]
        logger.info("Retrieved %d documents for %r", len(docs), query[:30])
        return docs

    async def _search(self, vector: list[float], limit: int, threshold: float) -> list[dict]:
        conn = await connect()
        try:
            await register_vector_async(conn)
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT title, content, source_file,
                           1 - (embedding <=> %s::vector) AS similarity
                    FROM knowledge_base
                    WHERE embedding IS NOT NULL
                      AND 1 - (embedding <=> %s::vector) > %s
                    ORDER BY embedding <=> %s::vector
                    LIMIT %s
                    """,
                    (vector, vector, threshold, vector, limit),
                )
                return await cur.fetchall()
        finally:
            await conn.close()
