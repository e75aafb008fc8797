"""Bootstrap the database schema and load the knowledge base from disk."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import urlsplit, urlunsplit

import psycopg
from dotenv import load_dotenv
from pgvector.psycopg import register_vector_async

from supportdesk.core.db import ensure_schema
from supportdesk.rag import embed_text

logger = logging.getLogger("seed")

SUPPORTED_EXTENSIONS: tuple[str, ...] = (".txt", ".md")


@dataclass(slots=True)
class SeedConfig:
    db_url: str
    knowledge_dir: Path
    replace: bool


@dataclass(slots=True)
class KnowledgeDocument:
    title: str
    content: str
    category: str
    source_file: str


def _to_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _safe_url(db_url: str) -> str:
    """Mask the password component of ``db_url`` for logging."""

    parts = urlsplit(db_url)
    if not parts.password:
        return db_url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@")
    return urlunsplit(parts._replace(netloc=netloc))


def _load_config() -> SeedConfig:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set to seed the knowledge base")
    return SeedConfig(
        db_url=db_url,
        knowledge_dir=Path(os.getenv("KNOWLEDGE_DIR", "knowledge")),
        replace=_to_bool(os.getenv("SEED_REPLACE")),
    )


def iter_documents(directory: Path) -> Iterable[KnowledgeDocument]:
    """Yield one document per supported file below ``directory``."""

    paths = [directory] if directory.is_file() else sorted(directory.rglob("*"))
    for path in paths:
        if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            continue
        content = path.read_text(encoding="utf-8").strip()
        if not content:
            logger.info("Skipping empty file %s", path)
            continue
        first_line = next(line for line in content.splitlines() if line.strip())
        yield KnowledgeDocument(
            title=first_line.lstrip("# ").strip()[:200],
            content=content,
            category=path.parent.name if path.parent != directory else "general",
            source_file=path.name,
        )


async def wait_for_database(db_url: str, max_attempts: int = 10, delay: float = 3.0) -> None:
    for attempt in range(1, max_attempts + 1):
        try:
            conn = await psycopg.AsyncConnection.connect(db_url, connect_timeout=5)
            await conn.close()
        except psycopg.OperationalError as exc:
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            await asyncio.sleep(delay)
            continue
        logger.info("Database connection established after %d attempt(s)", attempt)
        return


async def load_documents(config: SeedConfig) -> int:
    if not config.knowledge_dir.exists():
        logger.warning("Knowledge directory %s not found; nothing to load.", config.knowledge_dir)
        return 0
    loaded = 0
    async with await psycopg.AsyncConnection.connect(config.db_url) as conn:
        await ensure_schema(conn)
        await register_vector_async(conn)
        async with conn.cursor() as cur:
            for doc in iter_documents(config.knowledge_dir):
                await cur.execute(
                    "SELECT 1 FROM knowledge_base WHERE source_file = %s LIMIT 1",
                    (doc.source_file,),
                )
                if await cur.fetchone() is not None:
                    if not config.replace:
                        logger.info("%s already loaded; skipping.", doc.source_file)
                        continue
                    await cur.execute(
                        "DELETE FROM knowledge_base WHERE source_file = %s",
                        (doc.source_file,),
                    )
                vector = await asyncio.to_thread(embed_text, doc.content)
                await cur.execute(
                    """
                    INSERT INTO knowledge_base (title, content, category, source_file, embedding)
                    VALUES (%s, %s, %s, %s, %s::vector)
                    """,
                    (doc.title, doc.content, doc.category, doc.source_file, vector),
                )
                loaded += 1
                logger.info("Loaded %s (%s)", doc.source_file, doc.category)
        await conn.commit()
    return loaded


async def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = _load_config()
    logger.info("Seeding knowledge base using %s", _safe_url(config.db_url))
    await wait_for_database(config.db_url)
    loaded = await load_documents(config)
    logger.info("Seed process completed: %d document(s) loaded", loaded)


if __name__ == "__main__":
    asyncio.run(main())
