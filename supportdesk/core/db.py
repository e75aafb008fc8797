"""Async psycopg helpers shared by the routers and the retriever."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import psycopg

from ..conversations.repository import PostgresConversationRepository

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schema.sql"


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not configured")
    return url


async def connect() -> psycopg.AsyncConnection:
    """Open a new async connection; the caller owns closing it."""

    return await psycopg.AsyncConnection.connect(database_url())


async def ensure_schema(
    conn: psycopg.AsyncConnection, schema_sql_path: Path = SCHEMA_PATH
) -> None:
    """Apply ``schema.sql``; every statement is ``IF NOT EXISTS``."""

    async with conn.cursor() as cur:
        await cur.execute(schema_sql_path.read_text(encoding="utf-8"))
    await conn.commit()
    logger.info("Database schema ensured from %s", schema_sql_path)


@asynccontextmanager
async def repository_scope() -> AsyncIterator[PostgresConversationRepository]:
    """Yield a repository bound to one transaction.

    Commits when the block exits cleanly and rolls back otherwise.
    """

    conn = await connect()
    try:
        yield PostgresConversationRepository(conn)
        await conn.commit()
    except BaseException:
        await conn.rollback()
        raise
    finally:
        await conn.close()
