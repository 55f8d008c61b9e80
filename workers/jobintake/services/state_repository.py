from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
from typing import Protocol

import asyncpg  # type: ignore[import-untyped]

from jobintake.core.config import get_settings

GMAIL_TOKENS_ID = "default"
GMAIL_STATE_ID = "default"


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


@dataclass(slots=True)
class TokenRecord:
    refresh_token_enc: str | None
    access_token: str | None = None
    access_expires_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class IngestLogRecord:
    msg_id: str
    thread_id: str | None
    internal_date: int | None
    subject: str | None
    from_email: str | None
    urls: list[str] = field(default_factory=list)
    job_keys: list[str] = field(default_factory=list)
    ingested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IngestStateRepository(Protocol):
    async def get_gmail_cursor(self) -> int: ...

    async def put_gmail_cursor(self, last_seen_internal_date: int) -> None: ...

    async def get_token_record(self) -> TokenRecord | None: ...

    async def put_token_record(self, record: TokenRecord) -> None: ...

    async def ingest_log_exists(self, msg_id: str) -> bool: ...

    async def insert_ingest_log(self, record: IngestLogRecord) -> None: ...


class InMemoryStateRepository:
    """Process-local state for tests and single-process local runs."""

    def __init__(self) -> None:
        self.cursor: int | None = None
        self.token: TokenRecord | None = None
        self.ingest_log: dict[str, IngestLogRecord] = {}
        self.cursor_writes = 0

    async def get_gmail_cursor(self) -> int:
        return self.cursor or 0

    async def put_gmail_cursor(self, last_seen_internal_date: int) -> None:
        self.cursor = max(self.cursor or 0, int(last_seen_internal_date))
        self.cursor_writes += 1

    async def get_token_record(self) -> TokenRecord | None:
        return replace(self.token) if self.token is not None else None

    async def put_token_record(self, record: TokenRecord) -> None:
        self.token = replace(record, updated_at=datetime.now(timezone.utc))

    async def ingest_log_exists(self, msg_id: str) -> bool:
        return msg_id in self.ingest_log

    async def insert_ingest_log(self, record: IngestLogRecord) -> None:
        self.ingest_log.setdefault(record.msg_id, record)


class PostgresStateRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_gmail_cursor(self) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            "select last_seen_internal_date from gmail_state where id = $1",
            GMAIL_STATE_ID,
        )
        return int(value or 0)

    async def put_gmail_cursor(self, last_seen_internal_date: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into gmail_state (id, last_seen_internal_date, updated_at)
            values ($1, $2, now())
            on conflict (id) do update set
              last_seen_internal_date = greatest(
                coalesce(gmail_state.last_seen_internal_date, 0),
                excluded.last_seen_internal_date
              ),
              updated_at = excluded.updated_at
            """,
            GMAIL_STATE_ID,
            int(last_seen_internal_date),
        )

    async def get_token_record(self) -> TokenRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select refresh_token_enc, access_token, access_expires_at, updated_at
            from gmail_tokens
            where id = $1
            """,
            GMAIL_TOKENS_ID,
        )
        if row is None:
            return None
        return TokenRecord(
            refresh_token_enc=row["refresh_token_enc"],
            access_token=row["access_token"],
            access_expires_at=row["access_expires_at"],
            updated_at=row["updated_at"],
        )

    async def put_token_record(self, record: TokenRecord) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into gmail_tokens (id, refresh_token_enc, access_token, access_expires_at, updated_at)
            values ($1, $2, $3, $4, now())
            on conflict (id) do update set
              refresh_token_enc = excluded.refresh_token_enc,
              access_token = excluded.access_token,
              access_expires_at = excluded.access_expires_at,
              updated_at = excluded.updated_at
            """,
            GMAIL_TOKENS_ID,
            record.refresh_token_enc,
            record.access_token,
            record.access_expires_at,
        )

    async def ingest_log_exists(self, msg_id: str) -> bool:
        pool = await self._get_pool()
        value = await pool.fetchval("select 1 from gmail_ingest_log where msg_id = $1 limit 1", msg_id)
        return value == 1

    async def insert_ingest_log(self, record: IngestLogRecord) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into gmail_ingest_log (
              msg_id,
              thread_id,
              internal_date,
              subject,
              from_email,
              urls_json,
              job_keys_json,
              ingested_at
            )
            values ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8)
            on conflict (msg_id) do nothing
            """,
            record.msg_id,
            record.thread_id,
            record.internal_date,
            record.subject,
            record.from_email,
            json.dumps(record.urls),
            json.dumps(record.job_keys),
            record.ingested_at,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JOBINTAKE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


@lru_cache
def get_state_repository() -> PostgresStateRepository:
    settings = get_settings()
    return PostgresStateRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
