"""
Store clients for tracking data.

Both backends speak the same SQLite dialect, so every statement in the
event store, aggregate engine and batch jobs runs unchanged against either:

- D1Client: Cloudflare D1 over its HTTP query API
- SQLiteClient: a local SQLite file via aiosqlite (self-hosted installs, tests)
"""
import logging
from typing import Any

import aiosqlite
import httpx

from .schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)


class D1QueryError(Exception):
    """Raised when D1 reports an unsuccessful query."""
    pass


# Failures a store call can raise; ingestion logs these and drops the event
STORE_ERRORS = (D1QueryError, httpx.HTTPError, aiosqlite.Error)


def parse_d1_response(data: dict) -> tuple[list[dict], int]:
    """Split a D1 query envelope into (rows, changed row count).

    D1 wraps each statement in ``result[i]`` with its rows under ``results``
    and write stats under ``meta``. A single statement is sent per request,
    so only the first entry is read.
    """
    if not data.get("success"):
        messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in data.get("errors") or []]
        raise D1QueryError(f"D1 query failed: {'; '.join(messages) or 'unknown error'}")

    results = data.get("result") or []
    if not results:
        return [], 0
    first = results[0]
    changes = (first.get("meta") or {}).get("changes") or 0
    return first.get("results") or [], int(changes)


class TrackingClient:
    """Base client: subclasses implement ``_request``."""

    async def _request(self, sql: str, params: list) -> tuple[list[dict], int]:
        """Run one statement, returning (rows, changed row count)."""
        raise NotImplementedError

    async def _query(self, sql: str, params: list | None = None) -> list[dict]:
        """Execute a SQL query and return its rows."""
        rows, _ = await self._request(sql, params or [])
        return rows

    async def _execute(self, sql: str, params: list | None = None) -> int:
        """Execute a SQL statement, returning the number of rows it changed."""
        _, changes = await self._request(sql, params or [])
        return changes

    async def ensure_schema(self) -> None:
        """Create the tracking tables and indexes if they don't exist."""
        for statement in SCHEMA_STATEMENTS:
            await self._execute(statement)

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()


class D1Client(TrackingClient):
    """Client for the tracking tables in Cloudflare D1."""

    def __init__(
        self,
        d1_database_id: str,
        cf_account_id: str,
        cf_api_token: str,
    ):
        self.database_id = d1_database_id
        self.account_id = cf_account_id
        self.api_token = cf_api_token
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{cf_account_id}/d1/database/{d1_database_id}"

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, sql: str, params: list) -> tuple[list[dict], int]:
        """Execute a SQL statement against D1."""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{self.base_url}/query",
                headers=self.headers,
                json={"sql": sql, "params": params},
            )
            response.raise_for_status()
            return parse_d1_response(response.json())


class SQLiteClient(TrackingClient):
    """Client for a local SQLite database.

    The connection is opened lazily and kept for the client's lifetime;
    use ``async with`` or call ``close()`` when done.
    """

    def __init__(self, path: str = "tracking.db"):
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            # Autocommit: each statement is its own atomic transaction
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            if self.path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    async def _request(self, sql: str, params: list) -> tuple[list[dict], int]:
        conn = await self._connection()
        async with conn.execute(sql, params) as cursor:
            rows: list[Any] = await cursor.fetchall()
            return [dict(row) for row in rows], max(cursor.rowcount, 0)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
