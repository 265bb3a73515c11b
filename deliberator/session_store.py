"""
Session Store – Session Persistence
===================================
Two interchangeable stores behind the :class:`SessionStore` protocol the
orchestrators depend on:

* :class:`InMemorySessionStore` – a dict, for tests and the CLI.
* :class:`SqliteSessionStore` – async SQLite via ``aiosqlite``.  Each
  session is one row whose ``payload`` column holds the whole
  :class:`Session` serialised as JSON with a pydantic ``TypeAdapter``.

The pipeline only creates, updates and reads sessions.  Listing and
pruning exist for the HTTP shell.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
from pydantic import TypeAdapter

from deliberator.errors import SessionNotFoundError
from deliberator.schemas import Query, QueryMode, Session, SessionStatus, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_DB = Path(os.getenv("DELIBERATOR_SESSION_DB", "deliberator_sessions.db"))

# Fields fixed at creation time.
_IMMUTABLE_FIELDS = frozenset({"id", "user_id", "query", "mode", "created_at"})
_UPDATABLE_FIELDS = frozenset(f.name for f in dataclasses.fields(Session)) - _IMMUTABLE_FIELDS


def _apply_update(session: Session, fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update session field(s): {', '.join(sorted(unknown))}")
    for name, value in fields.items():
        setattr(session, name, value)
    if "updated_at" not in fields:
        session.updated_at = utcnow()


def _new_session(query: Query, mode: QueryMode) -> Session:
    now = utcnow()
    return Session(
        id=uuid.uuid4().hex,
        user_id=query.user_id,
        query=query,
        mode=mode,
        status=SessionStatus.COLLECTING,
        created_at=now,
        updated_at=now,
    )


class SessionStore(Protocol):
    """What the orchestrators need from a session store."""

    async def create_session(self, query: Query, mode: QueryMode) -> Session: ...

    async def update_session(self, session_id: str, **fields: Any) -> None: ...

    async def get_session(self, session_id: str) -> Session | None: ...


class InMemorySessionStore:
    """Dict-backed store.  Reads and writes copy, so callers never alias stored state."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def create_session(self, query: Query, mode: QueryMode) -> Session:
        session = _new_session(query, mode)
        self._sessions[session.id] = session
        return copy.deepcopy(session)

    async def update_session(self, session_id: str, **fields: Any) -> None:
        """Set *fields* on the session and bump ``updated_at``.

        Raises
        ------
        SessionNotFoundError
            No session has *session_id*.
        ValueError
            A field name is unknown or fixed at creation time.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        _apply_update(session, copy.deepcopy(fields))

    async def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def list_sessions(
        self,
        user_id: str,
        mode: QueryMode | None = None,
        status: SessionStatus | None = None,
    ) -> list[Session]:
        return [
            copy.deepcopy(s)
            for s in self._sessions.values()
            if s.user_id == user_id
            and (mode is None or s.mode == mode)
            and (status is None or s.status == status)
        ]

    async def delete_older_than(self, cutoff: datetime) -> int:
        stale = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def clear(self) -> None:
        self._sessions.clear()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    mode        TEXT NOT NULL,
    status      TEXT NOT NULL,
    payload     TEXT NOT NULL,          -- JSON-encoded Session
    created_at  TEXT NOT NULL,          -- ISO-8601, UTC
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at);
"""


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


class SqliteSessionStore:
    """Async SQLite store for deliberation sessions.

    Parameters
    ----------
    db_path : str or Path
        Path to the SQLite file.  Created automatically on first use.
        Defaults to ``deliberator_sessions.db`` in the working directory
        (overridable via ``DELIBERATOR_SESSION_DB``).
    """

    _adapter = TypeAdapter(Session)

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = str(db_path or _DEFAULT_DB)
        self._initialised = False
        self._write_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._initialised:
            return
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        self._initialised = True
        logger.info("Session DB ready: %s", self._db_path)

    def _encode(self, session: Session) -> str:
        return self._adapter.dump_json(session).decode("utf-8")

    def _decode(self, payload: str) -> Session:
        return self._adapter.validate_json(payload)

    # ------------------------------------------------------------------ #
    #  Write
    # ------------------------------------------------------------------ #

    async def create_session(self, query: Query, mode: QueryMode) -> Session:
        await self._ensure_schema()
        session = _new_session(query, mode)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO sessions (id, user_id, mode, status, payload, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.user_id,
                    session.mode.value,
                    session.status.value,
                    self._encode(session),
                    _iso(session.created_at),
                    _iso(session.updated_at),
                ),
            )
            await db.commit()
        logger.debug("Created %s session %s", mode.value, session.id)
        return session

    async def update_session(self, session_id: str, **fields: Any) -> None:
        """Set *fields* on the stored session and bump ``updated_at``.

        Raises
        ------
        SessionNotFoundError
            No session has *session_id*.
        ValueError
            A field name is unknown or fixed at creation time.
        """
        await self._ensure_schema()
        async with self._write_lock:
            session = await self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            _apply_update(session, fields)
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute(
                    "UPDATE sessions SET status = ?, payload = ?, updated_at = ? WHERE id = ?",
                    (
                        session.status.value,
                        self._encode(session),
                        _iso(session.updated_at),
                        session_id,
                    ),
                )
                await db.commit()

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete sessions created before *cutoff*.  Returns the number deleted."""
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM sessions WHERE created_at < ?", (_iso(cutoff),)
            )
            await db.commit()
            deleted = cursor.rowcount
        logger.info("Deleted %d session(s) older than %s", deleted, _iso(cutoff))
        return deleted

    # ------------------------------------------------------------------ #
    #  Read
    # ------------------------------------------------------------------ #

    async def get_session(self, session_id: str) -> Session | None:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT payload FROM sessions WHERE id = ?", (session_id,)
            )
            row = await cursor.fetchone()
        return self._decode(row[0]) if row else None

    async def list_sessions(
        self,
        user_id: str,
        mode: QueryMode | None = None,
        status: SessionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        """Return a user's sessions, newest first."""
        await self._ensure_schema()
        sql = "SELECT payload FROM sessions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if mode is not None:
            sql += " AND mode = ?"
            params.append(mode.value)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._decode(r[0]) for r in rows]
