"""Session checkpoint stores: ``load(session_id)`` / ``save(state)``.

All stores keep the JSON form of ``SessionState`` and honour a retention
window; a snapshot older than the window loads as missing.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

from spendcube.db.postgres import PostgresTxRunner
from spendcube.settings import PipelineSettings
from spendcube.state import SessionState

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_EXPIRED = object()


class CheckpointStore(Protocol):
    def load(self, session_id: str) -> SessionState | None: ...

    def save(self, state: SessionState) -> None: ...


class InMemoryCheckpointStore:
    def __init__(self, *, retention_hours: float = 72, clock: Clock = time.time) -> None:
        self._lock = threading.RLock()
        self._snapshots: dict[str, tuple[dict[str, Any], float]] = {}
        self.retention_s = float(retention_hours) * 3600.0
        self._clock = clock

    def load(self, session_id: str) -> SessionState | None:
        with self._lock:
            entry = self._snapshots.get(session_id)
            if entry is None:
                return None
            payload, saved_at = entry
            if self._clock() - saved_at > self.retention_s:
                logger.warning("checkpoint for session=%s expired, discarding", session_id)
                del self._snapshots[session_id]
                return None
            return SessionState.from_dict(copy.deepcopy(payload))

    def save(self, state: SessionState) -> None:
        with self._lock:
            self._snapshots[state.session_id] = (state.as_dict(), self._clock())

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._snapshots.pop(session_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [sid for sid, (_, at) in self._snapshots.items() if now - at > self.retention_s]
            for sid in expired:
                del self._snapshots[sid]
            return len(expired)

    def session_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._snapshots)


class SqliteCheckpointStore:
    """SQLite-backed checkpoints used for local persistence across restarts."""

    def __init__(self, db_path: str | Path, *, retention_hours: float = 72, clock: Clock = time.time) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.retention_s = float(retention_hours) * 3600.0
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_checkpoints (
                    session_id TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    saved_at REAL NOT NULL
                )
                """
            )
            conn.commit()

    def load(self, session_id: str) -> SessionState | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload, saved_at FROM session_checkpoints WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
                if row is None:
                    return None
                if self._clock() - float(row["saved_at"]) > self.retention_s:
                    logger.warning("checkpoint for session=%s expired, discarding", session_id)
                    conn.execute("DELETE FROM session_checkpoints WHERE session_id = ?", (session_id,))
                    conn.commit()
                    return None
        return SessionState.from_dict(json.loads(row["payload"]))

    def save(self, state: SessionState) -> None:
        payload = json.dumps(state.as_dict(), ensure_ascii=False)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_checkpoints (session_id, stage, payload, saved_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(session_id) DO UPDATE SET
                        stage = excluded.stage,
                        payload = excluded.payload,
                        saved_at = excluded.saved_at
                    """,
                    (state.session_id, state.stage, payload, self._clock()),
                )
                conn.commit()

    def purge_expired(self) -> int:
        with self._lock:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM session_checkpoints WHERE saved_at < ?",
                    (self._clock() - self.retention_s,),
                )
                conn.commit()
                return int(cur.rowcount)


class PostgresCheckpointStore:
    def __init__(
        self,
        *,
        dsn: str,
        retention_hours: float = 72,
        tx_runner: PostgresTxRunner | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._tx = tx_runner or PostgresTxRunner(dsn)
        self.retention_s = float(retention_hours) * 3600.0
        self._clock = clock
        self._tx.run_in_tx(self._init_schema)

    @staticmethod
    def _init_schema(conn: Any) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS session_checkpoints (
                    session_id TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    payload JSONB NOT NULL,
                    saved_at DOUBLE PRECISION NOT NULL
                )
                """
            )

    def load(self, session_id: str) -> SessionState | None:
        cutoff = self._clock() - self.retention_s

        def _load(conn: Any) -> Any:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT payload, saved_at FROM session_checkpoints WHERE session_id = %s",
                    (session_id,),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                if float(row[1]) < cutoff:
                    cur.execute("DELETE FROM session_checkpoints WHERE session_id = %s", (session_id,))
                    return _EXPIRED
                return row[0]

        payload = self._tx.run_in_tx(_load)
        if payload is None:
            return None
        if payload is _EXPIRED:
            logger.warning("checkpoint for session=%s expired, discarding", session_id)
            return None
        if isinstance(payload, str):
            payload = json.loads(payload)
        return SessionState.from_dict(payload)

    def save(self, state: SessionState) -> None:
        payload = json.dumps(state.as_dict(), ensure_ascii=False)
        saved_at = self._clock()

        def _save(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO session_checkpoints (session_id, stage, payload, saved_at)
                    VALUES (%s, %s, %s::jsonb, %s)
                    ON CONFLICT (session_id) DO UPDATE SET
                        stage = EXCLUDED.stage,
                        payload = EXCLUDED.payload,
                        saved_at = EXCLUDED.saved_at
                    """,
                    (state.session_id, state.stage, payload, saved_at),
                )

        self._tx.run_in_tx(_save)


def create_checkpoint_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryCheckpointStore | SqliteCheckpointStore | PostgresCheckpointStore:
    env = os.environ if environ is None else environ
    settings = PipelineSettings.from_env(env)
    backend = settings.checkpoint_backend
    if backend == "memory":
        return InMemoryCheckpointStore(retention_hours=settings.checkpoint_retention_hours)
    if backend == "sqlite":
        return SqliteCheckpointStore(
            settings.checkpoint_sqlite_path,
            retention_hours=settings.checkpoint_retention_hours,
        )
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when CHECKPOINT_BACKEND=postgres")
        return PostgresCheckpointStore(
            dsn=settings.postgres_dsn,
            retention_hours=settings.checkpoint_retention_hours,
        )
    raise RuntimeError(f"unsupported checkpoint backend: {backend}")
