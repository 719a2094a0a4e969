"""
Session Store — run log of settled workflow sessions.

Behavioral Contract:
- One row per session, written when the session settles. Saving the same
  session id again replaces the row.
- Queryable by id, by tenant and by recency.
- A run log only: nothing here is read back to decide what to sync.
"""

import sqlite3
import threading
from typing import List, Optional

from sync_kernel.models.session import Session


class SessionStore:
    """
    Settled-session store.
    SQLite; pass a file path to keep history across restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                workflow TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                failed INTEGER NOT NULL DEFAULT 0,
                session_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON sessions(tenant_id)
        """)
        self._conn.commit()

    def save(self, session: Session) -> Session:
        failed = session.summary.failed if session.summary else 0
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO sessions (
                    id, tenant_id, workflow, status, started_at, ended_at, failed, session_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.tenant_id,
                    session.workflow,
                    session.status.value,
                    session.started_at.isoformat(),
                    session.ended_at.isoformat() if session.ended_at else None,
                    failed,
                    session.model_dump_json(),
                ),
            )
            self._conn.commit()
        return session

    def _deserialize(self, row: sqlite3.Row) -> Session:
        return Session.model_validate_json(row["session_json"])

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._conn.execute(
                "SELECT session_json FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_tenant(self, tenant_id: str, limit: int = 50) -> List[Session]:
        """Most recent sessions for one tenant, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT session_json FROM sessions WHERE tenant_id = ? "
                "ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (tenant_id, limit),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[Session]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT session_json FROM sessions ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM sessions").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
