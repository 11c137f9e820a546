"""
Database module for the experiment registry.

Provides SQLite-based storage for experiment records. Every mutation is
a single conditional statement so concurrent writers on the same record
are serialized by SQLite itself; the schema additionally refuses any
change to a finalized record.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Union

SCHEMA = """
CREATE TABLE IF NOT EXISTS experiments (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    location TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL CHECK(status IN ('CREATED', 'IN_PROGRESS', 'COMPLETED')),
    created_at TEXT NOT NULL,
    last_opened_at TEXT,
    finalized_at TEXT,
    manifest_path TEXT,
    timestamped INTEGER,
    finalize_lease TEXT,
    lease_expires_at REAL,
    CHECK ((status = 'COMPLETED') = (finalized_at IS NOT NULL AND manifest_path IS NOT NULL))
);
"""

# A COMPLETED row never changes its terminal fields again
IMMUTABLE_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS experiments_completed_immutable
BEFORE UPDATE OF status, finalized_at, manifest_path, timestamped ON experiments
WHEN OLD.status = 'COMPLETED'
BEGIN
    SELECT RAISE(ABORT, 'experiment is finalized and immutable');
END;
"""


class RegistryDatabase:
    """
    Thread-safe SQLite store for experiment records.

    Connections are thread-local and reused within the same thread, so
    the store can be driven from ``asyncio.to_thread`` workers.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self.init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """
        Initialize schema, index and immutability trigger.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute(SCHEMA)
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_experiments_status
            ON experiments(status);""")
            conn.execute(IMMUTABLE_TRIGGER)

    def insert_experiment(self, exp_id: str, name: str, location: str, created_at: str) -> bool:
        """
        Insert a CREATED record.
        Returns False if the location is already registered.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO experiments(id, name, location, status, created_at) "
                    "VALUES(?,?,?,'CREATED',?)",
                    (exp_id, name, location, created_at)
                )
            return True
        except sqlite3.IntegrityError:
            return False

    def get_experiment(self, exp_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM experiments WHERE id=?", (exp_id,))
        return cur.fetchone()

    def get_experiment_by_location(self, location: str) -> Optional[sqlite3.Row]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM experiments WHERE location=?", (location,))
        return cur.fetchone()

    def list_experiments(self) -> List[sqlite3.Row]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM experiments ORDER BY created_at DESC, id ASC")
        return cur.fetchall()

    def mark_opened(self, exp_id: str, opened_at: str, now_epoch: float) -> bool:
        """
        CREATED|IN_PROGRESS -> IN_PROGRESS, refreshing last_opened_at.
        Returns False if the record is missing, COMPLETED, or held by an
        unexpired finalize lease.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE experiments SET status='IN_PROGRESS', last_opened_at=? "
                "WHERE id=? AND status IN ('CREATED', 'IN_PROGRESS') "
                "AND (finalize_lease IS NULL OR lease_expires_at < ?)",
                (opened_at, exp_id, now_epoch)
            )
            return cur.rowcount == 1

    def claim_finalize(self, exp_id: str, token: str, now_epoch: float, lease_until: float) -> bool:
        """
        Atomically take the finalize lease.

        A CREATED record implicitly enters IN_PROGRESS. Succeeds only if
        the record is not COMPLETED and no unexpired lease is held.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE experiments SET status='IN_PROGRESS', finalize_lease=?, lease_expires_at=? "
                "WHERE id=? AND status IN ('CREATED', 'IN_PROGRESS') "
                "AND (finalize_lease IS NULL OR lease_expires_at < ?)",
                (token, lease_until, exp_id, now_epoch)
            )
            return cur.rowcount == 1

    def release_finalize(self, exp_id: str, token: str, restore_status: Optional[str] = None) -> bool:
        """
        Drop the lease after a failed finalize, optionally putting back
        the status the record had before the claim.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE experiments SET finalize_lease=NULL, lease_expires_at=NULL, "
                "status=COALESCE(?, status) "
                "WHERE id=? AND finalize_lease=? AND status != 'COMPLETED'",
                (restore_status, exp_id, token)
            )
            return cur.rowcount == 1

    def complete_experiment(
        self,
        exp_id: str,
        token: str,
        finalized_at: str,
        manifest_path: str,
        timestamped: bool
    ) -> bool:
        """
        The terminal transition, as one atomic UPDATE.
        Only the holder of the finalize lease can complete the record.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE experiments SET status='COMPLETED', finalized_at=?, manifest_path=?, "
                "timestamped=?, finalize_lease=NULL, lease_expires_at=NULL "
                "WHERE id=? AND status='IN_PROGRESS' AND finalize_lease=?",
                (finalized_at, manifest_path, 1 if timestamped else 0, exp_id, token)
            )
            return cur.rowcount == 1

    def delete_experiment(self, exp_id: str, now_epoch: float) -> bool:
        """
        Administrative removal of a record (files are untouched).
        Refused while a finalize lease is live.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM experiments WHERE id=? "
                "AND (finalize_lease IS NULL OR lease_expires_at < ?)",
                (exp_id, now_epoch)
            )
            return cur.rowcount == 1

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Count records per status."""
        conn = self._get_connection()
        stats = {"CREATED": 0, "IN_PROGRESS": 0, "COMPLETED": 0}
        for row in conn.execute("SELECT status, COUNT(*) AS cnt FROM experiments GROUP BY status"):
            stats[row["status"]] = row["cnt"]
        return stats

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
