"""
Verdict Backend: Persistent storage for reputation state using SQLite.

Append-only store replayed at startup to rebuild in-memory reputation state.

Tables:
- verdicts: msgpack-encoded confirmed verdicts, keyed by target peer id
- blacklist_events: add / remove / renew / lift_amnesty events per peer
- issuer_seq: highest accepted seq_no per issuer (freshness across restarts)

Writes are committed before they return; any SQLite failure raises
PersistenceError so the caller can refuse to record the change in memory.
"""

import logging
import shutil
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

import msgpack

from chiral.p2p.reputation.errors import PersistenceError
from chiral.p2p.reputation.models import BlacklistEntry, TransactionVerdict

logger = logging.getLogger(__name__)


# Blacklist event types
EVENT_ADD = "add"
EVENT_REMOVE = "remove"
EVENT_RENEW = "renew"
EVENT_LIFT_AMNESTY = "lift_amnesty"
BLACKLIST_EVENTS = (EVENT_ADD, EVENT_REMOVE, EVENT_RENEW, EVENT_LIFT_AMNESTY)

_UPSERT_HIGH_WATER = """
    INSERT INTO issuer_seq (issuer_id, seq_no) VALUES (?, ?)
    ON CONFLICT(issuer_id) DO UPDATE SET seq_no = MAX(seq_no, excluded.seq_no)
"""


class VerdictBackend:
    """
    Persistent storage backend for confirmed verdicts and blacklist events.

    One short-lived connection per operation, serialized by a lock, as the
    other SQLite backends do.
    """

    def __init__(
        self,
        db_path: str = "chiral_reputation.db",
        enable_wal: bool = True,
        fsync: bool = True
    ):
        """
        Initialize verdict backend.

        Args:
            db_path: Path to SQLite database file (":memory:" is not supported,
                every operation opens its own connection)
            enable_wal: Enable Write-Ahead Logging for better concurrency
            fsync: Checkpoint the WAL after every write for durability
        """
        self.db_path = db_path
        self.enable_fsync = fsync and enable_wal
        self._lock = RLock()

        parent = Path(db_path).parent
        parent.mkdir(parents=True, exist_ok=True)

        self._init_db(enable_wal)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self, enable_wal: bool) -> None:
        """Initialize SQLite database with schema."""
        with self._lock:
            try:
                conn = self._connect()
                try:
                    cursor = conn.cursor()

                    if enable_wal:
                        cursor.execute("PRAGMA journal_mode=WAL")

                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS verdicts (
                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                            target_id TEXT NOT NULL,
                            issuer_id TEXT NOT NULL,
                            issuer_seq_no INTEGER NOT NULL,
                            issued_at REAL NOT NULL,
                            outcome TEXT NOT NULL,
                            data BLOB NOT NULL,
                            recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                            UNIQUE (target_id, issuer_id, issuer_seq_no)
                        )
                    """)
                    cursor.execute("""
                        CREATE INDEX IF NOT EXISTS idx_verdict_target
                        ON verdicts(target_id)
                    """)
                    cursor.execute("""
                        CREATE INDEX IF NOT EXISTS idx_verdict_issued_at
                        ON verdicts(issued_at)
                    """)

                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS blacklist_events (
                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                            peer_id TEXT NOT NULL,
                            event TEXT NOT NULL,
                            data BLOB,
                            recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                        )
                    """)
                    cursor.execute("""
                        CREATE INDEX IF NOT EXISTS idx_blacklist_peer
                        ON blacklist_events(peer_id)
                    """)

                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS issuer_seq (
                            issuer_id TEXT PRIMARY KEY,
                            seq_no INTEGER NOT NULL
                        )
                    """)

                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to initialize {self.db_path}: {e}") from e

    def _write(self, statements: List[Tuple[str, Tuple[Any, ...]]]) -> int:
        """Run statements in one transaction; returns rows changed by the first."""
        with self._lock:
            try:
                conn = self._connect()
                try:
                    cursor = conn.cursor()
                    changed = None
                    for sql, params in statements:
                        cursor.execute(sql, params)
                        if changed is None:
                            changed = cursor.rowcount
                    conn.commit()

                    if self.enable_fsync:
                        conn.execute("PRAGMA wal_checkpoint(FULL)")
                finally:
                    conn.close()
            except sqlite3.Error as e:
                logger.error(f"Verdict store write failed: {e}")
                raise PersistenceError(str(e)) from e
        return changed or 0

    def _read(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Tuple[Any, ...]]:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    return conn.execute(sql, params).fetchall()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    # -- Verdicts --

    def append_verdict(self, verdict: TransactionVerdict) -> bool:
        """
        Durably append a confirmed verdict.

        Args:
            verdict: Confirmed verdict

        Returns:
            True if stored, False if the same (target, issuer, seq_no) exists

        Raises:
            PersistenceError: write failed; the verdict must not be recorded
        """
        changed = self._write([
            (
                """
                INSERT OR IGNORE INTO verdicts
                (target_id, issuer_id, issuer_seq_no, issued_at, outcome, data)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    verdict.target_id,
                    verdict.issuer_id,
                    verdict.issuer_seq_no,
                    verdict.issued_at,
                    verdict.outcome.value,
                    verdict.to_bytes(),
                ),
            ),
            # Same transaction, so pruning old verdicts never loses freshness
            (_UPSERT_HIGH_WATER, (verdict.issuer_id, verdict.issuer_seq_no)),
        ])
        return changed > 0

    def load_verdicts(self, peer_id: Optional[str] = None) -> List[TransactionVerdict]:
        """All stored verdicts (optionally for one target) in append order."""
        if peer_id is None:
            rows = self._read("SELECT data FROM verdicts ORDER BY id ASC")
        else:
            rows = self._read(
                "SELECT data FROM verdicts WHERE target_id = ? ORDER BY id ASC",
                (peer_id,),
            )
        return [TransactionVerdict.from_bytes(row[0]) for row in rows]

    def count_verdicts(self, peer_id: Optional[str] = None) -> int:
        if peer_id is None:
            return self._read("SELECT COUNT(*) FROM verdicts")[0][0]
        return self._read(
            "SELECT COUNT(*) FROM verdicts WHERE target_id = ?", (peer_id,)
        )[0][0]

    def prune_before(self, cutoff: float) -> int:
        """
        Delete verdicts issued before `cutoff` (retention expiry).

        Returns:
            Number of verdicts deleted
        """
        removed = self._write([
            ("DELETE FROM verdicts WHERE issued_at < ?", (cutoff,)),
        ])
        if removed:
            logger.info(f"Pruned {removed} verdicts issued before {cutoff:.0f}")
        return removed

    # -- Issuer freshness --

    def record_high_water(self, issuer_id: str, seq_no: int) -> None:
        """Raise the stored high-water mark of an issuer (never lowers it)."""
        self._write([(_UPSERT_HIGH_WATER, (issuer_id, seq_no))])

    def load_high_water(self) -> Dict[str, int]:
        rows = self._read("SELECT issuer_id, seq_no FROM issuer_seq")
        return {issuer_id: seq_no for issuer_id, seq_no in rows}

    # -- Blacklist events --

    def append_blacklist_event(
        self,
        event: str,
        peer_id: str,
        entry: Optional[BlacklistEntry] = None
    ) -> None:
        """
        Append a blacklist event.

        Args:
            event: One of BLACKLIST_EVENTS
            peer_id: Affected peer
            entry: Entry state after the event (None for removals)
        """
        if event not in BLACKLIST_EVENTS:
            raise ValueError(f"Unknown blacklist event: {event}")
        data = msgpack.packb(entry.to_dict()) if entry is not None else None
        self._write([(
            "INSERT INTO blacklist_events (peer_id, event, data) VALUES (?, ?, ?)",
            (peer_id, event, data),
        )])

    def load_blacklist_events(self) -> List[Tuple[str, str, Optional[BlacklistEntry]]]:
        """All blacklist events as (event, peer_id, entry) in append order."""
        rows = self._read(
            "SELECT event, peer_id, data FROM blacklist_events ORDER BY id ASC"
        )
        events = []
        for event, peer_id, data in rows:
            entry = BlacklistEntry.from_dict(msgpack.unpackb(data)) if data else None
            events.append((event, peer_id, entry))
        return events

    # -- Maintenance --

    def clear(self) -> None:
        """Delete all stored state (service reset)."""
        self._write([
            ("DELETE FROM verdicts", ()),
            ("DELETE FROM blacklist_events", ()),
            ("DELETE FROM issuer_seq", ()),
        ])

    def get_statistics(self) -> Dict[str, Any]:
        """Get database statistics."""
        total_verdicts = self._read("SELECT COUNT(*) FROM verdicts")[0][0]
        peers = self._read("SELECT COUNT(DISTINCT target_id) FROM verdicts")[0][0]
        events = self._read("SELECT COUNT(*) FROM blacklist_events")[0][0]
        page_count = self._read("PRAGMA page_count")[0][0]
        page_size = self._read("PRAGMA page_size")[0][0]
        db_size = page_count * page_size

        return {
            "total_verdicts": total_verdicts,
            "peers": peers,
            "blacklist_events": events,
            "db_size_bytes": db_size,
            "db_size_mb": db_size / 1024 / 1024,
        }

    def backup(self, backup_path: str) -> bool:
        """
        Create a backup of the database.

        Args:
            backup_path: Path to backup file

        Returns:
            True if backup successful
        """
        with self._lock:
            try:
                Path(backup_path).parent.mkdir(parents=True, exist_ok=True)
                conn = self._connect()
                try:
                    # Checkpoint so the main file holds every committed write
                    conn.execute("PRAGMA wal_checkpoint(FULL)")
                finally:
                    conn.close()
                shutil.copy2(self.db_path, backup_path)
                return True
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Error creating backup: {e}")
                return False

    def vacuum(self) -> bool:
        """Vacuum database to reclaim space after pruning."""
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute("VACUUM")
                finally:
                    conn.close()
                return True
            except sqlite3.Error as e:
                logger.error(f"Error vacuuming database: {e}")
                return False

    def close(self) -> None:
        """No connection outlives a single operation."""
