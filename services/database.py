from config import settings
from typing import List, Optional, Dict, Any, Iterable, Iterator
from contextlib import contextmanager
from models.platform_event import NormalizedEvent
from errors import IntegrityError
from utils.timestamps import utc_now, to_db_time
import hashlib
import json
import sqlite3
import threading
import logging

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS ingestion_job (
  id TEXT PRIMARY KEY,
  connector_id TEXT NOT NULL,
  status TEXT NOT NULL,
  checkpoint TEXT,
  started_at TEXT,
  finished_at TEXT,
  error_message TEXT,
  lease_owner TEXT,
  lease_expires_at TEXT,
  events_fetched INTEGER NOT NULL DEFAULT 0,
  events_persisted INTEGER NOT NULL DEFAULT 0,
  groups_failed INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_job_one_active
  ON ingestion_job(connector_id) WHERE status IN ('pending', 'running');
CREATE INDEX IF NOT EXISTS idx_job_status ON ingestion_job(status, created_at);

CREATE TABLE IF NOT EXISTS connector_state (
  connector_id TEXT PRIMARY KEY,
  checkpoint TEXT,
  last_sync_at TEXT,
  last_status TEXT,
  error_message TEXT,
  next_sync_seconds REAL,
  consecutive_failures INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS platform_event (
  platform TEXT NOT NULL,
  platform_id TEXT NOT NULL,
  connector_id TEXT NOT NULL,
  event_type TEXT NOT NULL,
  timestamp TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  error_message TEXT,
  processed_at TEXT,
  PRIMARY KEY (platform, platform_id)
);
CREATE INDEX IF NOT EXISTS idx_platform_event_status ON platform_event(connector_id, status);

CREATE TABLE IF NOT EXISTS knowledge_entity (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  source_id TEXT NOT NULL,
  name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  metadata_json TEXT NOT NULL DEFAULT '{}',
  embedding_json TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (type, source_id)
);
CREATE INDEX IF NOT EXISTS idx_entity_name ON knowledge_entity(name);

-- Endpoints are checked at write time; traversal ignores edges whose endpoint is gone
CREATE TABLE IF NOT EXISTS knowledge_relationship (
  id TEXT PRIMARY KEY,
  source_entity_id TEXT NOT NULL,
  target_entity_id TEXT NOT NULL,
  type TEXT NOT NULL,
  strength REAL NOT NULL CHECK (strength >= 0 AND strength <= 1),
  metadata_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (source_entity_id, target_entity_id, type)
);
CREATE INDEX IF NOT EXISTS idx_relationship_source ON knowledge_relationship(source_entity_id, type);
CREATE INDEX IF NOT EXISTS idx_relationship_target ON knowledge_relationship(target_entity_id);

CREATE TABLE IF NOT EXISTS decision_record (
  entity_id TEXT PRIMARY KEY REFERENCES knowledge_entity(id) ON DELETE CASCADE,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  rationale TEXT NOT NULL DEFAULT '',
  alternatives TEXT NOT NULL DEFAULT '[]',
  consequences TEXT NOT NULL DEFAULT '[]',
  status TEXT NOT NULL DEFAULT 'active',
  superseded_by TEXT,
  participants TEXT NOT NULL DEFAULT '[]',
  source_event_ids TEXT NOT NULL DEFAULT '[]',
  platform TEXT NOT NULL DEFAULT '',
  decided_at TEXT
);

CREATE TABLE IF NOT EXISTS discussion_summary (
  entity_id TEXT PRIMARY KEY REFERENCES knowledge_entity(id) ON DELETE CASCADE,
  thread_id TEXT,
  platform TEXT NOT NULL DEFAULT '',
  participants TEXT NOT NULL DEFAULT '[]',
  summary TEXT NOT NULL DEFAULT '',
  key_points TEXT NOT NULL DEFAULT '[]',
  action_items TEXT NOT NULL DEFAULT '[]',
  file_refs TEXT NOT NULL DEFAULT '[]',
  feature_refs TEXT NOT NULL DEFAULT '[]',
  source_event_ids TEXT NOT NULL DEFAULT '[]',
  started_at TEXT,
  ended_at TEXT
);

CREATE TABLE IF NOT EXISTS feature_context (
  entity_id TEXT PRIMARY KEY REFERENCES knowledge_entity(id) ON DELETE CASCADE,
  name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL DEFAULT 'in_progress',
  files TEXT NOT NULL DEFAULT '[]',
  contributors TEXT NOT NULL DEFAULT '[]',
  source_event_ids TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS file_context_history (
  entity_id TEXT PRIMARY KEY REFERENCES knowledge_entity(id) ON DELETE CASCADE,
  path TEXT NOT NULL,
  change_reasons TEXT NOT NULL DEFAULT '[]',
  contributors TEXT NOT NULL DEFAULT '[]',
  related_decisions TEXT NOT NULL DEFAULT '[]',
  source_event_ids TEXT NOT NULL DEFAULT '[]',
  last_modified TEXT
);
"""


def content_hash(event: NormalizedEvent) -> str:
    """Hash of the fields that matter for extraction"""
    parts = [event.event_type, event.title, event.content, event.state or "", ",".join(event.file_refs), ",".join(event.labels)]
    return hashlib.sha256("\x1f".join(parts).encode()).hexdigest()


class DatabaseService:
    """SQLite access shared by the job service and the knowledge graph store

    One connection guarded by a re-entrant lock. `transaction()` opens
    BEGIN IMMEDIATE at the outermost level and SAVEPOINTs when nested, so a
    failed inner unit rolls back alone.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.DATABASE_PATH
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        self.conn.execute("PRAGMA foreign_keys=ON")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.executescript(SCHEMA)
        logger.info(f"DatabaseService initialized ({self.db_path})")

    def close(self):
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            savepoint = None
            if self._depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
            else:
                savepoint = f"sp_{self._depth}"
                self.conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1

            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if savepoint:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                else:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if savepoint:
                    self.conn.execute(f"RELEASE {savepoint}")
                else:
                    self.conn.execute("COMMIT")

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        """Run one statement, mapping constraint violations to IntegrityError"""
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError as e:
                raise IntegrityError(str(e)) from e

    def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.execute(sql, params).fetchall()

    # Platform Events
    def record_events(self, connector_id: str, events: List[NormalizedEvent]) -> int:
        """Store fetched events; changed content resets a processed event to pending

        Returns:
            Number of events that are new or changed
        """
        changed = 0
        with self.transaction():
            for event in events:
                digest = content_hash(event)
                row = self.fetch_one(
                    "SELECT content_hash FROM platform_event WHERE platform = ? AND platform_id = ?",
                    (event.platform, event.platform_id),
                )
                if row and row["content_hash"] == digest:
                    continue

                changed += 1
                self.execute(
                    """
                    INSERT INTO platform_event
                      (platform, platform_id, connector_id, event_type, timestamp, content_hash, payload_json, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')
                    ON CONFLICT(platform, platform_id) DO UPDATE SET
                      timestamp = excluded.timestamp,
                      content_hash = excluded.content_hash,
                      payload_json = excluded.payload_json,
                      status = 'pending',
                      error_message = NULL,
                      processed_at = NULL
                    """,
                    (
                        event.platform,
                        event.platform_id,
                        connector_id,
                        event.event_type,
                        to_db_time(event.timestamp),
                        digest,
                        event.model_dump_json(),
                    ),
                )
        return changed

    def filter_unprocessed(self, events: List[NormalizedEvent]) -> List[NormalizedEvent]:
        """Drop events already processed with identical content"""
        remaining = []
        for event in events:
            row = self.fetch_one(
                "SELECT content_hash, status FROM platform_event WHERE platform = ? AND platform_id = ?",
                (event.platform, event.platform_id),
            )
            if row and row["status"] == "processed" and row["content_hash"] == content_hash(event):
                continue
            remaining.append(event)
        return remaining

    def mark_events(self, event_keys: List[str], status: str, error_message: Optional[str] = None):
        """Set status for events given as 'platform:platform_id' keys"""
        now = to_db_time(utc_now())
        with self.transaction():
            for key in event_keys:
                platform, platform_id = key.split(":", 1)
                self.execute(
                    """
                    UPDATE platform_event SET status = ?, error_message = ?, processed_at = ?
                    WHERE platform = ? AND platform_id = ?
                    """,
                    (status, error_message, now if status == "processed" else None, platform, platform_id),
                )

    def get_pending_events(self, connector_id: str, limit: int = 100) -> List[NormalizedEvent]:
        """Stored events not yet processed (pending or failed), oldest first"""
        rows = self.fetch_all(
            """
            SELECT payload_json FROM platform_event
            WHERE connector_id = ? AND status IN ('pending', 'failed')
            ORDER BY timestamp ASC LIMIT ?
            """,
            (connector_id, limit),
        )
        return [NormalizedEvent(**json.loads(row["payload_json"])) for row in rows]

    def find_events_referencing(self, target: str, limit: int = 200) -> List[NormalizedEvent]:
        """Stored events that mention target in their payload, newest first

        Callers re-check file_refs/feature_refs; this is a coarse prefilter.
        """
        escaped = target.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.fetch_all(
            """
            SELECT payload_json FROM platform_event
            WHERE payload_json LIKE ? ESCAPE '\\'
            ORDER BY timestamp DESC LIMIT ?
            """,
            (f"%{escaped}%", limit),
        )
        return [NormalizedEvent(**json.loads(row["payload_json"])) for row in rows]

    def count_events(self, status: Optional[str] = None) -> int:
        if status:
            row = self.fetch_one("SELECT COUNT(*) AS n FROM platform_event WHERE status = ?", (status,))
        else:
            row = self.fetch_one("SELECT COUNT(*) AS n FROM platform_event")
        return row["n"]

    def table_counts(self) -> Dict[str, int]:
        """Row counts per table (health and diagnostics)"""
        counts = {}
        for table in (
            "ingestion_job",
            "platform_event",
            "knowledge_entity",
            "knowledge_relationship",
            "decision_record",
            "discussion_summary",
            "feature_context",
            "file_context_history",
        ):
            counts[table] = self.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")["n"]
        return counts
