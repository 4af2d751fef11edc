"""
Durable local storage for the client.
A small SQLite key/value table holding JSON blobs: the current session
snapshot, the pending sync queue, the forced-offline flag and cached data.
"""
import sqlite3
import logging
import json
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from . import config

log = logging.getLogger(__name__)

TABLE_NAME = "kv_store"


class LocalStore:
    """
    Best-effort persistent storage. Unparseable values are treated as absent
    and write failures are logged, never raised to callers.
    """

    def __init__(self, db_path: str = config.LOCAL_STORE_DB_PATH):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def get_db_connection(self) -> sqlite3.Connection:
        """Returns the shared connection, opening it on first use."""
        if self._conn is None:
            # Shared with the scheduler's worker threads; access is serialized by self._lock.
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self) -> None:
        """Creates the key/value table if it does not exist."""
        try:
            with self._lock:
                conn = self.get_db_connection()
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,     -- JSON document
                        updated_at TEXT NOT NULL -- ISO 8601, UTC
                    )
                """)
                conn.commit()
            log.info(f"Local store initialized at {self.db_path}")
        except sqlite3.Error as e:
            log.error(f"Error initializing local store: {e}", exc_info=True)
            raise

    def get_raw(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self.get_db_connection().execute(
                    f"SELECT value FROM {TABLE_NAME} WHERE key = ?", (key,)
                ).fetchone()
            return row["value"] if row else None
        except sqlite3.Error as e:
            log.error(f"Error reading '{key}' from local store: {e}", exc_info=True)
            return None

    def get_json(self, key: str, default: Any = None) -> Any:
        """Returns the decoded value for key, or default when it is missing or corrupt."""
        raw = self.get_raw(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            log.warning(f"Ignoring corrupt local state under '{key}': {e}")
            return default

    def set_json(self, key: str, value: Any) -> bool:
        """Stores value as JSON. Returns False if it could not be persisted."""
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            log.error(f"Error serializing '{key}' for local store: {e}", exc_info=True)
            return False

        now_utc_iso = datetime.now(timezone.utc).isoformat()
        try:
            with self._lock:
                conn = self.get_db_connection()
                conn.execute(
                    f"""
                    INSERT INTO {TABLE_NAME} (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, payload, now_utc_iso),
                )
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(f"Error writing '{key}' to local store: {e}", exc_info=True)
            return False

    def remove(self, key: str) -> bool:
        try:
            with self._lock:
                conn = self.get_db_connection()
                conn.execute(f"DELETE FROM {TABLE_NAME} WHERE key = ?", (key,))
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(f"Error removing '{key}' from local store: {e}", exc_info=True)
            return False

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
