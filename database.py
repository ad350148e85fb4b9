"""
Database module for the local tracker store: trackers, observations and user preferences.

Every synced row carries a cloud_synced flag and a nullable cloud_id pointing at the
row's primary key in Supabase.
"""
import sqlite3
import time
import random
import string
import threading
import logging
from pathlib import Path
from typing import List, Dict, Optional
from datetime import datetime, timezone

from user_config import DEFAULT_TRACKER_COLOR, DEFAULT_THEME, THEMES

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase

TRACKER_FIELDS = {
    "name", "description", "color", "last_restart_at", "restart_count",
    "cloud_synced", "cloud_id",
}
OBSERVATION_FIELDS = {"text", "image_path", "cloud_synced", "cloud_id"}
PREFERENCE_FIELDS = {"cloud_enabled", "premium_active", "premium_expires_at", "theme"}
BOOL_FIELDS = {"cloud_synced", "cloud_enabled", "premium_active"}


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_local_id() -> str:
    """Client-generated primary key: '<epoch ms>-<9 base36 chars>'."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def _to_db(field: str, value):
    if field in BOOL_FIELDS:
        return 1 if value else 0
    return value


class TrackerDatabase:
    """Manages the SQLite database holding trackers, observations and preferences."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to database file. If None, uses the configured location.
        """
        if db_path is None:
            from user_config import get_database_path
            db_path = str(get_database_path())

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._lock = threading.RLock()  # Reentrant lock for thread safety

        self.conn = self._connect_with_retry(db_path)
        self.conn.row_factory = sqlite3.Row
        # Enable WAL mode for better concurrent access (realtime thread + caller)
        self.conn.execute("PRAGMA journal_mode=WAL")
        # Enable foreign key enforcement (SQLite has it off by default)
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._init_database()

    def _connect_with_retry(self, db_path: str, max_retries: int = 5) -> sqlite3.Connection:
        """Connect to SQLite with exponential backoff on 'database is locked'."""
        delay = 0.1
        for attempt in range(max_retries):
            try:
                return sqlite3.connect(db_path, check_same_thread=False)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < max_retries - 1:
                    logger.warning(f"Database locked, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})")
                    time.sleep(delay)
                    delay *= 2
                else:
                    raise

    def _init_database(self):
        """Create tables if they don't exist."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.executescript(f"""
                CREATE TABLE IF NOT EXISTS trackers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    name TEXT NOT NULL,
                    description TEXT,
                    color TEXT DEFAULT '{DEFAULT_TRACKER_COLOR}',
                    created_at TEXT NOT NULL,
                    last_restart_at TEXT NOT NULL,
                    restart_count INTEGER DEFAULT 0,
                    cloud_synced INTEGER DEFAULT 0,
                    cloud_id TEXT
                );

                CREATE TABLE IF NOT EXISTS observations (
                    id TEXT PRIMARY KEY,
                    tracker_id TEXT NOT NULL,
                    text TEXT,
                    image_path TEXT,
                    created_at TEXT NOT NULL,
                    cloud_synced INTEGER DEFAULT 0,
                    cloud_id TEXT,
                    FOREIGN KEY (tracker_id) REFERENCES trackers(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS user_preferences (
                    user_id TEXT PRIMARY KEY,
                    cloud_enabled INTEGER DEFAULT 0,
                    premium_active INTEGER DEFAULT 0,
                    premium_expires_at TEXT,
                    theme TEXT DEFAULT '{DEFAULT_THEME}'
                );

                CREATE INDEX IF NOT EXISTS idx_trackers_user_id ON trackers(user_id);
                CREATE INDEX IF NOT EXISTS idx_observations_tracker_id ON observations(tracker_id);
            """)
            self.conn.commit()
            self._ensure_columns()

    def _ensure_columns(self):
        """Ensure newer columns exist for databases created by older versions."""
        cursor = self.conn.cursor()

        def add_column(table: str, name: str, ddl: str):
            cursor.execute(f"PRAGMA table_info({table})")
            cols = {row[1] for row in cursor.fetchall()}
            if name not in cols:
                cursor.execute(f"ALTER TABLE {table} ADD COLUMN {ddl}")
                logger.info(f"Added column {table}.{name}")

        add_column("trackers", "color", f"color TEXT DEFAULT '{DEFAULT_TRACKER_COLOR}'")
        add_column("user_preferences", "theme", f"theme TEXT DEFAULT '{DEFAULT_THEME}'")
        self.conn.commit()

    def close(self):
        """Close database connection cleanly."""
        try:
            with self._lock:
                self.conn.close()
            logger.info("Database closed cleanly")
        except sqlite3.Error as e:
            logger.error(f"Error closing database: {e}")

    # --- Row conversion ---

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict:
        record = dict(row)
        for field in BOOL_FIELDS:
            if field in record:
                record[field] = bool(record[field])
        return record

    def _update(self, table: str, key_column: str, key, allowed: set, fields: Dict) -> bool:
        """UPDATE only the allowed fields present in `fields`. Returns False if nothing to do."""
        updates = {k: _to_db(k, v) for k, v in fields.items() if k in allowed}
        if not updates:
            return False
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(f"UPDATE {table} SET {set_clause} WHERE {key_column} IS ?",
                           list(updates.values()) + [key])
            self.conn.commit()
        return True

    # --- Trackers ---

    def get_all_trackers(self, user_id: Optional[str]) -> List[Dict]:
        """Get a user's trackers (user_id None = anonymous/local-only), newest first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM trackers WHERE user_id IS ? ORDER BY created_at DESC", (user_id,))
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    def get_tracker(self, tracker_id: str) -> Optional[Dict]:
        """Get tracker by local ID."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM trackers WHERE id = ?", (tracker_id,))
            row = cursor.fetchone()
        return self._row_to_dict(row) if row else None

    def get_tracker_by_cloud_id(self, user_id: Optional[str], cloud_id: str) -> Optional[Dict]:
        """Find the local tracker mirrored from a remote tracker id."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM trackers WHERE user_id IS ? AND cloud_id = ?", (user_id, cloud_id))
            row = cursor.fetchone()
        return self._row_to_dict(row) if row else None

    def create_tracker(self, user_id: Optional[str], name: str, description: str = "",
                       color: str = None, restart_count: int = 0,
                       created_at: str = None, last_restart_at: str = None) -> Dict:
        """Create a tracker and return it. Timestamps default to now."""
        tracker_id = generate_local_id()
        now = utc_now_iso()
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO trackers (id, user_id, name, description, color, created_at,
                                      last_restart_at, restart_count, cloud_synced, cloud_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, NULL)
            """, (tracker_id, user_id, name, description, color or DEFAULT_TRACKER_COLOR,
                  created_at or now, last_restart_at or created_at or now, restart_count or 0))
            self.conn.commit()

        created = self.get_tracker(tracker_id)
        if created is None:
            raise sqlite3.DatabaseError("Failed to create tracker")
        return created

    def update_tracker(self, tracker_id: str, **fields) -> None:
        """Update specific fields on a tracker. Unknown fields are ignored."""
        self._update("trackers", "id", tracker_id, TRACKER_FIELDS, fields)

    def restart_tracker(self, tracker_id: str) -> Optional[Dict]:
        """Record a restart: bump restart_count and stamp last_restart_at.

        cloud_synced is left untouched.
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE trackers SET restart_count = COALESCE(restart_count, 0) + 1,
                                    last_restart_at = ?
                WHERE id = ?
            """, (utc_now_iso(), tracker_id))
            self.conn.commit()
        return self.get_tracker(tracker_id)

    def delete_tracker(self, tracker_id: str):
        """Delete a tracker (its observations cascade)."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM trackers WHERE id = ?", (tracker_id,))
            self.conn.commit()

    def get_tracker_count(self, user_id: Optional[str]) -> int:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM trackers WHERE user_id IS ?", (user_id,))
            row = cursor.fetchone()
        return row[0] if row else 0

    # --- Observations ---

    def get_observations_by_tracker(self, tracker_id: str) -> List[Dict]:
        """Get a tracker's observations, newest first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM observations WHERE tracker_id = ? ORDER BY created_at DESC",
                           (tracker_id,))
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    def get_observation(self, observation_id: str) -> Optional[Dict]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM observations WHERE id = ?", (observation_id,))
            row = cursor.fetchone()
        return self._row_to_dict(row) if row else None

    def create_observation(self, tracker_id: str, text: str = "", image_path: str = None,
                           created_at: str = None) -> Dict:
        """Create an observation under a tracker and return it."""
        observation_id = generate_local_id()
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO observations (id, tracker_id, text, image_path, created_at, cloud_synced, cloud_id)
                VALUES (?, ?, ?, ?, ?, 0, NULL)
            """, (observation_id, tracker_id, text, image_path, created_at or utc_now_iso()))
            self.conn.commit()

        created = self.get_observation(observation_id)
        if created is None:
            raise sqlite3.DatabaseError("Failed to create observation")
        return created

    def update_observation(self, observation_id: str, **fields) -> None:
        """Update specific fields on an observation. Unknown fields are ignored."""
        self._update("observations", "id", observation_id, OBSERVATION_FIELDS, fields)

    def delete_observation(self, observation_id: str):
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
            self.conn.commit()

    # --- User preferences ---

    def get_user_preferences(self, user_id: Optional[str]) -> Dict:
        """Get preferences for a user, creating the default row on first read."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM user_preferences WHERE user_id IS ?", (user_id,))
            row = cursor.fetchone()
            if row is None:
                cursor.execute("""
                    INSERT INTO user_preferences (user_id, cloud_enabled, premium_active, premium_expires_at, theme)
                    VALUES (?, 0, 0, NULL, ?)
                """, (user_id, DEFAULT_THEME))
                self.conn.commit()
                return {
                    "user_id": user_id,
                    "cloud_enabled": False,
                    "premium_active": False,
                    "premium_expires_at": None,
                    "theme": DEFAULT_THEME,
                }

        prefs = self._row_to_dict(row)
        if prefs.get("theme") not in THEMES:
            prefs["theme"] = DEFAULT_THEME
        return prefs

    def update_user_preferences(self, user_id: Optional[str], **fields) -> None:
        """Update preference fields, creating the row first if it is missing."""
        self.get_user_preferences(user_id)
        self._update("user_preferences", "user_id", user_id, PREFERENCE_FIELDS, fields)


_db: Optional[TrackerDatabase] = None
_db_lock = threading.Lock()


def get_database(db_path: str = None) -> TrackerDatabase:
    """Open the process-wide database on first use and reuse it afterwards."""
    global _db
    with _db_lock:
        if _db is None:
            _db = TrackerDatabase(db_path)
        return _db


def close_database():
    global _db
    with _db_lock:
        if _db is not None:
            _db.close()
            _db = None
