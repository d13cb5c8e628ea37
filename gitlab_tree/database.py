"""
SQLite-backed key-value cache for connection settings, group selection and data snapshots.
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import SCHEMA_SQL

logger = logging.getLogger(__name__)


class CacheStore:
    """Persistent JSON key-value store in a single SQLite table."""

    def __init__(self, db_path: str):
        """
        Initialize cache database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.conn = None
        self._connect()
        self._initialize_schema()

    def _connect(self):
        """Establish database connection."""
        logger.debug(f"Opening cache database: {self.db_path}")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row

    def _initialize_schema(self):
        """Create the cache table if it doesn't exist."""
        cursor = self.conn.cursor()
        cursor.execute(SCHEMA_SQL)
        self.conn.commit()

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a raw entry.

        Returns:
            Dictionary with 'value' (decoded) and 'stored_at', or None when the
            key is missing or its value can't be decoded
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT value, stored_at FROM cache_entries WHERE key = ?", (key,))
        row = cursor.fetchone()
        if row is None:
            return None

        try:
            value = json.loads(row['value'])
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry: {key}")
            return None

        return {'value': value, 'stored_at': row['stored_at']}

    def get(self, key: str, default: Any = None) -> Any:
        """Get the decoded value stored under key."""
        entry = self.get_entry(key)
        if entry is None:
            return default
        return entry['value']

    def set(self, key: str, value: Any):
        """
        Store a JSON-serializable value.

        Best effort: storage and serialization failures are logged, never raised.
        """
        try:
            payload = json.dumps(value)
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, stored_at) VALUES (?, ?, ?)",
                (key, payload, time.time())
            )
            self.conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Failed to write cache entry {key}: {e}")
            return

        logger.debug(f"Stored cache entry {key} ({len(payload)} bytes)")

    def remove(self, key: str):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self) -> List[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT key FROM cache_entries ORDER BY key")
        return [row['key'] for row in cursor.fetchall()]

    def clear(self) -> int:
        """Remove every entry. Returns the number of entries deleted."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM cache_entries")
        deleted_count = cursor.rowcount
        self.conn.commit()
        logger.info(f"Cleared {deleted_count} cache entries")
        return deleted_count

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about stored entries.

        Returns:
            Statistics dictionary
        """
        sql = """
            SELECT
                COUNT(*) as entry_count,
                COALESCE(SUM(LENGTH(value)), 0) as total_bytes,
                MIN(stored_at) as oldest_entry,
                MAX(stored_at) as newest_entry
            FROM cache_entries
        """
        cursor = self.conn.cursor()
        cursor.execute(sql)
        row = cursor.fetchone()
        return dict(row) if row else {}

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Cache database closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class MemoryStore:
    """In-process store with the CacheStore interface, for values that must not hit disk."""

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(key)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        return entry['value']

    def set(self, key: str, value: Any):
        self._entries[key] = {'value': value, 'stored_at': time.time()}

    def remove(self, key: str):
        self._entries.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def close(self):
        pass
