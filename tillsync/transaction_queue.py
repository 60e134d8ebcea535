# Transaction Queue - durable pending-sync list for the TillSync till client
# Held as one JSON blob in a SQLite key-value table

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """SQLite-backed get/set/remove of named string blobs"""

    DB_PATH = "tillsync_client.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DB_PATH
        self.lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Initialize database schema"""
        with self.lock:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                )
            ''')
            conn.commit()
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self.lock:
            conn = sqlite3.connect(self.db_path)
            try:
                row = conn.execute('SELECT value FROM state WHERE key = ?', (key,)).fetchone()
            finally:
                conn.close()
        return row[0] if row else None

    def set(self, key: str, value: str):
        with self.lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute('''
                    INSERT OR REPLACE INTO state (key, value, updated_at)
                    VALUES (?, ?, ?)
                ''', (key, value, datetime.now().isoformat()))
                conn.commit()
            finally:
                conn.close()

    def remove(self, key: str):
        with self.lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute('DELETE FROM state WHERE key = ?', (key,))
                conn.commit()
            finally:
                conn.close()

    def save_state(self, key: str, value: Any):
        """Save a JSON-serializable state value"""
        self.set(key, json.dumps(value))

    def load_state(self, key: str, default: Any = None) -> Any:
        """Load state value"""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return raw


class LocalTransactionQueue:
    """Client-side queue of transactions waiting to be uploaded.

    Entries are keyed by the caller-supplied external_id. Reads never raise:
    a corrupt or unreadable cache must not block checkout, so it reads as empty.
    Every read-modify-write holds the queue lock, so a sale recorded while a
    sync pass is running is never overwritten.
    """

    STORAGE_KEY = 'offline_transactions'

    def __init__(self, storage: KeyValueStore, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key
        self.lock = threading.RLock()

    def enqueue(self, transaction: Dict[str, Any]):
        """Append a transaction; no identifier is assigned here."""
        if not transaction.get('external_id'):
            raise ValueError("Queued transactions need an external_id")
        entry = dict(transaction)
        entry.setdefault('queued_at', datetime.now().isoformat())
        with self.lock:
            entries = self.drain()
            entries.append(entry)
            self._write(entries)
        logger.info(f"Queued transaction {entry['external_id']} ({len(entries)} pending)")

    def drain(self) -> List[Dict[str, Any]]:
        """Return every queued entry, oldest first, without removing anything."""
        try:
            raw = self.storage.get(self.key)
        except sqlite3.Error as e:
            logger.error(f"Could not read pending queue: {e}")
            return []
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except ValueError as e:
            logger.error(f"Pending queue is corrupt, treating as empty: {e}")
            return []
        if not isinstance(entries, list):
            logger.error("Pending queue is not a list, treating as empty")
            return []
        return [e for e in entries if isinstance(e, dict)]

    def remove_synced(self, ids: Iterable[str]):
        """Delete entries whose external_id is in ids."""
        ids = set(ids)
        if not ids:
            return
        with self.lock:
            remaining = [e for e in self.drain() if e.get('external_id') not in ids]
            self._write(remaining)

    def remove_entries(self, processed: Iterable[Dict[str, Any]]) -> int:
        """Delete one stored copy of each processed entry; anything queued since stays.

        Returns how many entries were removed.
        """
        processed = list(processed)
        if not processed:
            return 0
        with self.lock:
            remaining = self.drain()
            removed = 0
            for entry in processed:
                try:
                    remaining.remove(entry)
                except ValueError:
                    continue
                removed += 1
            self._write(remaining)
        return removed

    def replace_all(self, entries: List[Dict[str, Any]]):
        """Overwrite the queue with entries."""
        with self.lock:
            self._write(list(entries))

    def clear(self):
        with self.lock:
            self.storage.remove(self.key)

    def pending_count(self) -> int:
        return len(self.drain())

    def _write(self, entries: List[Dict[str, Any]]):
        if entries:
            self.storage.set(self.key, json.dumps(entries))
        else:
            self.storage.remove(self.key)
