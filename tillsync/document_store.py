# Document Store - SQLite-backed JSON document storage for the TillSync ledger
# Atomic single-document updates ($inc, $addToSet, $pull) and a unique key per collection

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import PersistenceConflict

logger = logging.getLogger(__name__)

_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    head, _, rest = path.partition('.')
    value = doc.get(head, _MISSING)
    if value is _MISSING:
        return default
    if rest:
        if not isinstance(value, dict):
            return default
        return value.get(rest, default)
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    head, _, rest = path.partition('.')
    if rest:
        sub = doc.get(head)
        if not isinstance(sub, dict):
            sub = {}
            doc[head] = sub
        sub[rest] = value
    else:
        doc[head] = value


def _unset_path(doc: Dict[str, Any], path: str) -> None:
    head, _, rest = path.partition('.')
    if rest:
        sub = doc.get(head)
        if isinstance(sub, dict):
            sub.pop(rest, None)
    else:
        doc.pop(head, None)


def _equals(value: Any, expected: Any) -> bool:
    # An array field matches a scalar when it contains it
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def matches(doc: Dict[str, Any], filt: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a small Mongo-style filter: equality, $ne, $in, $exists, $gt, $lt."""
    for path, cond in (filt or {}).items():
        value = _get_path(doc, path)
        if isinstance(cond, dict) and cond and all(k.startswith('$') for k in cond):
            for op, arg in cond.items():
                if op == '$ne':
                    ok = not _equals(value, arg)
                elif op == '$in':
                    ok = any(_equals(value, a) for a in arg)
                elif op == '$exists':
                    ok = (_get_path(doc, path, _MISSING) is not _MISSING) == bool(arg)
                elif op == '$gt':
                    ok = value is not None and value > arg
                elif op == '$lt':
                    ok = value is not None and value < arg
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
                if not ok:
                    return False
        elif not _equals(value, cond):
            return False
    return True


class DocumentStore:
    """JSON documents in SQLite, one row per document"""

    DB_PATH = "tillsync_ledger.db"

    def __init__(self, db_path: str = None, unique_fields: Optional[Dict[str, str]] = None):
        self.db_path = db_path or self.DB_PATH
        # collection -> field whose value must be unique (NULL/absent allowed many times)
        self.unique_fields = dict(unique_fields or {})
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; writes open their own BEGIN IMMEDIATE
        return sqlite3.connect(self.db_path, timeout=30, isolation_level=None)

    def _init_db(self):
        """Initialize database schema"""
        with self.lock:
            conn = self._connect()
            try:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        unique_key TEXT,
                        body TEXT NOT NULL,
                        created_at TEXT,
                        updated_at TEXT,
                        PRIMARY KEY (collection, id)
                    )
                ''')
                conn.execute('''
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_documents_unique_key
                    ON documents (collection, unique_key)
                ''')
            finally:
                conn.close()

    def _unique_key(self, collection: str, doc: Dict[str, Any]) -> Optional[str]:
        field_name = self.unique_fields.get(collection)
        if not field_name:
            return None
        value = doc.get(field_name)
        return None if value is None else str(value)

    def insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document, assigning an id when it has none.

        Raises PersistenceConflict when the collection's unique field is taken.
        """
        doc = dict(doc)
        if not doc.get('id'):
            doc['id'] = uuid.uuid4().hex
        unique_key = self._unique_key(collection, doc)
        now = datetime.now().isoformat()
        with self.lock:
            conn = self._connect()
            try:
                conn.execute('''
                    INSERT INTO documents (collection, id, unique_key, body, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', (collection, doc['id'], unique_key, json.dumps(doc), now, now))
            except sqlite3.IntegrityError:
                raise PersistenceConflict(collection, unique_key or doc['id'])
            finally:
                conn.close()
        return doc

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        with self.lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    'SELECT body FROM documents WHERE collection = ? AND id = ?',
                    (collection, str(doc_id)),
                ).fetchone()
            finally:
                conn.close()
        return json.loads(row[0]) if row else None

    def find_by_ids(self, collection: str, ids: Iterable[str]) -> List[Dict[str, Any]]:
        """Fetch documents for the given ids, in the order given; unknown ids are skipped."""
        ids = [str(i) for i in ids]
        if not ids:
            return []
        placeholders = ','.join('?' for _ in ids)
        with self.lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    f'SELECT id, body FROM documents WHERE collection = ? AND id IN ({placeholders})',
                    [collection] + ids,
                ).fetchall()
            finally:
                conn.close()
        by_id = {row[0]: json.loads(row[1]) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find(self, collection: str, filt: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self.lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    'SELECT body FROM documents WHERE collection = ? ORDER BY rowid ASC',
                    (collection,),
                ).fetchall()
            finally:
                conn.close()
        docs = (json.loads(row[0]) for row in rows)
        return [d for d in docs if matches(d, filt)]

    def find_one(self, collection: str, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # Unique-field lookups go straight to the index
        field_name = self.unique_fields.get(collection)
        if field_name and set(filt) == {field_name} and not isinstance(filt[field_name], dict):
            with self.lock:
                conn = self._connect()
                try:
                    row = conn.execute(
                        'SELECT body FROM documents WHERE collection = ? AND unique_key = ?',
                        (collection, str(filt[field_name])),
                    ).fetchone()
                finally:
                    conn.close()
            return json.loads(row[0]) if row else None
        for doc in self.find(collection, filt):
            return doc
        return None

    def count(self, collection: str, filt: Optional[Dict[str, Any]] = None) -> int:
        return len(self.find(collection, filt))

    def update(self, collection: str, doc_id: str, *,
               match: Optional[Dict[str, Any]] = None,
               set_fields: Optional[Dict[str, Any]] = None,
               unset: Iterable[str] = (),
               inc: Optional[Dict[str, float]] = None,
               add_to_set: Optional[Dict[str, Any]] = None,
               pull: Optional[Dict[str, Any]] = None,
               floor_at_zero: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
        """Atomically apply update operators to one document.

        The read, the match check and the write happen inside one
        BEGIN IMMEDIATE transaction. Returns the updated document, or None
        when the document is missing or does not satisfy `match`.
        Paths may be dotted one level deep ('tender_breakdown.CASH').
        """
        now = datetime.now().isoformat()
        with self.lock:
            conn = self._connect()
            try:
                conn.execute('BEGIN IMMEDIATE')
                row = conn.execute(
                    'SELECT body FROM documents WHERE collection = ? AND id = ?',
                    (collection, str(doc_id)),
                ).fetchone()
                if row is None:
                    conn.execute('ROLLBACK')
                    return None
                doc = json.loads(row[0])
                if not matches(doc, match):
                    conn.execute('ROLLBACK')
                    return None

                for path, value in (set_fields or {}).items():
                    _set_path(doc, path, value)
                for path in unset:
                    _unset_path(doc, path)
                for path, delta in (inc or {}).items():
                    current = _get_path(doc, path) or 0
                    new_value = current + delta
                    if isinstance(new_value, float):
                        new_value = round(new_value, 2)
                    _set_path(doc, path, new_value)
                for path in floor_at_zero:
                    value = _get_path(doc, path)
                    if value is not None and value < 0:
                        _set_path(doc, path, 0)
                for path, value in (add_to_set or {}).items():
                    current = list(_get_path(doc, path) or [])
                    if value not in current:
                        current.append(value)
                    _set_path(doc, path, current)
                for path, value in (pull or {}).items():
                    current = list(_get_path(doc, path) or [])
                    _set_path(doc, path, [v for v in current if v != value])

                unique_key = self._unique_key(collection, doc)
                try:
                    conn.execute('''
                        UPDATE documents SET body = ?, unique_key = ?, updated_at = ?
                        WHERE collection = ? AND id = ?
                    ''', (json.dumps(doc), unique_key, now, collection, str(doc_id)))
                except sqlite3.IntegrityError:
                    conn.execute('ROLLBACK')
                    raise PersistenceConflict(collection, unique_key)
                conn.execute('COMMIT')
                return doc
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute('ROLLBACK')
                raise
            finally:
                conn.close()
