"""Key-path document store backed by the built-in ``sqlite3`` module.

Every record lives at a slash separated path such as ``appointments/{id}`` or
``queue/{date}/{id}`` and is stored as one JSON row.  Reading a parent path
(``queue`` or ``queue/2025-01-06``) returns the nested children, the way a
realtime database would hand back a snapshot.  Writes are grouped with
:meth:`DocumentStore.transaction`, which takes sqlite's write lock up front so
that read-then-write sequences (queue numbering, check-in) are atomic.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from errors import StoreError

logger = logging.getLogger(__name__)

# Determine the path to the SQLite file.  DATABASE_URL may point at a file or
# ":memory:"; otherwise default to ``clinic.db`` next to this module.
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "clinic.db")

DB_PATH = os.getenv("DATABASE_URL", DEFAULT_DB_FILENAME)

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

Callback = Callable[[Any], None]


class PushIdGenerator:
    """Generate 20 character, chronologically sortable unique keys.

    The first 8 characters encode the millisecond timestamp; the remaining 12
    are random, and are incremented instead of re-rolled when two keys are
    generated in the same millisecond so keys stay strictly ordered.
    """

    def __init__(self) -> None:
        self._last_time = 0
        self._last_rand: List[int] = [0] * 12
        self._lock = threading.Lock()

    def __call__(self, now_ms: Optional[int] = None) -> str:
        now = int(time.time() * 1000) if now_ms is None else now_ms
        with self._lock:
            duplicate = now <= self._last_time
            if duplicate:
                now = self._last_time
            self._last_time = now

            time_chars = []
            remaining = now
            for _ in range(8):
                time_chars.append(PUSH_CHARS[remaining % 64])
                remaining //= 64
            key = "".join(reversed(time_chars))

            if not duplicate:
                self._last_rand = [random.randrange(64) for _ in range(12)]
            else:
                idx = 11
                while idx >= 0 and self._last_rand[idx] == 63:
                    self._last_rand[idx] = 0
                    idx -= 1
                if idx >= 0:
                    self._last_rand[idx] += 1
            return key + "".join(PUSH_CHARS[n] for n in self._last_rand)


generate_push_id = PushIdGenerator()


def get_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Return a SQLite connection in autocommit mode.

    Transactions are opened explicitly by :class:`DocumentStore`.
    """
    path = db_path or DB_PATH
    if path.startswith("postgres"):
        raise RuntimeError("PostgreSQL is not supported by the document store")
    conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create the documents table if it does not exist."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS documents (
            path TEXT PRIMARY KEY,
            parent TEXT NOT NULL,
            data TEXT NOT NULL,
            updated_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent);
        """
    )


def _clean(path: str) -> str:
    cleaned = "/".join(part for part in path.strip().split("/") if part)
    if not cleaned:
        raise ValueError("path must be provided")
    return cleaned


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _related(changed: str, watched: str) -> bool:
    return (
        changed == watched
        or changed.startswith(watched + "/")
        or watched.startswith(changed + "/")
    )


class DocumentStore:
    """create / read / update / delete / subscribe over a sqlite connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.RLock()
        self._depth = 0
        self._pending: Set[str] = set()
        self._subscribers: Dict[int, Tuple[str, Callback]] = {}
        self._tokens = itertools.count(1)

    # ----- transactions -------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        """Run the enclosed reads and writes atomically.

        Nested calls join the outermost transaction.  Subscribers are
        notified only after the outermost transaction commits.
        """
        changed: Set[str] = set()
        with self._lock:
            outermost = self._depth == 0
            try:
                if outermost:
                    self.conn.execute("BEGIN IMMEDIATE")
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")
                    changed, self._pending = self._pending, set()
            except sqlite3.Error as exc:
                if outermost:
                    self._rollback()
                raise StoreError(str(exc)) from exc
            except BaseException:
                if outermost:
                    self._rollback()
                raise
        if changed:
            self._notify(changed)

    def _rollback(self) -> None:
        self._pending = set()
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error(f"Rollback failed: {exc}")

    # ----- reads --------------------------------------------------------

    def read(self, path: str) -> Any:
        """Return the document at ``path``, its nested children, or ``None``."""
        path = _clean(path)
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT data FROM documents WHERE path = ?", (path,)
                ).fetchone()
                if row is not None:
                    return json.loads(row["data"])
                rows = self.conn.execute(
                    "SELECT path, data FROM documents WHERE path > ? AND path < ? ORDER BY path",
                    (path + "/", path + "0"),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

        if not rows:
            return None
        tree: Dict[str, Any] = {}
        offset = len(path) + 1
        for row in rows:
            parts = row["path"][offset:].split("/")
            node = tree
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = json.loads(row["data"])
        return tree

    def read_children(self, path: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(key, document)`` pairs directly under ``path`` in key order."""
        value = self.read(path)
        if not isinstance(value, dict):
            return []
        return [(key, doc) for key, doc in value.items() if isinstance(doc, dict)]

    def exists(self, path: str) -> bool:
        return self.read(path) is not None

    # ----- writes -------------------------------------------------------

    def create(self, path: str, data: Dict[str, Any]) -> str:
        """Store ``data`` under a new push ID below ``path`` and return the ID."""
        key = generate_push_id()
        self.set(f"{_clean(path)}/{key}", data)
        return key

    def new_key(self) -> str:
        return generate_push_id()

    def set(self, path: str, data: Dict[str, Any]) -> None:
        path = _clean(path)
        with self.transaction():
            self._write(path, data)

    def update(self, path: str, partial: Dict[str, Any]) -> None:
        """Merge ``partial`` into the document at ``path`` (created if missing)."""
        self.multi_update({path: partial})

    def multi_update(self, updates: Dict[str, Dict[str, Any]]) -> None:
        """Merge several documents in one atomic write."""
        with self.transaction():
            for raw_path, partial in updates.items():
                path = _clean(raw_path)
                row = self.conn.execute(
                    "SELECT data FROM documents WHERE path = ?", (path,)
                ).fetchone()
                merged = json.loads(row["data"]) if row is not None else {}
                merged.update(partial)
                self._write(path, merged)

    def delete(self, path: str) -> None:
        path = _clean(path)
        with self.transaction():
            self.conn.execute(
                "DELETE FROM documents WHERE path = ? OR (path > ? AND path < ?)",
                (path, path + "/", path + "0"),
            )
            self._pending.add(path)

    def _write(self, path: str, data: Dict[str, Any]) -> None:
        self.conn.execute(
            "INSERT INTO documents (path, parent, data, updated_at) VALUES (?, ?, ?, ?)"
            " ON CONFLICT(path) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
            (path, _parent(path), json.dumps(data, default=str), time.time()),
        )
        self._pending.add(path)

    # ----- subscriptions ------------------------------------------------

    def subscribe(self, path: str, callback: Callback) -> Callable[[], None]:
        """Call ``callback`` with the full value at ``path`` now and on every change.

        Returns a function that removes the subscription.
        """
        path = _clean(path)
        token = next(self._tokens)
        with self._lock:
            self._subscribers[token] = (path, callback)
        self._deliver(path, callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def _notify(self, changed: Set[str]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for watched, callback in subscribers:
            if any(_related(path, watched) for path in changed):
                self._deliver(watched, callback)

    def _deliver(self, path: str, callback: Callback) -> None:
        try:
            callback(self.read(path))
        except Exception:
            logger.exception(f"Subscriber for {path} failed")

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self.conn.close()


def open_store(db_path: Optional[str] = None) -> DocumentStore:
    """Connect, create the schema and wrap the connection in a store."""
    try:
        conn = get_connection(db_path)
        init_db(conn)
    except sqlite3.Error as exc:
        raise StoreError(str(exc)) from exc
    return DocumentStore(conn)
