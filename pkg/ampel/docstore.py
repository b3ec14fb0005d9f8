"""
Document store backend (SQLite).

Schemaless JSON documents grouped into collections. Provides owner-scoped
live queries that restate the full matching result set after every commit,
one-shot reads, single-document writes, and atomic multi-document batches.
"""
import json
import logging
import sqlite3
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from .identity import IdentityProvider

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    """Placeholder replaced by the commit time when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    """Raised when the store rejects a read or write."""
    pass


class PermissionDenied(StoreError):
    """Raised when the caller is not the owner of the data it touches."""
    pass


class NotFound(StoreError):
    """Raised when updating a document that does not exist."""
    pass


@contextmanager
def _connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection in WAL mode; commit on success, roll back on error."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


@dataclass(frozen=True)
class Query:
    """Owner-scoped equality query over one collection."""
    collection: str
    owner: str
    where: Tuple[Tuple[str, Any], ...] = ()

    def matches(self, doc: Dict[str, Any]) -> bool:
        return all(doc.get(name) == value for name, value in self.where)


@dataclass
class Snapshot:
    """Every document currently matching a query, in insertion order."""
    query: Query
    docs: List[Dict[str, Any]]

    def __len__(self) -> int:
        return len(self.docs)


@dataclass
class _Listener:
    id: int
    query: Query
    on_next: Callable[[Snapshot], None]
    on_error: Optional[Callable[[StoreError], None]] = None
    last_docs: Optional[List[Dict[str, Any]]] = field(default=None, repr=False)


class ListenerRegistration:
    """Handle returned by listen(); call remove() to stop receiving snapshots."""

    def __init__(self, store: "DocumentStore", listener_id: int):
        self._store = store
        self.listener_id = listener_id

    @property
    def active(self) -> bool:
        return self.listener_id in self._store._listeners

    def remove(self) -> None:
        self._store._listeners.pop(self.listener_id, None)


class WriteBatch:
    """Updates and deletes applied together or not at all."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[tuple] = []

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", collection, doc_id, dict(fields)))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", collection, doc_id, None))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        self._store._apply(self._ops)
        self._ops = []


class DocumentStore:
    """SQLite-backed document store with live queries."""

    def __init__(
        self,
        db_path: str = None,
        identity: Optional[IdentityProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        autoflush: bool = True,
    ):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "ampel" / "notes.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.identity = identity
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.autoflush = autoflush
        self._listeners: Dict[int, _Listener] = {}
        self._next_listener_id = 0
        # (callback, payload) in commit order
        self._pending: Deque[tuple] = deque()
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    data TEXT NOT NULL,  -- JSON object, owner included
                    UNIQUE (collection, doc_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(collection, owner)"
            )

    # ── Security rule ──────────────────────────────────────────────────────

    def _check_owner(self, owner: Optional[str]) -> None:
        """Only the signed-in full principal may touch its own documents."""
        if self.identity is None:
            return
        principal = self.identity.current
        if not principal.has_access or principal.uid != owner:
            raise PermissionDenied(f"Missing or insufficient permissions for owner {owner!r}")

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document by id, or None."""
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT doc_id, owner, data FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Error reading {collection}/{doc_id}: {e}") from e
        if not row:
            return None
        self._check_owner(row["owner"])
        return self._row_to_doc(row)

    def get_all(self, query: Query) -> List[Dict[str, Any]]:
        """One-shot read of every document matching the query."""
        self._check_owner(query.owner)
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT doc_id, owner, data FROM documents "
                    "WHERE collection = ? AND owner = ? ORDER BY seq ASC",
                    (query.collection, query.owner),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Error querying {query.collection}: {e}") from e
        docs = [self._row_to_doc(row) for row in rows]
        return [d for d in docs if query.matches(d)]

    # ── Single-document writes ─────────────────────────────────────────────

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a generated id. Returns the id."""
        doc_id = uuid.uuid4().hex[:20]
        self.set(collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or fully replace a document."""
        self._apply([("set", collection, doc_id, dict(data))])

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document. Raises NotFound if missing."""
        self._apply([("update", collection, doc_id, dict(fields))])

    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""
        self._apply([("delete", collection, doc_id, None)])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _apply(self, ops: List[tuple]) -> None:
        """Apply write ops in one transaction, then refresh live queries."""
        if not ops:
            return
        now = self._clock().isoformat()
        try:
            with _connect(self.db_path) as conn:
                for kind, collection, doc_id, fields in ops:
                    if kind == "set":
                        self._apply_set(conn, collection, doc_id, self._resolve(fields, now))
                    elif kind == "update":
                        self._apply_update(conn, collection, doc_id, self._resolve(fields, now))
                    else:
                        self._apply_delete(conn, collection, doc_id)
        except sqlite3.Error as e:
            raise StoreError(f"Write failed: {e}") from e
        logger.debug(f"Committed {len(ops)} write(s)")
        self._notify()

    def _apply_set(self, conn, collection, doc_id, data):
        owner = data.get("owner")
        self._check_owner(owner)
        if not owner:
            raise PermissionDenied(f"{collection}/{doc_id} has no owner")
        existing = self._fetch_row(conn, collection, doc_id)
        if existing:
            self._check_owner(existing["owner"])
            conn.execute(
                "UPDATE documents SET owner = ?, data = ? WHERE collection = ? AND doc_id = ?",
                (owner, json.dumps(data), collection, doc_id),
            )
        else:
            conn.execute(
                "INSERT INTO documents (collection, doc_id, owner, data) VALUES (?, ?, ?, ?)",
                (collection, doc_id, owner, json.dumps(data)),
            )

    def _apply_update(self, conn, collection, doc_id, fields):
        row = self._fetch_row(conn, collection, doc_id)
        if not row:
            raise NotFound(f"No document to update: {collection}/{doc_id}")
        self._check_owner(row["owner"])
        if "owner" in fields and fields["owner"] != row["owner"]:
            raise PermissionDenied(f"Cannot change owner of {collection}/{doc_id}")
        data = json.loads(row["data"])
        data.update(fields)
        conn.execute(
            "UPDATE documents SET data = ? WHERE collection = ? AND doc_id = ?",
            (json.dumps(data), collection, doc_id),
        )

    def _apply_delete(self, conn, collection, doc_id):
        row = self._fetch_row(conn, collection, doc_id)
        if not row:
            return
        self._check_owner(row["owner"])
        conn.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )

    # ── Live queries ───────────────────────────────────────────────────────

    def listen(
        self,
        query: Query,
        on_next: Callable[[Snapshot], None],
        on_error: Optional[Callable[[StoreError], None]] = None,
    ) -> ListenerRegistration:
        """
        Start a live query.

        An initial snapshot is queued right away, then one more after every
        commit that changes the matching set. A query rejected by the owner
        rule is terminated and on_error receives the error.
        """
        self._next_listener_id += 1
        listener = _Listener(self._next_listener_id, query, on_next, on_error)
        self._listeners[listener.id] = listener
        registration = ListenerRegistration(self, listener.id)
        self._refresh(listener, initial=True)
        if self.autoflush:
            self.flush()
        return registration

    def flush(self) -> int:
        """
        Dispatch queued snapshots in commit order. Returns how many ran.

        Deliveries queued before a listener was removed are still dispatched;
        consumers must discard what they no longer expect.
        """
        delivered = 0
        while self._pending:
            callback, payload = self._pending.popleft()
            delivered += 1
            try:
                callback(payload)
            except Exception:
                logger.exception("Error in snapshot callback")
        return delivered

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _notify(self) -> None:
        for listener in list(self._listeners.values()):
            self._refresh(listener)
        if self.autoflush:
            self.flush()

    def _refresh(self, listener: _Listener, initial: bool = False) -> None:
        try:
            docs = self.get_all(listener.query)
        except StoreError as e:
            logger.warning(f"Live query on {listener.query.collection} terminated: {e}")
            self._listeners.pop(listener.id, None)
            if listener.on_error:
                self._pending.append((listener.on_error, e))
            return
        if not initial and docs == listener.last_docs:
            return
        listener.last_docs = docs
        self._pending.append((listener.on_next, Snapshot(listener.query, docs)))

    # ── Helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _fetch_row(conn, collection, doc_id):
        return conn.execute(
            "SELECT doc_id, owner, data FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()

    @staticmethod
    def _resolve(fields: Dict[str, Any], now: str) -> Dict[str, Any]:
        return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in fields.items()}

    @staticmethod
    def _row_to_doc(row: sqlite3.Row) -> Dict[str, Any]:
        doc = json.loads(row["data"])
        doc["id"] = row["doc_id"]
        return doc
