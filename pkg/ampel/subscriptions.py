"""
Subscription manager: at most one live query per logical slot.

Slots:
  categories       Categories(owner)
  notes            Notes(owner)
  filter_stacks    Stacks(owner, category_id=active filter)
  creation_stacks  Stacks(owner, category_id=creation category)

Store handles never leave this module. Every delivery is checked against the
slot's current handle, so snapshots that arrive after a close are dropped.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .docstore import DocumentStore, ListenerRegistration, Query, Snapshot, StoreError
from .schema import CATEGORIES, NOTES, STACKS

logger = logging.getLogger(__name__)

CATEGORIES_SLOT = "categories"
NOTES_SLOT = "notes"
FILTER_STACKS_SLOT = "filter_stacks"
CREATION_STACKS_SLOT = "creation_stacks"

ALL_SLOTS = (CATEGORIES_SLOT, NOTES_SLOT, FILTER_STACKS_SLOT, CREATION_STACKS_SLOT)


class SubscriptionError(Exception):
    """A live query failed (permission denied, transient fault)."""

    def __init__(self, slot: str, cause: Exception):
        super().__init__(f"Subscription {slot} failed: {cause}")
        self.slot = slot
        self.cause = cause


@dataclass(frozen=True)
class QueryKey:
    """Scope of one logical query."""
    collection: str
    owner: str
    category_id: Optional[str] = None

    @classmethod
    def categories(cls, owner: str) -> "QueryKey":
        return cls(CATEGORIES, owner)

    @classmethod
    def notes(cls, owner: str) -> "QueryKey":
        return cls(NOTES, owner)

    @classmethod
    def stacks(cls, owner: str, category_id: str) -> "QueryKey":
        return cls(STACKS, owner, category_id)

    def to_query(self) -> Query:
        where = (("category_id", self.category_id),) if self.category_id else ()
        return Query(self.collection, self.owner, where)


class _Handle:
    def __init__(self, key: QueryKey):
        self.key = key
        self.registration: Optional[ListenerRegistration] = None
        self.closed = False

    def close(self) -> None:
        self.closed = True
        if self.registration is not None:
            self.registration.remove()


class SubscriptionManager:
    """Owns the slot → live handle mapping."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self._handles: Dict[str, _Handle] = {}

    def open(
        self,
        slot: str,
        key: QueryKey,
        on_snapshot: Callable[[Snapshot], None],
        on_error: Callable[[SubscriptionError], None],
    ) -> bool:
        """
        Open (or re-scope) a slot.

        Returns False when the slot is already live with the same key. A slot
        with a different key is closed before the new query starts.
        """
        current = self._handles.get(slot)
        if current is not None and current.key == key and not current.closed:
            return False
        self.close(slot)

        handle = _Handle(key)
        # Registered before listen(): the initial snapshot may arrive inline
        self._handles[slot] = handle

        def deliver(snapshot: Snapshot):
            if self._is_current(slot, handle):
                on_snapshot(snapshot)
            else:
                logger.debug(f"Dropped stale snapshot for {slot}")

        def fail(error: StoreError):
            if not self._is_current(slot, handle):
                return
            handle.closed = True
            self._handles.pop(slot, None)
            on_error(SubscriptionError(slot, error))

        handle.registration = self.store.listen(key.to_query(), deliver, fail)
        logger.debug(f"Opened {slot} for {key}")
        return True

    def close(self, slot: str) -> None:
        handle = self._handles.pop(slot, None)
        if handle is not None:
            handle.close()
            logger.debug(f"Closed {slot}")

    def close_all(self) -> None:
        for slot in list(self._handles):
            self.close(slot)

    def is_open(self, slot: str) -> bool:
        handle = self._handles.get(slot)
        return handle is not None and not handle.closed

    def key_for(self, slot: str) -> Optional[QueryKey]:
        handle = self._handles.get(slot)
        return handle.key if handle is not None else None

    def live_count(self) -> int:
        return sum(1 for h in self._handles.values() if not h.closed)

    def _is_current(self, slot: str, handle: _Handle) -> bool:
        return self._handles.get(slot) is handle and not handle.closed
