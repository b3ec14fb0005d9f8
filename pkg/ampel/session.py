"""
Notes session: live, owner-scoped state for the signed-in principal.

Wires the identity gate, the subscription slots, the normalizer, the derived
views and the mutation engine together. Snapshots flow in through the
subscription manager; mutations go out through the engine and come back as
snapshots.

Events (subscribe(event, callback)):
  access_changed      access: bool
  state_changed       slot: str
  subscription_error  slot: str, error: SubscriptionError
  mutation_failed     error: MutationError
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .docstore import DocumentStore, Snapshot
from .identity import IdentityProvider, Principal
from .mutations import CascadeResult, ConfirmFn, MutationEngine, MutationError
from .normalizer import normalize_categories, normalize_notes, normalize_stacks
from .schema import CATEGORIES, NOTES, SHOW_ALL, STACKS, Category, Color, Note, Stack
from .selection import SelectionMemory
from .subscriptions import (
    ALL_SLOTS,
    CATEGORIES_SLOT,
    CREATION_STACKS_SLOT,
    FILTER_STACKS_SLOT,
    NOTES_SLOT,
    QueryKey,
    SubscriptionError,
    SubscriptionManager,
)
from .ui_state import Menu, TransientUIState
from .views import DerivedViews, build_views

logger = logging.getLogger(__name__)

# create_note() default: take category and stack from the creation selection
FROM_SELECTION = object()


class NotesSession:
    """Live notes state plus the operations a user can perform on it."""

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityProvider,
        confirm: Optional[ConfirmFn] = None,
        recheck_cascades: bool = False,
    ):
        self.store = store
        self.identity = identity
        self.subscriptions = SubscriptionManager(store)
        self.selection = SelectionMemory()
        self.ui = TransientUIState()
        self.engine = MutationEngine(
            store,
            owner=lambda: self.owner,
            siblings=self._count_siblings,
            confirm=confirm,
            recheck_cascades=recheck_cascades,
        )
        self.subscribers: Dict[str, list] = {}  # event -> list of callbacks
        self._principal: Optional[Principal] = None
        self._access: Optional[bool] = None
        self._unsubscribe_identity: Optional[Callable[[], None]] = None
        self._clear_state()

    # ── Events ─────────────────────────────────────────────────────────────

    def subscribe(self, event: str, callback: Callable) -> None:
        """Register a callback for an event."""
        self.subscribers.setdefault(event, []).append(callback)

    def _emit(self, event: str, **kwargs) -> None:
        for callback in self.subscribers.get(event, []):
            try:
                callback(**kwargs)
            except Exception:
                logger.exception(f"Error in {event} callback")

    # ── Identity gate ──────────────────────────────────────────────────────

    @property
    def owner(self) -> Optional[str]:
        return self._principal.uid if self._principal else None

    @property
    def has_access(self) -> bool:
        return self._principal is not None

    def start(self) -> None:
        """Follow the identity provider and apply the current principal."""
        if self._unsubscribe_identity is None:
            self._unsubscribe_identity = self.identity.subscribe(self._on_principal_changed)
        self._on_principal_changed(self.identity.current)

    def stop(self) -> None:
        """Tear down: stop following identity and close every query."""
        if self._unsubscribe_identity is not None:
            self._unsubscribe_identity()
            self._unsubscribe_identity = None
        self.subscriptions.close_all()
        self._principal = None
        self._clear_state()

    def _on_principal_changed(self, principal: Principal) -> None:
        if principal.has_access:
            if self._principal is not None and self._principal.uid == principal.uid:
                self._principal = principal
                return
            # Stale queries go first, then the new owner's queries open
            self.subscriptions.close_all()
            self._clear_state()
            self._principal = principal
            logger.info(f"Access granted for {principal.uid}")
            self._open_owner_queries(principal.uid)
            self._set_access(True)
            return

        had_access = self._principal is not None
        self.subscriptions.close_all()
        self._clear_state()
        self._principal = None
        if had_access:
            logger.info("Access revoked")
        self._set_access(False)

    def _set_access(self, access: bool) -> None:
        if self._access == access:
            return
        self._access = access
        self._emit("access_changed", access=access)

    def _open_owner_queries(self, uid: str) -> None:
        self.loading[CATEGORIES_SLOT] = True
        self.subscriptions.open(
            CATEGORIES_SLOT, QueryKey.categories(uid),
            self._on_categories, self._on_subscription_error,
        )
        self.loading[NOTES_SLOT] = True
        self.subscriptions.open(
            NOTES_SLOT, QueryKey.notes(uid),
            self._on_notes, self._on_subscription_error,
        )

    def _clear_state(self) -> None:
        self.categories: List[Category] = []
        self.notes: List[Note] = []
        self.filter_stacks: List[Stack] = []
        self.creation_stacks: List[Stack] = []
        self.loading: Dict[str, bool] = {slot: False for slot in ALL_SLOTS}
        self.active_filter: str = SHOW_ALL
        self.creation_category: Optional[str] = None
        self.selected_stack: Optional[str] = None
        self.selection.clear()
        self.ui.reset()

    # ── Snapshot handlers ──────────────────────────────────────────────────

    def _is_for_current(self, snapshot: Snapshot) -> bool:
        return self._principal is not None and snapshot.query.owner == self._principal.uid

    def _on_categories(self, snapshot: Snapshot) -> None:
        if not self._is_for_current(snapshot):
            return
        self.categories = normalize_categories(snapshot.docs)
        self.loading[CATEGORIES_SLOT] = False
        known = {c.id for c in self.categories}
        if self.active_filter != SHOW_ALL and self.active_filter not in known:
            self.set_filter(SHOW_ALL)
        if self.creation_category and self.creation_category not in known:
            self.set_creation_category(None)
        self._emit("state_changed", slot=CATEGORIES_SLOT)

    def _on_notes(self, snapshot: Snapshot) -> None:
        if not self._is_for_current(snapshot):
            return
        previous = {n.id for n in self.notes}
        self.notes = normalize_notes(snapshot.docs)
        self.loading[NOTES_SLOT] = False
        for note_id in previous - {n.id for n in self.notes}:
            self.ui.forget(note_id)
        self._emit("state_changed", slot=NOTES_SLOT)

    def _on_filter_stacks(self, snapshot: Snapshot) -> None:
        if not self._is_for_current(snapshot):
            return
        self.filter_stacks = normalize_stacks(snapshot.docs)
        self.loading[FILTER_STACKS_SLOT] = False
        self._emit("state_changed", slot=FILTER_STACKS_SLOT)

    def _on_creation_stacks(self, snapshot: Snapshot) -> None:
        if not self._is_for_current(snapshot):
            return
        self.creation_stacks = normalize_stacks(snapshot.docs)
        self.loading[CREATION_STACKS_SLOT] = False
        self.selected_stack = self.selection.resolve(self.creation_category, self.creation_stacks)
        self._emit("state_changed", slot=CREATION_STACKS_SLOT)

    def _on_subscription_error(self, error: SubscriptionError) -> None:
        logger.warning(f"{error}")
        self._reset_slot(error.slot)
        if error.slot == CREATION_STACKS_SLOT:
            self.selected_stack = None
        self._emit("subscription_error", slot=error.slot, error=error)

    def _reset_slot(self, slot: str, loading: bool = False) -> None:
        if slot == CATEGORIES_SLOT:
            self.categories = []
        elif slot == NOTES_SLOT:
            self.notes = []
        elif slot == FILTER_STACKS_SLOT:
            self.filter_stacks = []
        elif slot == CREATION_STACKS_SLOT:
            self.creation_stacks = []
        self.loading[slot] = loading

    # ── Filter and creation scope ──────────────────────────────────────────

    def set_filter(self, category_id: Optional[str]) -> None:
        """
        Show all notes or one category.

        Picking a category also makes it the creation category, the way the
        filter chips drive the new-note form. Leaving a category only clears
        the creation category when it was the one being left.
        """
        value = category_id or SHOW_ALL
        previous = self.active_filter
        self.active_filter = value
        self._scope_stacks(
            FILTER_STACKS_SLOT,
            None if value == SHOW_ALL else value,
            self._on_filter_stacks,
        )
        if value != SHOW_ALL:
            self.set_creation_category(value)
        elif self.creation_category is not None and self.creation_category == previous:
            self.set_creation_category(None)
        self._emit("state_changed", slot="filter")

    def set_creation_category(self, category_id: Optional[str]) -> None:
        category_id = category_id or None
        if category_id != self.creation_category:
            self.creation_category = category_id
            # Prefill; checked again when the stack snapshot arrives
            self.selected_stack = self.selection.recall(category_id)
        self._scope_stacks(CREATION_STACKS_SLOT, category_id, self._on_creation_stacks)
        if category_id is None:
            self.selected_stack = None

    def _scope_stacks(
        self,
        slot: str,
        category_id: Optional[str],
        handler: Callable[[Snapshot], None],
    ) -> None:
        uid = self.owner
        if not uid or not category_id:
            self.subscriptions.close(slot)
            self._reset_slot(slot)
            return
        key = QueryKey.stacks(uid, category_id)
        if self.subscriptions.is_open(slot) and self.subscriptions.key_for(slot) == key:
            return
        # Old scope closes before the new one opens; slot shows loading meanwhile
        self.subscriptions.close(slot)
        self._reset_slot(slot, loading=True)
        self.subscriptions.open(slot, key, handler, self._on_subscription_error)

    def pick_stack(self, stack_id: Optional[str]) -> None:
        """Choose the stack for new notes (None = explicitly no stack)."""
        if not self.creation_category:
            raise ValueError("Pick a category before picking a stack")
        stack_id = stack_id or None
        if stack_id and stack_id not in {s.id for s in self.creation_stacks}:
            raise ValueError(f"Stack {stack_id} is not in the selected category")
        self.selected_stack = stack_id
        self.selection.remember(self.creation_category, stack_id)

    def stack_choices_for(self, note_id: str) -> List[Stack]:
        """Stacks a note may move to: only those of its own, filtered, category."""
        note = self._find_note(note_id)
        if note is None or not note.category_id or note.category_id != self.active_filter:
            return []
        return list(self.filter_stacks)

    # ── Derived views ──────────────────────────────────────────────────────

    @property
    def views(self) -> DerivedViews:
        return build_views(self.notes, self.filter_stacks, self.active_filter)

    # ── Mutations ──────────────────────────────────────────────────────────

    def create_category(self, name: str) -> str:
        return self._mutate(self.engine.create_category, name)

    def create_stack(self, category_id: str, title: str) -> str:
        return self._mutate(self.engine.create_stack, category_id, title)

    def create_note(
        self,
        text: str,
        color: Union[Color, str] = Color.GREEN,
        category_id: Any = FROM_SELECTION,
        stack_id: Any = FROM_SELECTION,
    ) -> str:
        if category_id is FROM_SELECTION:
            category_id = self.creation_category
        if stack_id is FROM_SELECTION:
            stack_id = self.selected_stack if category_id == self.creation_category else None
        note_id = self._mutate(self.engine.create_note, text, color, category_id, stack_id)
        if category_id:
            self.selection.remember(category_id, stack_id)
        return note_id

    def update_note_text(self, note_id: str, text: str) -> None:
        self._mutate(self.engine.update_note_text, note_id, text)
        self.ui.stop_edit(note_id)

    def update_note_color(self, note_id: str, color: Union[Color, str]) -> None:
        self._mutate(self.engine.update_note_color, note_id, color)
        self.ui.close_menu(Menu.COLOR)

    def update_note_category(self, note_id: str, category_id: Optional[str]) -> None:
        self._mutate(self.engine.update_note_category, note_id, category_id)
        self.ui.close_menu(Menu.CATEGORY)

    def update_note_stack(self, note_id: str, stack_id: Optional[str]) -> None:
        self._mutate(self.engine.update_note_stack, note_id, stack_id)
        self.ui.close_menu(Menu.STACK)

    def delete_note(self, note_id: str) -> None:
        self._mutate(self.engine.delete_note, note_id)
        self.ui.forget(note_id)

    def delete_category(self, category_id: str, confirm: Optional[ConfirmFn] = None) -> CascadeResult:
        result = self._mutate(self.engine.delete_category, category_id, confirm)
        if result.committed:
            if self.active_filter == category_id:
                self.set_filter(SHOW_ALL)
            if self.creation_category == category_id:
                self.set_creation_category(None)
            self.selection.forget_category(category_id)
        return result

    def delete_stack(self, stack_id: str, confirm: Optional[ConfirmFn] = None) -> CascadeResult:
        result = self._mutate(self.engine.delete_stack, stack_id, confirm)
        if result.committed:
            if self.selected_stack == stack_id:
                self.selected_stack = None
            self.selection.forget_stack(stack_id)
            self.ui.close_menu(Menu.STACK_HEADER, stack_id)
        return result

    def _mutate(self, fn: Callable, *args):
        try:
            return fn(*args)
        except MutationError as e:
            self._emit("mutation_failed", error=e)
            raise

    def _count_siblings(self, collection: str, parent_id: Optional[str]) -> Optional[int]:
        """Local sibling count, or None when no settled live query covers the parent."""
        if collection == CATEGORIES:
            return len(self.categories) if self._settled(CATEGORIES_SLOT) else None
        if collection == STACKS:
            if parent_id and parent_id == self.active_filter and self._settled(FILTER_STACKS_SLOT):
                return len(self.filter_stacks)
            if parent_id and parent_id == self.creation_category and self._settled(CREATION_STACKS_SLOT):
                return len(self.creation_stacks)
            return None
        if collection == NOTES and self._settled(NOTES_SLOT):
            return sum(1 for n in self.notes if n.category_id == parent_id)
        return None

    def _settled(self, slot: str) -> bool:
        # Loading or failed slices do not reflect the store
        return self.subscriptions.is_open(slot) and not self.loading[slot]

    def _find_note(self, note_id: str) -> Optional[Note]:
        return next((n for n in self.notes if n.id == note_id), None)

    # ── Presentation ───────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        """Board state for presentation layers."""
        views = self.views
        board: Dict[str, Any] = {
            "access": self.has_access,
            "owner": self.owner,
            "filter": self.active_filter,
            "creation_category": self.creation_category,
            "selected_stack": self.selected_stack,
            "loading": dict(self.loading),
            "categories": [c.to_dict() for c in self.categories],
            "creation_stacks": [s.to_dict() for s in self.creation_stacks],
            "notes": [n.to_dict() for n in views.filtered_notes],
            "counts": views.counts_by_color,
            "ui": self.ui.to_dict(),
        }
        if views.grouped_by_stack is not None:
            board["columns"] = [
                {
                    "key": col.key,
                    "title": col.title,
                    "deletable": col.deletable,
                    "note_ids": [n.id for n in col.notes],
                }
                for col in views.columns
            ]
        return board
