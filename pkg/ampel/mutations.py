"""
Structural mutations: create, update and delete categories, stacks and notes.

Cascading deletes run as three phases:
  1. pre-read the affected documents
  2. ask for confirmation (declining changes nothing)
  3. commit one atomic batch

Nothing is applied locally; the live queries report the outcome.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .docstore import SERVER_TIMESTAMP, DocumentStore, Query, StoreError, WriteBatch
from .schema import CATEGORIES, NOTES, STACKS, Color

logger = logging.getLogger(__name__)


class MutationError(Exception):
    """Raised when a mutation is invalid or the store rejects it."""
    pass


@dataclass
class CascadePlan:
    """Documents a cascading delete will touch, read before confirmation."""
    kind: str                      # "category" | "stack"
    target_id: str
    owner: str
    note_ids: List[str] = field(default_factory=list)
    stack_ids: List[str] = field(default_factory=list)

    def describe(self) -> str:
        """Confirmation prompt with the affected counts."""
        if self.kind == "category":
            return (
                "Really delete this category?\n\n"
                f"• Notes in this category: {len(self.note_ids)} (moved to \"no category\")\n"
                f"• Stacks in this category: {len(self.stack_ids)} (deleted)\n\n"
                "Continue?"
            )
        return (
            "Really delete this stack?\n\n"
            f"• Notes in this stack: {len(self.note_ids)} "
            "(removed from the stack, they stay in the category)\n\n"
            "Continue?"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "target_id": self.target_id,
            "notes": len(self.note_ids),
            "stacks": len(self.stack_ids),
            "prompt": self.describe(),
        }


@dataclass
class CascadeResult:
    plan: CascadePlan
    committed: bool

    @property
    def notes_updated(self) -> int:
        return len(self.plan.note_ids) if self.committed else 0

    @property
    def stacks_deleted(self) -> int:
        return len(self.plan.stack_ids) if self.committed else 0


ConfirmFn = Callable[[CascadePlan], bool]
SiblingCountFn = Callable[[str, Optional[str]], Optional[int]]


class MutationEngine:
    """Validated writes against the document store for one signed-in owner."""

    def __init__(
        self,
        store: DocumentStore,
        owner: Callable[[], Optional[str]],
        siblings: Optional[SiblingCountFn] = None,
        confirm: Optional[ConfirmFn] = None,
        recheck_cascades: bool = False,
    ):
        self.store = store
        self._owner_fn = owner
        self._siblings = siblings
        self.confirm = confirm
        self.recheck_cascades = recheck_cascades

    # ── Creation ───────────────────────────────────────────────────────────

    def create_category(self, name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise MutationError("Category name must not be empty")
        owner = self._owner()
        data = {
            "owner": owner,
            "name": name,
            "order": self.sibling_count(CATEGORIES, None),
            "created_at": SERVER_TIMESTAMP,
        }
        doc_id = self._write(f"create category {name!r}", self.store.add, CATEGORIES, data)
        logger.info(f"Created category {doc_id} ({name})")
        return doc_id

    def create_stack(self, category_id: str, title: str) -> str:
        title = (title or "").strip()
        if not title:
            raise MutationError("Stack title must not be empty")
        if not category_id:
            raise MutationError("A stack needs a category")
        owner = self._owner()
        data = {
            "owner": owner,
            "category_id": category_id,
            "title": title,
            "order": self.sibling_count(STACKS, category_id),
            "created_at": SERVER_TIMESTAMP,
        }
        doc_id = self._write(f"create stack {title!r}", self.store.add, STACKS, data)
        logger.info(f"Created stack {doc_id} ({title}) in {category_id}")
        return doc_id

    def create_note(
        self,
        text: str,
        color: Union[Color, str] = Color.GREEN,
        category_id: Optional[str] = None,
        stack_id: Optional[str] = None,
    ) -> str:
        text = (text or "").strip()
        if not text:
            raise MutationError("Note text must not be empty")
        color = self._color(color)
        if stack_id and not category_id:
            raise MutationError("A note can only be in a stack inside a category")
        owner = self._owner()
        data = {
            "owner": owner,
            "text": text,
            "color": color.value,
            "category_id": category_id or None,
            "stack_id": stack_id or None,
            "order": self.sibling_count(NOTES, category_id or None),
            "created_at": SERVER_TIMESTAMP,
        }
        doc_id = self._write("create note", self.store.add, NOTES, data)
        logger.debug(f"Created note {doc_id}")
        return doc_id

    # ── Note updates ───────────────────────────────────────────────────────

    def update_note_text(self, note_id: str, text: str) -> None:
        text = (text or "").strip()
        if not text:
            raise MutationError("Note text must not be empty")
        self._update_note(note_id, {"text": text})

    def update_note_color(self, note_id: str, color: Union[Color, str]) -> None:
        self._update_note(note_id, {"color": self._color(color).value})

    def update_note_category(self, note_id: str, category_id: Optional[str]) -> None:
        # One write: a stack never outlives a category change
        self._update_note(note_id, {"category_id": category_id or None, "stack_id": None})

    def update_note_stack(self, note_id: str, stack_id: Optional[str]) -> None:
        self._update_note(note_id, {"stack_id": stack_id or None})

    def delete_note(self, note_id: str) -> None:
        self._owner()
        self._write(f"delete note {note_id}", self.store.delete, NOTES, note_id)

    # ── Cascading deletes ──────────────────────────────────────────────────

    def plan_category_delete(self, category_id: str) -> CascadePlan:
        owner = self._owner()
        where = (("category_id", category_id),)
        notes = self._read(Query(NOTES, owner, where))
        stacks = self._read(Query(STACKS, owner, where))
        return CascadePlan(
            kind="category",
            target_id=category_id,
            owner=owner,
            note_ids=[d["id"] for d in notes],
            stack_ids=[d["id"] for d in stacks],
        )

    def plan_stack_delete(self, stack_id: str) -> CascadePlan:
        owner = self._owner()
        notes = self._read(Query(NOTES, owner, (("stack_id", stack_id),)))
        return CascadePlan(
            kind="stack",
            target_id=stack_id,
            owner=owner,
            note_ids=[d["id"] for d in notes],
        )

    def delete_category(self, category_id: str, confirm: Optional[ConfirmFn] = None) -> CascadeResult:
        """Delete a category, its stacks, and every note's reference to it."""
        plan = self.plan_category_delete(category_id)
        if not self._confirmed(plan, confirm):
            return CascadeResult(plan, committed=False)
        if self.recheck_cascades:
            plan = self.plan_category_delete(category_id)

        batch = self.store.batch()
        for note_id in plan.note_ids:
            batch.update(NOTES, note_id, {"category_id": None, "stack_id": None})
        for stack_id in plan.stack_ids:
            batch.delete(STACKS, stack_id)
        batch.delete(CATEGORIES, category_id)
        self._commit(batch, f"delete category {category_id}")
        logger.info(
            f"Deleted category {category_id}: {len(plan.note_ids)} notes detached, "
            f"{len(plan.stack_ids)} stacks deleted"
        )
        return CascadeResult(plan, committed=True)

    def delete_stack(self, stack_id: str, confirm: Optional[ConfirmFn] = None) -> CascadeResult:
        """Delete a stack; its notes keep their category."""
        plan = self.plan_stack_delete(stack_id)
        if not self._confirmed(plan, confirm):
            return CascadeResult(plan, committed=False)
        if self.recheck_cascades:
            plan = self.plan_stack_delete(stack_id)

        batch = self.store.batch()
        for note_id in plan.note_ids:
            batch.update(NOTES, note_id, {"stack_id": None})
        batch.delete(STACKS, stack_id)
        self._commit(batch, f"delete stack {stack_id}")
        logger.info(f"Deleted stack {stack_id}: {len(plan.note_ids)} notes detached")
        return CascadeResult(plan, committed=True)

    # ── Helpers ────────────────────────────────────────────────────────────

    def sibling_count(self, collection: str, parent_id: Optional[str]) -> int:
        """Best-effort order for a new document; racy across sessions."""
        if self._siblings is not None:
            count = self._siblings(collection, parent_id)
            if count is not None:
                return count
        owner = self._owner()
        where = () if collection == CATEGORIES else (("category_id", parent_id),)
        return len(self._read(Query(collection, owner, where)))

    def _owner(self) -> str:
        owner = self._owner_fn()
        if not owner:
            raise MutationError("Not signed in")
        return owner

    @staticmethod
    def _color(value: Union[Color, str]) -> Color:
        if isinstance(value, Color):
            return value
        try:
            return Color(value)
        except ValueError:
            raise MutationError(f"Unknown color: {value!r}")

    def _confirmed(self, plan: CascadePlan, confirm: Optional[ConfirmFn]) -> bool:
        confirm = confirm or self.confirm
        if confirm is None:
            logger.warning(f"No confirmation handler, {plan.kind} {plan.target_id} kept")
            return False
        if not confirm(plan):
            logger.info(f"Delete of {plan.kind} {plan.target_id} declined")
            return False
        return True

    def _update_note(self, note_id: str, fields: Dict[str, Any]) -> None:
        self._owner()
        self._write(f"update note {note_id}", self.store.update, NOTES, note_id, fields)

    def _read(self, query: Query) -> List[Dict[str, Any]]:
        try:
            return self.store.get_all(query)
        except StoreError as e:
            logger.error(f"Pre-read of {query.collection} failed: {e}")
            raise MutationError(f"Could not read {query.collection}: {e}") from e

    def _write(self, what: str, fn: Callable, *args):
        try:
            return fn(*args)
        except StoreError as e:
            logger.error(f"Failed to {what}: {e}")
            raise MutationError(f"Failed to {what}: {e}") from e

    def _commit(self, batch: WriteBatch, what: str) -> None:
        self._write(what, batch.commit)
