"""
Selection memory: which stack was last picked for each category.

Session-scoped only; used to prefill the stack choice when creating a note.
"""
from typing import Dict, Iterable, Optional

from .schema import Stack


class SelectionMemory:
    """category_id → stack_id (None means an explicit "no stack")."""

    def __init__(self):
        self._by_category: Dict[str, Optional[str]] = {}

    def remember(self, category_id: str, stack_id: Optional[str]) -> None:
        if category_id:
            self._by_category[category_id] = stack_id

    def recall(self, category_id: Optional[str]) -> Optional[str]:
        if not category_id:
            return None
        return self._by_category.get(category_id)

    def resolve(self, category_id: Optional[str], stacks: Iterable[Stack]) -> Optional[str]:
        """Remembered stack if it is still among the given stacks, else None."""
        remembered = self.recall(category_id)
        if remembered and any(s.id == remembered for s in stacks):
            return remembered
        return None

    def forget_stack(self, stack_id: str) -> None:
        for category_id, remembered in self._by_category.items():
            if remembered == stack_id:
                self._by_category[category_id] = None

    def forget_category(self, category_id: str) -> None:
        self._by_category.pop(category_id, None)

    def clear(self) -> None:
        self._by_category.clear()

    def __len__(self) -> int:
        return len(self._by_category)
