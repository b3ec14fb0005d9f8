"""Local, never-persisted UI flags: edit mode and open menus."""
from enum import Enum
from typing import Dict, Optional, Set


class Menu(Enum):
    COLOR = "color"
    CATEGORY = "category"
    STACK = "stack"
    STACK_HEADER = "stack_header"


class TransientUIState:
    """Edit-mode flags per note, and at most one open menu per kind."""

    def __init__(self):
        self._editing: Set[str] = set()
        self._open: Dict[Menu, str] = {}

    def toggle_edit(self, note_id: str) -> bool:
        if note_id in self._editing:
            self._editing.discard(note_id)
            return False
        self._editing.add(note_id)
        return True

    def stop_edit(self, note_id: str) -> None:
        self._editing.discard(note_id)

    def is_editing(self, note_id: str) -> bool:
        return note_id in self._editing

    def toggle_menu(self, menu: Menu, entity_id: str) -> Optional[str]:
        """Open the menu for entity_id, or close it if it was already open there."""
        if self._open.get(menu) == entity_id:
            del self._open[menu]
        else:
            self._open[menu] = entity_id
        return self._open.get(menu)

    def close_menu(self, menu: Menu, entity_id: Optional[str] = None) -> None:
        if entity_id is None or self._open.get(menu) == entity_id:
            self._open.pop(menu, None)

    def open_for(self, menu: Menu) -> Optional[str]:
        return self._open.get(menu)

    def forget(self, entity_id: str) -> None:
        """Drop every flag that refers to a vanished entity."""
        self._editing.discard(entity_id)
        for menu in [m for m, eid in self._open.items() if eid == entity_id]:
            del self._open[menu]

    def reset(self) -> None:
        self._editing.clear()
        self._open.clear()

    def to_dict(self) -> dict:
        return {
            "editing": sorted(self._editing),
            "open_menus": {m.value: eid for m, eid in self._open.items()},
        }
