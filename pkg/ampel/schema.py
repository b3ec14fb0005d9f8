"""
Ampel note schema.

Three owner-scoped collections:
  categories → stacks → notes

A note optionally points at a category and, inside that category, at a stack.
Every note carries one of three status colors (green / yellow / red).
"""
from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any


# Collection names in the document store
CATEGORIES = "categories"
STACKS = "stacks"
NOTES = "notes"

# Filter value meaning "no category filter"
SHOW_ALL = "ALL"

# Grouping key for notes without a stack
NO_STACK = "__none__"


class Color(Enum):
    """Status color of a note, in display priority."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def priority(self) -> int:
        return _COLOR_PRIORITY[self]

    @classmethod
    def from_str(cls, value: Optional[str]) -> "Color":
        """Lenient parse: anything unknown is green."""
        try:
            return cls(value)
        except ValueError:
            return cls.GREEN


_COLOR_PRIORITY = {Color.GREEN: 1, Color.YELLOW: 2, Color.RED: 3}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class Category:
    """Top-level grouping of notes."""
    id: str
    owner: str
    name: str
    order: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "order": self.order,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Stack:
    """Sub-grouping of notes inside one category."""
    id: str
    owner: str
    category_id: str
    title: str
    order: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "category_id": self.category_id,
            "title": self.title,
            "order": self.order,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Note:
    """A short text note with a status color."""
    id: str
    owner: str
    text: str
    color: Color = Color.GREEN
    category_id: Optional[str] = None
    stack_id: Optional[str] = None
    created_at: Optional[datetime] = None
    order: int = 0                 # advisory, never used for sorting

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "text": self.text,
            "color": self.color.value,
            "category_id": self.category_id,
            "stack_id": self.stack_id,
            "created_at": _iso(self.created_at),
        }
