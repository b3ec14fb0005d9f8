# Ampel: snapshot normalizer
#
# Turns raw snapshot documents from the store into typed entities and puts
# them in display order. Every snapshot is a full restatement of its query,
# so normalization is a pure function of one snapshot.
#
# DEFAULTS:
#   - missing or unknown color       → green
#   - missing category_id / stack_id → unset (None)
#   - missing or non-integer order   → 0
#   - missing or unparseable created_at (pending server timestamp) → oldest
#
# ORDER:
#   - categories, stacks: ascending order, ties keep snapshot order
#   - notes: green < yellow < red, then newest first

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .schema import Category, Color, Note, Stack

OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO string or datetime → aware datetime; anything else → None."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _order(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0


def _ref(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def sort_time(ts: Optional[datetime]) -> datetime:
    """Pending or missing timestamps sort as the oldest possible."""
    return ts if ts is not None else OLDEST


def note_sort_key(note: Note):
    # Newest first within a color: negate the timestamp
    return (note.color.priority, -sort_time(note.created_at).timestamp())


def normalize_categories(docs: Iterable[Dict[str, Any]]) -> List[Category]:
    categories = [
        Category(
            id=d["id"],
            owner=d.get("owner", ""),
            name=d.get("name") or "",
            order=_order(d.get("order")),
            created_at=parse_timestamp(d.get("created_at")),
        )
        for d in docs
    ]
    categories.sort(key=lambda c: c.order)
    return categories


def normalize_stacks(docs: Iterable[Dict[str, Any]]) -> List[Stack]:
    stacks = [
        Stack(
            id=d["id"],
            owner=d.get("owner", ""),
            category_id=d.get("category_id") or "",
            title=d.get("title") or "",
            order=_order(d.get("order")),
            created_at=parse_timestamp(d.get("created_at")),
        )
        for d in docs
    ]
    stacks.sort(key=lambda s: s.order)
    return stacks


def normalize_notes(docs: Iterable[Dict[str, Any]]) -> List[Note]:
    notes = [
        Note(
            id=d["id"],
            owner=d.get("owner", ""),
            text=d.get("text") or "",
            color=Color.from_str(d.get("color")),
            category_id=_ref(d.get("category_id")),
            stack_id=_ref(d.get("stack_id")),
            created_at=parse_timestamp(d.get("created_at")),
            order=_order(d.get("order")),
        )
        for d in docs
    ]
    notes.sort(key=note_sort_key)
    return notes
