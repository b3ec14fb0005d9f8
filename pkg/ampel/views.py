"""
Derived views over the current notes and stacks.

build_views() is a pure function: same inputs, same output, no hidden state.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

from .schema import NO_STACK, SHOW_ALL, Color, Note, Stack

NO_STACK_TITLE = "(No stack)"


@dataclass(frozen=True)
class StackColumn:
    """One displayed bucket: the no-stack column or a subscribed stack."""
    key: str
    title: str
    notes: Tuple[Note, ...] = ()

    @property
    def deletable(self) -> bool:
        return self.key != NO_STACK


@dataclass(frozen=True)
class DerivedViews:
    active_filter: str
    filtered_notes: Tuple[Note, ...]
    # Only for a specific category filter; None when showing all
    grouped_by_stack: Optional[Dict[str, Tuple[Note, ...]]] = None
    columns: Tuple[StackColumn, ...] = ()
    counts_by_color: Dict[str, int] = field(default_factory=dict)

    @property
    def hidden_bucket_keys(self) -> Tuple[str, ...]:
        """Buckets for stacks not (yet) in the stack snapshot."""
        if self.grouped_by_stack is None:
            return ()
        shown = {c.key for c in self.columns}
        return tuple(k for k in self.grouped_by_stack if k not in shown)


def filter_notes(notes: Sequence[Note], active_filter: str) -> Tuple[Note, ...]:
    if active_filter == SHOW_ALL:
        return tuple(notes)
    return tuple(n for n in notes if n.category_id == active_filter)


def group_by_stack(notes: Sequence[Note]) -> Dict[str, Tuple[Note, ...]]:
    """Partition notes by stack_id, NO_STACK for notes without one."""
    groups: Dict[str, list] = {}
    for note in notes:
        groups.setdefault(note.stack_id or NO_STACK, []).append(note)
    return {key: tuple(items) for key, items in groups.items()}


def count_colors(notes: Sequence[Note]) -> Dict[str, int]:
    counts = {color.value: 0 for color in Color}
    for note in notes:
        counts[note.color.value] += 1
    return counts


def build_views(
    notes: Sequence[Note],
    stacks: Sequence[Stack],
    active_filter: str,
) -> DerivedViews:
    """Compute the filtered list and, for a category filter, the stack columns."""
    filtered = filter_notes(notes, active_filter)
    counts = count_colors(filtered)
    if active_filter == SHOW_ALL:
        return DerivedViews(
            active_filter=active_filter,
            filtered_notes=filtered,
            counts_by_color=counts,
        )

    grouped = group_by_stack(filtered)
    columns = [StackColumn(NO_STACK, NO_STACK_TITLE, grouped.get(NO_STACK, ()))]
    for stack in stacks:
        columns.append(StackColumn(stack.id, stack.title, grouped.get(stack.id, ())))
    return DerivedViews(
        active_filter=active_filter,
        filtered_notes=filtered,
        grouped_by_stack=grouped,
        columns=tuple(columns),
        counts_by_color=counts,
    )
