"""Deletion marking and ordering of objects sent in one hierarchical patch.

Stale objects are turned into delete-intent copies and placed before the
changed objects, so NSX releases names and capacity before new or updated
objects claim them. The stale prefix is emitted in reverse order so teardown
runs from the most recently relevant object to the least.

Inputs are never mutated: callers may still hold the originals (for example
the store's own copies).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

from .config import MARKED_FOR_DELETE
from .models import NsxResource

T = TypeVar("T", bound=NsxResource)


def mark_for_delete(objs: Iterable[T]) -> list[T]:
    """Return delete-intent copies of ``objs``, in the same order."""
    return [obj.model_copy(update={"marked_for_delete": MARKED_FOR_DELETE}) for obj in objs]


def assemble(stale: Sequence[T], changed: Sequence[T]) -> list[T]:
    """Build the final list: reversed delete-intent stale objects, then changed."""
    return mark_for_delete(reversed(stale)) + list(changed)
