"""Tests for deletion marking and ordering."""

from __future__ import annotations

from policy_controller.deletion import assemble, mark_for_delete
from policy_controller.models import Group


def groups(*ids: str) -> list[Group]:
    return [Group(id=i) for i in ids]


class TestMarkForDelete:
    """Tests for mark_for_delete()."""

    def test_marks_copies(self) -> None:
        originals = groups("X", "Y")

        marked = mark_for_delete(originals)

        assert [g.id for g in marked] == ["X", "Y"]
        assert all(g.marked_for_delete is True for g in marked)
        # Originals untouched
        assert all(g.marked_for_delete is None for g in originals)
        assert marked[0] is not originals[0]

    def test_empty(self) -> None:
        assert mark_for_delete([]) == []


class TestAssemble:
    """Tests for assemble()."""

    def test_stale_prefix_is_reversed(self) -> None:
        final = assemble(groups("X", "Y", "Z"), [])

        assert [g.id for g in final] == ["Z", "Y", "X"]
        assert all(g.is_marked_for_delete for g in final)

    def test_stale_before_changed(self) -> None:
        final = assemble(groups("s1", "s2"), groups("c1", "c2"))

        assert [g.id for g in final] == ["s2", "s1", "c1", "c2"]
        assert [g.is_marked_for_delete for g in final] == [True, True, False, False]

    def test_changed_only(self) -> None:
        changed = groups("c1")
        final = assemble([], changed)

        assert final == changed
        assert final is not changed
