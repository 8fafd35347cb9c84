"""Tests for the ordered multi-parent relation."""

from __future__ import annotations

import pytest

from codetree.graph.errors import AlreadyLinkedError, InvalidArgumentError, NotLinkedError
from codetree.graph.parents import ParentLink, ParentLinks, primary_violations


class TestAddParent:
    def test_links_get_increasing_seq(self) -> None:
        links = ParentLinks()
        first = links.add_parent("x", "a")
        second = links.add_parent("x", "b")
        assert (first.seq, second.seq) == (0, 1)
        assert links.parents_of("x") == ["a", "b"]
        assert links.next_seq == 2

    def test_duplicate_rejected(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        with pytest.raises(AlreadyLinkedError):
            links.add_parent("x", "a")

    def test_self_link_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            ParentLinks().add_parent("x", "x")


class TestRemoveParent:
    def _links(self) -> ParentLinks:
        links = ParentLinks()
        links.add_parent("x", "a")
        links.add_parent("x", "b")
        links.add_parent("x", "c")
        return links

    def test_removing_secondary_keeps_primary(self) -> None:
        links = self._links()
        assert links.remove_parent("x", "b", primary_id="a") == "a"
        assert links.parents_of("x") == ["a", "c"]

    def test_removing_primary_promotes_oldest_remaining(self) -> None:
        links = self._links()
        assert links.remove_parent("x", "a", primary_id="a") == "b"

    def test_oldest_is_by_link_order_not_id(self) -> None:
        """Promotion follows link sequence even when ids sort differently."""
        links = ParentLinks()
        links.add_parent("x", "m")
        links.add_parent("x", "z")
        links.add_parent("x", "b")
        assert links.remove_parent("x", "m", primary_id="m") == "z"

    def test_removing_last_returns_none(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        assert links.remove_parent("x", "a", primary_id="a") is None
        assert "x" not in links.node_ids()

    def test_missing_pair_raises(self) -> None:
        with pytest.raises(NotLinkedError):
            self._links().remove_parent("x", "zzz", primary_id="a")

    def test_relink_goes_to_the_back(self) -> None:
        links = self._links()
        links.remove_parent("x", "a", primary_id="a")
        links.add_parent("x", "a")
        assert links.parents_of("x") == ["b", "c", "a"]


class TestBulk:
    def test_clear_returns_removed_parents(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        links.add_parent("x", "b")
        assert links.clear("x") == ["a", "b"]
        assert links.parents_of("x") == []

    def test_remove_node_drops_both_directions(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        links.add_parent("y", "x")
        links.add_parent("y", "a")
        assert links.remove_node("x") == 2
        assert links.parents_of("y") == ["a"]
        assert len(links) == 1


class TestSerialization:
    def test_round_trip_keeps_order_and_next_seq(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        links.add_parent("x", "b")
        links.remove_parent("x", "a", primary_id="a")
        restored = ParentLinks.from_list(links.to_list(), next_seq=links.next_seq)
        assert restored.parents_of("x") == ["b"]
        assert restored.next_seq == 2

    def test_next_seq_is_at_least_highest_plus_one(self) -> None:
        restored = ParentLinks([ParentLink("x", "a", seq=7)], next_seq=0)
        assert restored.next_seq == 8

    def test_link_dict_form(self) -> None:
        link = ParentLink("x", "a", seq=3)
        data = link.to_dict()
        assert data["node_id"] == "x"
        assert data["parent_id"] == "a"
        assert data["seq"] == 3
        assert ParentLink.from_dict(data) == link


class TestPrimaryViolations:
    def test_consistent(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        assert primary_violations("x", "a", links) == []
        assert primary_violations("r", None, links) == []

    def test_parents_without_primary(self) -> None:
        links = ParentLinks()
        links.add_parent("x", "a")
        assert len(primary_violations("x", None, links)) == 1

    def test_primary_not_linked(self) -> None:
        assert len(primary_violations("x", "a", ParentLinks())) == 1
