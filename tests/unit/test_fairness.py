"""
Unit tests for round-robin interleaving.
"""

from pgqueue.fairness import round_robin_by


class TestRoundRobin:
    """Tests for round_robin_by."""

    def test_interleaves_groups(self):
        items = ["a1", "a2", "a3", "b1", "c1", "c2"]

        assert round_robin_by(items, key=lambda s: s[0]) == ["a1", "b1", "c1", "a2", "c2", "a3"]

    def test_groups_in_first_appearance_order(self):
        items = ["b1", "a1", "b2", "a2"]

        assert round_robin_by(items, key=lambda s: s[0]) == ["b1", "a1", "b2", "a2"]

    def test_single_group_keeps_order(self):
        items = ["a3", "a1", "a2"]

        assert round_robin_by(items, key=lambda s: s[0]) == items

    def test_empty(self):
        assert round_robin_by([], key=lambda s: s) == []

    def test_keeps_every_item(self):
        tenant_count = 4
        items = [(tenant, n) for tenant in "xyz" for n in range(tenant_count)]

        result = round_robin_by(items, key=lambda item: item[0])

        assert sorted(result) == sorted(items)
        assert len(result) == 3 * tenant_count
