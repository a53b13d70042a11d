"""Tests for node key and dot-path helpers."""

from __future__ import annotations

import pytest

from edgewalker.core.utils import augment, base_id, instance_keys, resolve_path, split_key


class TestNodeKeys:
    """Augmented key construction and parsing."""

    def test_augment(self):
        assert augment("work", 3) == "work_3"

    def test_split_augmented_key(self):
        assert split_key("work_3") == ("work", 3)
        assert split_key("send_email_12") == ("send_email", 12)

    def test_split_static_key(self):
        assert split_key("work") == ("work", None)
        assert split_key("step_one") == ("step_one", None)

    def test_static_ids_win(self):
        """A node literally named like an instance is not split."""
        assert split_key("step_1", {"step_1", "other"}) == ("step_1", None)
        assert base_id("work_2", {"work"}) == "work"

    def test_instance_keys_sorted_numerically(self):
        """Instance 10 sorts after instance 9, not after instance 1."""
        states = {f"work_{i}": None for i in (10, 2, 0, 9, 1)}
        states["work"] = None
        states["workshop_1"] = None
        assert instance_keys(states, "work") == ["work_0", "work_1", "work_2", "work_9", "work_10"]

    def test_instance_keys_escape_regex(self):
        """Node ids with regex metacharacters match literally."""
        states = {"a.b_0": None, "axb_0": None}
        assert instance_keys(states, "a.b") == ["a.b_0"]


class TestResolvePath:
    """Dot-path lookups."""

    def test_nested_dicts(self):
        assert resolve_path({"result": {"items": [1, 2]}}, "result.items") == [1, 2]

    def test_list_index(self):
        assert resolve_path({"rows": [{"id": "a"}, {"id": "b"}]}, "rows.1.id") == "b"

    def test_missing_raises_key_error(self):
        with pytest.raises(KeyError):
            resolve_path({"result": {}}, "result.items")

    def test_missing_with_default(self):
        assert resolve_path({"result": {}}, "result.items", default=None) is None

    def test_falsy_values_are_found(self):
        """Empty lists and zeros are values, not missing paths."""
        assert resolve_path({"items": []}, "items") == []
        assert resolve_path({"count": 0}, "count") == 0
