"""Argument fingerprinting tests."""

import pytest

from walletqueue.arguments import JsonArguments, flatten
from walletqueue.errors import SerializationError
from walletqueue.recurrence import Calendar


class TestFingerprintDeterminism:
    """Equal arguments always produce the same fingerprint."""

    def test_repeated_calls_are_stable(self):
        args = JsonArguments([1, "a", {"x": [1, 2]}])
        assert args.hash() == args.hash()

    def test_structurally_equal_copies_match(self):
        """A freshly built, deep-equal argument list hashes identically."""
        first = JsonArguments([{"amount": 10, "meta": {"tags": ["a", "b"]}}, None])
        second = JsonArguments([{"amount": 10, "meta": {"tags": ["a", "b"]}}, None])
        assert first.hash() == second.hash()
        assert first == second

    def test_dict_key_order_is_ignored(self):
        first = JsonArguments([{"a": 1, "b": 2}])
        second = JsonArguments([{"b": 2, "a": 1}])
        assert first.hash() == second.hash()

    def test_hash_is_sha256_hex(self):
        digest = JsonArguments(["x"]).hash()
        assert len(digest) == 64
        assert int(digest, 16) >= 0

    def test_calendar_arguments_hash_by_value(self):
        assert JsonArguments([Calendar("month")]).hash() == JsonArguments([Calendar("month")]).hash()


class TestFingerprintSensitivity:
    """Any change to a leaf or to list order changes the fingerprint."""

    def test_leaf_change(self):
        assert JsonArguments([{"amount": 10}]).hash() != JsonArguments([{"amount": 11}]).hash()

    def test_list_order(self):
        assert JsonArguments([[1, 2, 3]]).hash() != JsonArguments([[3, 2, 1]]).hash()

    def test_argument_position(self):
        assert JsonArguments(["a", "b"]).hash() != JsonArguments(["b", "a"]).hash()

    def test_empty_containers_are_not_dropped(self):
        """An empty dict, an empty list and None are all distinct leaves."""
        hashes = {
            JsonArguments([{"x": {}}]).hash(),
            JsonArguments([{"x": []}]).hash(),
            JsonArguments([{"x": None}]).hash(),
            JsonArguments([{}]).hash(),
        }
        assert len(hashes) == 4

    def test_int_and_string_differ(self):
        assert JsonArguments([1]).hash() != JsonArguments(["1"]).hash()

    def test_functions_are_rejected(self):
        with pytest.raises(SerializationError):
            JsonArguments([{"callback": lambda: None}]).hash()


class TestFlatten:
    def test_nested_keys(self):
        assert flatten([{"a": {"b": 1}, "c": [True, None]}]) == {
            "0.a.b": 1,
            "0.c.0": True,
            "0.c.1": None,
        }

    def test_empty_nested_container_is_a_leaf(self):
        assert flatten({"a": []}) == {"a": []}

    def test_scalar_root(self):
        assert flatten(5) == {"": 5}


class TestFlattenedCollisions:
    """Only leaf paths are hashed, so some differently shaped values collide."""

    def test_list_and_index_keyed_dict(self):
        assert JsonArguments([["x"]]).hash() == JsonArguments([{"0": "x"}]).hash()

    def test_dotted_key_and_nested_dict(self):
        assert JsonArguments([{"a.b": 1}]).hash() == JsonArguments([{"a": {"b": 1}}]).hash()
