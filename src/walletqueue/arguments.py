"""Argument fingerprinting for cache keys and execution deduplication."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any

from walletqueue.codec import encode_value


class Arguments(ABC):
    """An ordered, fixed-arity list of task arguments."""

    def __init__(self, args: tuple[Any, ...] | list[Any]) -> None:
        self._args = tuple(args)

    @abstractmethod
    def hash(self) -> str:
        """Stable fingerprint of the argument values."""

    def values(self) -> tuple[Any, ...]:
        return self._args

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Arguments):
            return NotImplemented
        return self.hash() == other.hash()

    def __hash__(self) -> int:
        return hash(self.hash())

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._args)!r})"


class JsonArguments(Arguments):
    """
    SHA-256 over the JSON form of the flattened arguments.

    Nested mappings flatten to "parent.child" keys and sequences to numeric
    keys, so list order is significant while dict key order is not (keys are
    sorted before hashing). Empty containers and None stay as leaves.

    Container shape is not part of the fingerprint: `["x"]` and `{"0": "x"}`
    collide, as do `{"a.b": 1}` and `{"a": {"b": 1}}`. Task arguments keep a
    fixed shape per task class, so this never merges two real calls.
    """

    def hash(self) -> str:
        flattened = flatten(list(self._args))
        payload = json.dumps(
            {key: encode_value(value, key) for key, value in flattened.items()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts and sequences into dotted leaf keys."""
    if isinstance(value, dict):
        items = [(str(key), item) for key, item in value.items()]
    elif isinstance(value, (list, tuple)):
        items = [(str(index), item) for index, item in enumerate(value)]
    else:
        return {prefix: value}

    if not items and prefix:
        return {prefix: value}

    flat: dict[str, Any] = {}
    for key, item in items:
        flat.update(flatten(item, f"{prefix}.{key}" if prefix else key))
    return flat
