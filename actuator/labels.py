#!/usr/bin/env python3
"""
=====================================================================
Actuator - Canonical Label Sets
=====================================================================
Alert labels arrive as unordered JSON objects. Rules and alerts are matched
through a trie, which needs a deterministic path for any collection of
labels. LabelSet keeps its labels sorted by key with unique keys, so two
sets with the same members always produce the same identity string and
the same trie segments regardless of insertion order.

Two insertion policies are supported:
- strict (add / add_map): raises DuplicateLabelError on a key that is
  already present. Used when building rules from configuration.
- accumulate (accumulate / accumulate_map): silently keeps the first value
  seen for a key. Used when layering payload-wide labels under per-alert
  labels, so the first writer wins.

Every insertion re-sorts the whole sequence. Prefer one batched call over
one call per label.
=====================================================================
"""

from typing import Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional

from actuator.errors import DuplicateLabelError


class Label(NamedTuple):
    """A single immutable key/value pair."""

    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


class LabelSet:
    """Sorted, duplicate-free collection of labels."""

    __slots__ = ("_in_order", "_seen")

    def __init__(self, labels: Optional[Iterable[Label]] = None):
        self._in_order: List[Label] = []
        self._seen: Dict[str, bool] = {}
        if labels is not None:
            self.add(labels)

    # -----------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "LabelSet":
        ls = cls()
        ls.add_map(mapping)
        return ls

    @classmethod
    def parse(cls, items: Iterable[str]) -> "LabelSet":
        """
        Build a set from "key=value" strings, strictly.

        Raises:
            ValueError: an item has no '=' or an empty key
            DuplicateLabelError: the same key appears twice
        """
        labels = []
        for item in items:
            key, sep, value = str(item).partition("=")
            key = key.strip()
            if not sep or not key:
                raise ValueError(f"label must look like key=value, got: {item!r}")
            labels.append(Label(key, value.strip()))
        return cls(labels)

    # -----------------------------------------------------------------
    # Insertion
    # -----------------------------------------------------------------

    def _add(self, labels: Iterable[Label], error_on_duplicate: bool) -> None:
        admitted: List[Label] = []
        batch_seen = set()
        for label in labels:
            key = label.key
            if self._seen.get(key) or key in batch_seen:
                if error_on_duplicate:
                    raise DuplicateLabelError(key)
                continue
            batch_seen.add(key)
            admitted.append(label)

        if not admitted:
            return

        # Commit only once the whole batch is known to be valid.
        for label in admitted:
            self._seen[label.key] = True
        self._in_order.extend(admitted)
        self._in_order.sort(key=lambda lbl: lbl.key)

    def add(self, labels: Iterable[Label]) -> None:
        """Add labels, raising DuplicateLabelError if any key is already present."""
        self._add(_as_labels(labels), error_on_duplicate=True)

    def accumulate(self, labels: Iterable[Label]) -> None:
        """Add labels, skipping any whose key is already present."""
        self._add(_as_labels(labels), error_on_duplicate=False)

    def add_map(self, mapping: Optional[Mapping[str, str]]) -> None:
        """Strict insertion from an unordered mapping."""
        if mapping:
            self._add(_from_mapping(mapping), error_on_duplicate=True)

    def accumulate_map(self, mapping: Optional[Mapping[str, str]]) -> None:
        """First-writer-wins insertion from an unordered mapping."""
        if mapping:
            self._add(_from_mapping(mapping), error_on_duplicate=False)

    # -----------------------------------------------------------------
    # Views
    # -----------------------------------------------------------------

    def copy(self) -> "LabelSet":
        """Return an independent copy; mutating it never touches this set."""
        dup = LabelSet()
        dup._in_order = list(self._in_order)
        dup._seen = dict(self._seen)
        return dup

    def segments(self) -> List[str]:
        """Flatten to [key0, value0, key1, value1, ...] in key order."""
        segs: List[str] = []
        for label in self._in_order:
            segs.append(label.key)
            segs.append(label.value)
        return segs

    def as_dict(self) -> Dict[str, str]:
        return {label.key: label.value for label in self._in_order}

    def __contains__(self, key: object) -> bool:
        return bool(self._seen.get(key))  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[Label]:
        return iter(self._in_order)

    def __len__(self) -> int:
        return len(self._in_order)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LabelSet):
            return NotImplemented
        return self._in_order == other._in_order

    # Mutable, so not usable as a dict key or set member.
    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        return "".join(f"{label.key}={label.value};" for label in self._in_order)

    def __repr__(self) -> str:
        return f"LabelSet({str(self)!r})"


def _as_labels(labels: Iterable) -> Iterator[Label]:
    for item in labels:
        if isinstance(item, Label):
            yield item
        else:
            key, value = item
            yield Label(str(key), str(value))


def _from_mapping(mapping: Mapping[str, str]) -> Iterator[Label]:
    for key, value in mapping.items():
        yield Label(str(key), "" if value is None else str(value))
