"""
Segment trie used to look up reaction groups by label path.

Keys are sequences of opaque string segments. A value stored at a node is
returned for any lookup whose path passes through that node, so a short
(broad) key and a long (specific) key can both match the same lookup.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union


class Node:
    """Trie node. A node whose value is None is a pure routing node."""

    __slots__ = ("value", "children")

    def __init__(self):
        self.value: Optional[Any] = None
        self.children: Dict[str, "Node"] = {}


def _path(key: Union[Sequence[str], Any]) -> Sequence[str]:
    # Anything exposing segments() (e.g. LabelSet) can be used as a key.
    segments = getattr(key, "segments", None)
    if callable(segments):
        return segments()
    return key


class Trie:
    """Prefix tree keyed by segment sequences."""

    def __init__(self):
        self.root = Node()
        self._size = 0

    def insert(self, key, value: Any) -> bool:
        """
        Store value at the node reached by key, creating nodes as needed.

        The empty key stores the value on the root.

        Returns:
            True if the node had no value before, False if one was overwritten.
        """
        node = self.root
        for seg in _path(key):
            child = node.children.get(seg)
            if child is None:
                child = Node()
                node.children[seg] = child
            node = child
        novel = node.value is None
        node.value = value
        if novel and value is not None:
            self._size += 1
        elif not novel and value is None:
            self._size -= 1
        return novel

    def get(self, key) -> List[Any]:
        """
        Collect every value along key's path, shallowest first.

        The root's value comes first when set. The walk stops at the first
        segment with no matching child; values found before that point are
        still returned.
        """
        node = self.root
        values: List[Any] = []
        if node.value is not None:
            values.append(node.value)
        for seg in _path(key):
            node = node.children.get(seg)
            if node is None:
                break
            if node.value is not None:
                values.append(node.value)
        return values

    def get_subpaths(self, key, stride: int = 1) -> List[Any]:
        """
        Collect values stored at every path made of an ordered subset of
        key's chunks, where key is cut into chunks of `stride` segments.

        With label segments and stride=2 this finds every stored label set
        that is contained in the queried one. Results are ordered by depth,
        shallowest first, then in the order the chunks appear in key.
        """
        if stride < 1:
            raise ValueError(f"stride must be positive, got: {stride}")
        path = list(_path(key))
        chunks: List[Tuple[str, ...]] = [
            tuple(path[i:i + stride]) for i in range(0, len(path) - len(path) % stride, stride)
        ]

        values: List[Any] = []
        visited: Set[int] = set()
        if self.root.value is not None:
            values.append(self.root.value)

        frontier: List[Tuple[Node, int]] = [(self.root, 0)]
        while frontier:
            next_frontier: List[Tuple[Node, int]] = []
            for node, start in frontier:
                for i in range(start, len(chunks)):
                    child = _descend(node, chunks[i])
                    if child is None or id(child) in visited:
                        continue
                    visited.add(id(child))
                    if child.value is not None:
                        values.append(child.value)
                    if child.children:
                        next_frontier.append((child, i + 1))
            frontier = next_frontier
        return values

    def __len__(self) -> int:
        return self._size


def _descend(node: Node, chunk: Iterable[str]) -> Optional[Node]:
    for seg in chunk:
        node = node.children.get(seg)
        if node is None:
            return None
    return node
