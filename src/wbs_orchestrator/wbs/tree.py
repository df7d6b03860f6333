"""Build an ordered, numbered tree from flat WBS items."""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TypeVar

from ..errors import CycleDetected, ValidationError
from ..models import Ref, WbsItem, WbsStatus

K = TypeVar("K", bound=Hashable)

logger = logging.getLogger(__name__)


def find_cycle(parent_of: Mapping[K, K | None]) -> list[K] | None:
    """
    Return the first parent-chain cycle in ``parent_of``, or ``None``.

    Each chain is walked once with a visited set, so the check is linear in
    the number of keys. The returned list starts and ends with the same key.
    """
    done: set[K] = set()
    for start in parent_of:
        if start in done:
            continue
        path: list[K] = []
        on_path: set[K] = set()
        node: K | None = start
        while node is not None and node not in done:
            if node in on_path:
                return path[path.index(node) :] + [node]
            on_path.add(node)
            path.append(node)
            node = parent_of.get(node)
        done.update(path)
    return None


@dataclass(eq=False)
class WbsNode:
    """An item placed in the tree, with its derived code and depth."""

    item: WbsItem
    children: list[WbsNode] = field(default_factory=list)
    parent: WbsNode | None = field(default=None, repr=False)
    code: str = ""
    depth: int = 0

    @property
    def completion(self) -> float:
        """Percent complete: leaves are 0 or 100, parents average their children."""
        if not self.children:
            return 100.0 if self.item.status == WbsStatus.COMPLETE else 0.0
        return sum(child.completion for child in self.children) / len(self.children)


@dataclass
class WbsTree:
    roots: list[WbsNode] = field(default_factory=list)
    lookup: dict[Ref, WbsNode] = field(default_factory=dict, repr=False)
    warnings: list[str] = field(default_factory=list)

    def walk(self) -> Iterator[WbsNode]:
        """Pre-order traversal."""
        stack = list(reversed(self.roots))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def items(self) -> list[WbsItem]:
        return [node.item for node in self.walk()]

    def find(self, ref: Ref) -> WbsNode | None:
        return self.lookup.get(ref)

    def codes(self) -> dict[str, str]:
        """Item label to code, for display and debugging."""
        return {node.item.label: node.code for node in self.walk()}

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())


class HierarchyBuilder:
    """
    Converts flat items into an ordered tree.

    Items are looked up by every identity they carry (permanent id, remote
    row id, temporary id). An item whose parent does not resolve becomes a
    root. Siblings are ordered by ``order_index`` (stable for ties). Codes
    are assigned in pre-order; skip items get no code and their children
    restart numbering at the top level prefix.
    """

    def build(self, items: Iterable[WbsItem]) -> WbsTree:
        """
        Args:
            items: Items in any order

        Returns:
            The tree with codes and depths assigned

        Raises:
            ValidationError: If two items claim the same identity
            CycleDetected: If a parent chain loops
        """
        nodes = [WbsNode(item) for item in items]
        lookup: dict[Ref, WbsNode] = {}
        warnings: list[str] = []
        for node in nodes:
            for ref in node.item.refs:
                if ref in lookup:
                    raise ValidationError(
                        f"Duplicate identity {ref} on {node.item.label} and {lookup[ref].item.label}"
                    )
                lookup[ref] = node

        for node in nodes:
            ref = node.item.parent
            if ref is None:
                continue
            parent = lookup.get(ref)
            if parent is None:
                message = f"Parent {ref} of {node.item.label} not found; moved to root"
                logger.warning(message)
                warnings.append(message)
                continue
            node.parent = parent

        cycle = find_cycle({node: node.parent for node in nodes})
        if cycle:
            raise CycleDetected([node.item.label for node in cycle])

        roots: list[WbsNode] = []
        for node in nodes:
            if node.parent is None:
                roots.append(node)
            else:
                node.parent.children.append(node)

        roots = self._sort(roots)
        self._assign_codes(roots, prefix="", depth=0)
        return WbsTree(roots=roots, lookup=lookup, warnings=warnings)

    def _sort(self, nodes: list[WbsNode]) -> list[WbsNode]:
        ordered = sorted(nodes, key=lambda n: n.item.order_index)
        for node in ordered:
            node.children = self._sort(node.children)
        return ordered

    def _assign_codes(self, nodes: list[WbsNode], prefix: str, depth: int) -> None:
        counter = 0
        for node in nodes:
            node.depth = depth
            if node.item.skip:
                node.code = ""
                self._assign_codes(node.children, "", depth + 1)
                continue
            counter += 1
            node.code = f"{prefix}.{counter}" if prefix else str(counter)
            self._assign_codes(node.children, node.code, depth + 1)
