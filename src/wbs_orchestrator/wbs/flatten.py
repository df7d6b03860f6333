"""Flatten a WBS tree back into ordered rows."""

from __future__ import annotations

from dataclasses import replace
from itertools import count

from ..models import Permanent, Ref, Remote, Temporary, WbsItem
from .tree import WbsNode, WbsTree


def preferred_ref(item: WbsItem) -> Ref | None:
    """The reference children should use for ``item``.

    A remote row id wins so a new child can be positioned under an already
    materialized parent; otherwise the permanent id, then the temporary id.
    """
    if item.remote_row_id is not None:
        return Remote(item.remote_row_id)
    if item.id:
        return Permanent(item.id)
    if item.temp_id:
        return Temporary(item.temp_id)
    return None


class TreeFlattener:
    """
    Pre-order traversal producing flat items.

    ``order_index`` is a single global sequence across the whole tree,
    matching the remote sheet's flat row order. Each emitted item is a copy;
    the input tree is not modified.
    """

    def __init__(self, temp_prefix: str = "flat"):
        self.temp_prefix = temp_prefix

    def flatten(self, tree: WbsTree | list[WbsNode]) -> list[WbsItem]:
        roots = tree.roots if isinstance(tree, WbsTree) else tree
        sequence = count()
        anonymous = count(1)
        result: list[WbsItem] = []

        # (node, parent ref) pairs; reversed so the stack pops in order
        stack: list[tuple[WbsNode, Ref | None]] = [(node, None) for node in reversed(roots)]
        while stack:
            node, parent_ref = stack.pop()
            item = replace(node.item, parent=parent_ref, order_index=next(sequence))
            own_ref = preferred_ref(item)
            if own_ref is None and node.children:
                # Children need something to point at before the parent is persisted
                item.temp_id = f"{self.temp_prefix}-{next(anonymous)}"
                own_ref = Temporary(item.temp_id)
            result.append(item)
            stack.extend((child, own_ref) for child in reversed(node.children))
        return result
