"""In-memory mirror of the live tab tree.

The mirror is a single mutable structure shared by capture and restore. It is
only touched from the event loop, so no lock guards it. ``commit()`` is the
synchronization point: it awaits the optional persistence hook, and a caller
that awaited ``commit()`` sees the finished topology.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Optional

from .codec import View

CommitHook = Callable[["TreeState"], Awaitable[None]]


@dataclass(slots=True)
class TreeNode:
    id: str
    tab_id: int
    parent_id: Optional[str]
    view_id: str
    is_expanded: bool = True
    pinned: bool = False
    window_id: Optional[int] = None
    group_info: Optional[dict[str, Any]] = None
    children: list[str] = field(default_factory=list)


def node_id_for(tab_id: int) -> str:
    return f"node-{tab_id}"


class TreeState:
    def __init__(
        self,
        views: Iterable[View] = (),
        *,
        default_view: View,
        on_commit: Optional[CommitHook] = None,
    ):
        self._default_view = default_view
        self._views: dict[str, View] = {}
        self._nodes: dict[str, TreeNode] = {}
        self._roots: list[str] = []
        self._on_commit = on_commit
        self.revision = 0
        self.add_view(default_view)
        for view in views:
            self.add_view(view)

    # -- views --------------------------------------------------------------

    @property
    def views(self) -> list[View]:
        return list(self._views.values())

    @property
    def default_view_id(self) -> str:
        return self._default_view.id

    def has_view(self, view_id: str) -> bool:
        return view_id in self._views

    def add_view(self, view: View) -> None:
        """Register ``view``; an existing view with the same id is kept as is."""
        self._views.setdefault(view.id, view)

    # -- nodes --------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, tab_id: object) -> bool:
        return isinstance(tab_id, int) and node_id_for(tab_id) in self._nodes

    def tab_ids(self) -> list[int]:
        return [node.tab_id for node, _parent in self.walk()]

    def node_for_tab(self, tab_id: int) -> Optional[TreeNode]:
        return self._nodes.get(node_id_for(tab_id))

    def parent_tab_id(self, tab_id: int) -> Optional[int]:
        node = self.node_for_tab(tab_id)
        if node is None or node.parent_id is None:
            return None
        return self._nodes[node.parent_id].tab_id

    def children_of(self, tab_id: int) -> list[int]:
        node = self.node_for_tab(tab_id)
        if node is None:
            return []
        return [self._nodes[child].tab_id for child in node.children]

    def add_tab(
        self,
        tab_id: int,
        *,
        parent_tab_id: Optional[int] = None,
        view_id: Optional[str] = None,
        is_expanded: bool = True,
        pinned: bool = False,
        window_id: Optional[int] = None,
        group_info: Optional[dict[str, Any]] = None,
    ) -> TreeNode:
        """Append ``tab_id`` as the last child of its parent (or last root).

        Unknown views fall back to the default view; an unknown parent makes
        the tab a root.
        """
        node_id = node_id_for(tab_id)
        if node_id in self._nodes:
            raise ValueError(f"tab {tab_id} is already in the tree")
        resolved_view = view_id if view_id in self._views else self._default_view.id
        parent = self.node_for_tab(parent_tab_id) if parent_tab_id is not None else None
        node = TreeNode(
            id=node_id,
            tab_id=tab_id,
            parent_id=parent.id if parent is not None else None,
            view_id=resolved_view,
            is_expanded=is_expanded,
            pinned=pinned,
            window_id=window_id,
            group_info=group_info,
        )
        self._nodes[node_id] = node
        if parent is not None:
            parent.children.append(node_id)
        else:
            self._roots.append(node_id)
        return node

    def remove_tab(self, tab_id: int) -> bool:
        """Drop ``tab_id`` and promote its children into its slot."""
        node = self._nodes.pop(node_id_for(tab_id), None)
        if node is None:
            return False
        siblings = self._nodes[node.parent_id].children if node.parent_id is not None else self._roots
        position = siblings.index(node.id)
        for child_id in node.children:
            self._nodes[child_id].parent_id = node.parent_id
        siblings[position : position + 1] = node.children
        return True

    def walk(self) -> Iterator[tuple[TreeNode, Optional[TreeNode]]]:
        """Yield ``(node, parent)`` per view in view order, depth-first.

        Siblings keep their order and a parent is always yielded before its
        children.
        """
        for view in self._views.values():
            stack: list[tuple[str, Optional[TreeNode]]] = [
                (root_id, None) for root_id in reversed(self._roots) if self._nodes[root_id].view_id == view.id
            ]
            while stack:
                node_id, parent = stack.pop()
                node = self._nodes[node_id]
                yield node, parent
                stack.extend((child_id, node) for child_id in reversed(node.children))

    # -- synchronization ----------------------------------------------------

    async def commit(self) -> int:
        """Publish pending mutations; returns the new revision."""
        if self._on_commit is not None:
            await self._on_commit(self)
        self.revision += 1
        return self.revision
