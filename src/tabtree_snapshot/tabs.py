"""Contract of the browser tab collaborator consumed by capture and restore."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(slots=True, frozen=True)
class TabInfo:
    id: int
    url: str
    title: str = ""
    pinned: bool = False
    window_id: Optional[int] = None


@runtime_checkable
class TabsApi(Protocol):
    """Asynchronous tab operations, mirroring ``chrome.tabs``.

    Every method is a suspension point; callers never assume the side effect
    happened until the awaitable resolves.
    """

    async def create(
        self,
        url: str,
        *,
        pinned: bool = False,
        active: bool = False,
        window_id: Optional[int] = None,
    ) -> int: ...

    async def remove(self, tab_ids: Sequence[int]) -> None: ...

    async def move(self, tab_id: int, *, window_id: Optional[int] = None, index: int = -1) -> None: ...

    async def query(self, **filters: Any) -> list[TabInfo]: ...

    async def create_window(self) -> int:
        """Open a new empty window and return its id (``chrome.windows.create``)."""
        ...
