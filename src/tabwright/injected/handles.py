"""Opaque handle registry living inside one execution world of one document."""

import itertools
import weakref
from typing import Callable

from bs4 import Tag

_handle_ids = itertools.count(1)


class HandleRegistry:
    """Maps opaque string handles to live DOM nodes.

    Only weak references to nodes are kept, so a node dropped from the tree can
    be collected. Handle ids come from a process-wide counter and are never
    reused. ``node_for`` never raises: an unknown, released or detached handle
    resolves to ``None``.
    """

    def __init__(self, is_connected: Callable[[Tag], bool], prefix: str = 'h'):
        self._is_connected = is_connected
        self._prefix = prefix
        self._nodes: dict[str, weakref.ref[Tag]] = {}
        self._handles: dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def handle_for(self, node: Tag) -> str:
        existing = self._handles.get(id(node))
        if existing is not None:
            ref = self._nodes.get(existing)
            if ref is not None and ref() is node:
                return existing
            # id() was recycled for a new object
            self._forget(existing)
        handle = f'{self._prefix}{next(_handle_ids)}'
        self._nodes[handle] = weakref.ref(node, lambda _ref, h=handle: self._forget(h))
        self._handles[id(node)] = handle
        return handle

    def node_for(self, handle: str) -> Tag | None:
        ref = self._nodes.get(handle)
        node = ref() if ref is not None else None
        if node is None:
            return None
        if not self._is_connected(node):
            self._forget(handle)
            return None
        return node

    def release(self, handle: str) -> None:
        self._forget(handle)

    def collect(self) -> int:
        """Drop every handle whose node is gone or detached. Returns the count."""
        stale = [handle for handle in list(self._nodes) if self.node_for(handle) is None]
        for handle in stale:
            self._forget(handle)
        return len(stale)

    def clear(self) -> None:
        self._nodes.clear()
        self._handles.clear()

    def _forget(self, handle: str) -> None:
        ref = self._nodes.pop(handle, None)
        if ref is None:
            return
        node = ref()
        key = id(node) if node is not None else None
        if key is not None and self._handles.get(key) == handle:
            del self._handles[key]
        elif key is None:
            for node_id, mapped in list(self._handles.items()):
                if mapped == handle:
                    del self._handles[node_id]
                    break
