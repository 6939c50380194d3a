"""Dependency graph — nodes, their producers, and the edges between them.

Edges are implicit: a node depends on every name in its upstream list, and
each upstream name keeps an ordered list of the nodes downstream of it.
Names that only ever appear as dependencies are pure inputs: they hold a
cached value but have no producer and no node entry.

The graph is built by registration and never shrinks. The only state that
changes afterwards is each node's pending-dependency counter, which the
engine resets and fills for every batch.
"""

from __future__ import annotations

import inspect
from typing import Callable, Iterator, Sequence

from rippleflow.errors import CycleError, DuplicateNodeError, InvalidProducerError

Producer = Callable[..., object]

_POSITIONAL = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)


def depends_on(*names: str) -> Callable[[Producer], Producer]:
    """Declare a producer's ordered upstream names explicitly.

    Usage:
        @depends_on("width", "height")
        def area(w, h):
            return w * h
    """

    def decorate(fn: Producer) -> Producer:
        fn.__upstream__ = tuple(names)
        return fn

    return decorate


def upstream_names_of(producer: Producer) -> Sequence[str]:
    """Default name extraction: declared names, else positional parameter names."""
    declared = getattr(producer, "__upstream__", None)
    if declared is not None:
        return tuple(declared)
    params = inspect.signature(producer).parameters.values()
    return tuple(p.name for p in params if p.kind in _POSITIONAL)


class Node:
    """A registered producer node."""

    __slots__ = ("name", "producer", "upstream", "pending")

    def __init__(self, name: str, producer: Producer, upstream: Sequence[str]) -> None:
        self.name = name
        self.producer = producer
        self.upstream = tuple(upstream)
        self.pending = 0

    def __repr__(self) -> str:
        return f"Node({self.name!r}, upstream={list(self.upstream)!r})"


class DependencyGraph:
    """name -> Node, and upstream name -> ordered downstream node names."""

    def __init__(
        self, upstream_names_of: Callable[[Producer], Sequence[str]] = upstream_names_of
    ) -> None:
        self._names_of = upstream_names_of
        self._nodes: dict[str, Node] = {}
        self._downstream: dict[str, list[str]] = {}

    def add(self, name: str, producer: Producer) -> Node:
        if name in self._nodes:
            raise DuplicateNodeError(name)
        if not callable(producer):
            raise InvalidProducerError(name, producer)
        node = Node(name, producer, self._names_of(producer))
        self._nodes[name] = node
        for upstream in node.upstream:
            self._downstream.setdefault(upstream, []).append(name)
        return node

    def node(self, name: str) -> Node:
        return self._nodes[name]

    def producer(self, name: str) -> Producer | None:
        node = self._nodes.get(name)
        return node.producer if node is not None else None

    def upstream(self, name: str) -> tuple[str, ...]:
        node = self._nodes.get(name)
        return node.upstream if node is not None else ()

    def downstream(self, name: str) -> list[str]:
        return self._downstream.get(name, [])

    def is_input(self, name: str) -> bool:
        return name not in self._nodes and name in self._downstream

    def reset_pending(self) -> None:
        for node in self._nodes.values():
            node.pending = 0

    def closure(self, names: Sequence[str]) -> set[str]:
        """Downstream transitive closure of names, counting pending edges.

        Every traversed edge U -> N increments N's pending counter once, so a
        node ends up waiting on each of its upstream names that will be set or
        recomputed in this batch. Raises CycleError on revisiting a name that
        is on the current path.
        """
        visited: set[str] = set()
        for root in names:
            if root in visited:
                continue
            visited.add(root)
            # Explicit stack of (name, remaining downstream) frames; path
            # mirrors the stack so long chains never hit the recursion limit.
            path = [root]
            on_path = {root}
            stack = [(root, iter(self.downstream(root)))]
            while stack:
                name, remaining = stack[-1]
                for ds_name in remaining:
                    self._nodes[ds_name].pending += 1
                    if ds_name in on_path:
                        start = path.index(ds_name)
                        raise CycleError(path[start:] + [ds_name])
                    if ds_name not in visited:
                        visited.add(ds_name)
                        path.append(ds_name)
                        on_path.add(ds_name)
                        stack.append((ds_name, iter(self.downstream(ds_name))))
                        break
                else:
                    stack.pop()
                    path.pop()
                    on_path.discard(name)
        return visited

    def release(self, name: str) -> list[str]:
        """Decrement each downstream counter of name; return those now at zero."""
        ready = []
        for ds_name in self.downstream(name):
            node = self._nodes[ds_name]
            node.pending -= 1
            if node.pending == 0:
                ready.append(ds_name)
        return ready

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"DependencyGraph({len(self._nodes)} nodes)"
