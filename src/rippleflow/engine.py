"""Propagation engine — batched, memoized, wavefront-concurrent updates.

A Dataflow owns its dependency graph, value store, batch queue and error
sink. update() enqueues a batch; if no session is running it starts one as an
asyncio task that drains the queue, including batches enqueued by producers
while the session runs. Each batch is processed to completion before the next
one starts.

Per batch:
1. Compute the downstream closure of the batch's names, counting for every
   reached node how many of its upstream names will be settled this batch.
   A cycle aborts the batch before anything is written.
2. Write the batch values. Every settled name releases one pending count of
   each downstream node; nodes reaching zero join the frontier.
3. Evaluate the whole frontier concurrently, calling a producer only if one of
   its upstream values changed. Join on all of them, then settle the results,
   which builds the next frontier. Repeat until the frontier is empty.

A producer that raises is recorded in ``errors``; nothing downstream of it
runs for that batch and its cached value is left untouched.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import logging
from typing import Callable, Mapping, Sequence

from rippleflow._queue import BatchQueue
from rippleflow._store import UNSET, ValueStore, default_is_equal
from rippleflow.errors import (
    InvalidBatchValueError,
    InvalidProducerError,
    NodeExecutionError,
)
from rippleflow.graph import DependencyGraph, Node, Producer, depends_on
from rippleflow.graph import upstream_names_of as _default_names_of

logger = logging.getLogger("rippleflow.engine")

# The engine whose session is running in the current context. Producers run
# in tasks that inherit it, which lets get()/idle() avoid awaiting their own
# session.
_active_engine: contextvars.ContextVar[Dataflow | None] = contextvars.ContextVar(
    "active_engine", default=None
)


def _log_session_failure(session: asyncio.Task) -> None:
    """Log a session that died, e.g. on a cycle, even if nobody awaits it."""
    if session.cancelled():
        return
    exc = session.exception()
    if exc is not None:
        logger.error("Dataflow session failed: %s", exc, exc_info=exc)


class Dataflow:
    """A dataflow graph instance with its own values, queue and errors."""

    def __init__(
        self,
        *,
        upstream_names_of: Callable[[Producer], Sequence[str]] | None = None,
        is_equal: Callable[[object, object], bool] | None = None,
    ) -> None:
        self._graph = DependencyGraph(upstream_names_of or _default_names_of)
        self._store = ValueStore()
        self._queue = BatchQueue()
        self._is_equal = is_equal or default_is_equal
        self._errors: list[NodeExecutionError] = []
        self._session: asyncio.Task | None = None

    # ─── Registration ────────────────────────────────────────────────────

    def register(self, *producers: Producer | Mapping[str, Producer], **named: Producer) -> None:
        """Register producer nodes.

        Accepts a single mapping of name -> producer, named callables (the
        node name is the function's ``__name__``), or keyword arguments.
        """
        items: list[tuple[str, object]] = []
        if len(producers) == 1 and isinstance(producers[0], Mapping):
            items.extend(producers[0].items())
        else:
            for fn in producers:
                name = getattr(fn, "__name__", None)
                if name is None:
                    raise InvalidProducerError(repr(fn), fn)
                items.append((name, fn))
        items.extend(named.items())
        for name, fn in items:
            node = self._graph.add(name, fn)
            logger.debug("Registered %s(%s)", name, ", ".join(node.upstream))

    def node(self, *names):
        """Decorator form of register().

        Usage:
            @flow.node
            def total(price, qty):
                return price * qty

            @flow.node("total", "rate")
            def tax(t, r):
                return t * r
        """
        if len(names) == 1 and callable(names[0]):
            self.register(names[0])
            return names[0]

        def decorate(fn: Producer) -> Producer:
            depends_on(*names)(fn)
            self.register(fn)
            return fn

        return decorate

    # ─── Updates ─────────────────────────────────────────────────────────

    def update(self, values: Mapping[str, object] | None = None, /, **kwargs: object) -> asyncio.Future:
        """Request an atomic multi-input update.

        Raises InvalidBatchValueError before touching anything if a value is
        awaitable. Returns the session task when this call starts a session,
        or an already-resolved future when a session is running and will pick
        the batch up after its current wavefront drains.
        """
        batch = dict(values or {})
        batch.update(kwargs)
        for name, value in batch.items():
            if inspect.isawaitable(value):
                raise InvalidBatchValueError(name, value)
        loop = asyncio.get_running_loop()

        self._queue.enqueue(batch)
        if self._session is not None:
            queued = loop.create_future()
            queued.set_result(None)
            return queued

        self._errors = []
        self._session = loop.create_task(self._drain())
        self._session.add_done_callback(_log_session_failure)
        return self._session

    async def _drain(self) -> None:
        token = _active_engine.set(self)
        try:
            while self._queue:
                await self._run_batch(self._queue.dequeue())
                if self._queue:
                    logger.debug("Starting next dynamic batch")
        finally:
            _active_engine.reset(token)
            self._session = None
            logger.debug("Dataflow ended")

    async def _run_batch(self, batch: dict[str, object]) -> None:
        graph, store = self._graph, self._store
        graph.reset_pending()
        graph.closure(list(batch))
        store.reset_changed()

        frontier: dict[str, None] = {}
        for name, value in batch.items():
            self._set_node_value(name, value, frontier)

        while frontier:
            nodes = [graph.node(name) for name in frontier]
            frontier.clear()

            params = [store.args_for(node.upstream) for node in nodes]
            calls = []
            for node, args in zip(nodes, params):
                if store.any_changed(node.upstream):
                    calls.append(self._invoke(node, args))
                else:
                    calls.append(self._cached(node.name))

            outcomes = await asyncio.gather(*calls)
            for node, args, (ok, result) in zip(nodes, params, outcomes):
                if ok:
                    self._set_node_value(node.name, result, frontier)
                else:
                    self._record_error(node, args, result)

    async def _invoke(self, node: Node, args: list) -> tuple[bool, object]:
        """Run a producer to completion. Returns (True, value) or (False, exception).

        A producer may return an exception instance as its value; only a raised
        exception counts as a failure.
        """
        logger.debug("Calling %s(%r)", node.name, args)
        try:
            result = node.producer(*args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            return False, exc
        return True, result

    async def _cached(self, name: str) -> tuple[bool, object]:
        return True, self._store.get(name)

    def _set_node_value(self, name: str, value: object, frontier: dict[str, None]) -> None:
        """Cache value if it changed, then release the downstream nodes of name.

        Downstream nodes whose last pending dependency this was join frontier.
        """
        if self._store.assign(name, value, self._is_equal):
            logger.debug("Setting %s = %r", name, value)
        for ready in self._graph.release(name):
            frontier[ready] = None

    def _record_error(self, node: Node, args: list, cause: Exception) -> None:
        error = NodeExecutionError(node.name, args, cause)
        logger.warning("Error executing node %s with %r", node.name, args, exc_info=cause)
        self._errors.append(error)

    # ─── Reading ─────────────────────────────────────────────────────────

    async def idle(self) -> None:
        """Wait until no session is running.

        Returns immediately when called from inside this engine's own session,
        e.g. from a producer.
        """
        if _active_engine.get() is self:
            return
        while self._session is not None:
            await asyncio.wait({self._session})

    async def get(self, name: str) -> object:
        """Wait for the engine to go idle, then return the cached value of name."""
        await self.idle()
        return self._store.get(name)

    def value(self, name: str, default: object = UNSET) -> object:
        """Last cached value of name, or default (UNSET) if never produced."""
        return self._store.get(name, default)

    def changed(self, name: str) -> bool:
        """Whether name changed during the most recent batch."""
        return self._store.changed.get(name, False)

    @property
    def values(self) -> dict[str, object]:
        return self._store.snapshot()

    @property
    def errors(self) -> list[NodeExecutionError]:
        """Node failures of the most recent session."""
        return list(self._errors)

    @property
    def in_progress(self) -> bool:
        return self._session is not None

    @property
    def pending_batches(self) -> int:
        return len(self._queue)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def __repr__(self) -> str:
        state = "running" if self._session is not None else "idle"
        return f"Dataflow({len(self._graph)} nodes, {state})"
