"""Tests for the Dataflow propagation engine."""

import asyncio
import logging

import pytest

from rippleflow import (
    UNSET,
    CycleError,
    Dataflow,
    DuplicateNodeError,
    InvalidBatchValueError,
    InvalidProducerError,
    NodeExecutionError,
    depends_on,
)


def _diamond(calls, events=None):
    """a = x + y, c = z * 10, b = a + c, d = b * 2."""
    flow = Dataflow()

    async def a(x, y):
        calls.append("a")
        if events is not None:
            events.append("a:start")
            await asyncio.sleep(0)
            events.append("a:end")
        return x + y

    async def c(z):
        calls.append("c")
        if events is not None:
            events.append("c:start")
            await asyncio.sleep(0)
            events.append("c:end")
        return z * 10

    def b(a, c):
        calls.append("b")
        return a + c

    def d(b):
        calls.append("d")
        return b * 2

    flow.register(a, b, c, d)
    return flow


class TestRegister:
    def test_named_functions(self):
        flow = Dataflow()

        def total(price, qty):
            return price * qty

        flow.register(total)
        assert "total" in flow.graph
        assert flow.graph.upstream("total") == ("price", "qty")

    def test_mapping(self):
        flow = Dataflow()
        flow.register({"double": lambda x: x * 2, "triple": lambda x: x * 3})
        assert flow.graph.downstream("x") == ["double", "triple"]

    def test_keywords(self):
        flow = Dataflow()
        flow.register(double=lambda x: x * 2)
        assert "double" in flow.graph

    def test_decorator(self):
        flow = Dataflow()

        @flow.node
        def doubled(x):
            return x * 2

        @flow.node("doubled", "offset")
        def shifted(d, o):
            return d + o

        assert doubled(2) == 4  # decorator returns the function
        assert flow.graph.upstream("shifted") == ("doubled", "offset")

    def test_duplicate(self):
        flow = Dataflow()
        flow.register(a=lambda x: x)
        with pytest.raises(DuplicateNodeError):
            flow.register(a=lambda y: y)

    def test_not_callable(self):
        flow = Dataflow()
        with pytest.raises(InvalidProducerError):
            flow.register({"a": "not a function"})


class TestPropagation:
    async def test_diamond_rounds(self):
        calls, events = [], []
        flow = _diamond(calls, events)
        await flow.update({"x": 1, "y": 2, "z": 3})

        assert sorted(calls[:2]) == ["a", "c"]
        assert calls[2:] == ["b", "d"]
        # a and c were in flight together
        assert events[:2] == ["a:start", "c:start"]
        assert flow.value("a") == 3
        assert flow.value("c") == 30
        assert flow.value("b") == 33
        assert flow.value("d") == 66

    async def test_recomputes_only_changed_branch(self):
        calls = []
        flow = _diamond(calls)
        await flow.update({"x": 1, "y": 2, "z": 3})
        calls.clear()

        await flow.update({"x": 2})
        assert calls == ["a", "b", "d"]
        assert flow.value("d") == 68
        assert flow.changed("a")
        assert not flow.changed("c")

    async def test_equal_input_runs_nothing(self):
        calls = []
        flow = _diamond(calls)
        await flow.update({"x": 1, "y": 2, "z": 3})
        calls.clear()

        await flow.update({"x": 1})
        assert calls == []

    async def test_deep_equality(self):
        calls = []
        flow = Dataflow()
        flow.register(size=lambda items: calls.append(items) or len(items["rows"]))
        await flow.update(items={"rows": [1, 2]})
        await flow.update(items={"rows": [1, 2]})
        assert len(calls) == 1

    async def test_repeated_nan_runs_once(self):
        calls = []
        flow = Dataflow()
        flow.register(seen=lambda x: calls.append(x))
        await flow.update(x=float("nan"))
        await flow.update(x=float("nan"))
        assert len(calls) == 1

    async def test_int_to_bool_is_a_change(self):
        flow = Dataflow()
        flow.register(kind=lambda x: type(x).__name__)
        await flow.update(x=1)
        await flow.update(x=True)
        assert flow.value("x") is True
        assert flow.value("kind") == "bool"

    async def test_returned_exception_is_a_value(self):
        flow = Dataflow()
        flow.register(err=lambda x: ValueError(x), shown=lambda err: str(err))
        await flow.update(x="bad")
        assert flow.errors == []
        assert isinstance(flow.value("err"), ValueError)
        assert flow.value("shown") == "bad"

        # replayed from the cache when the node is settled but not called
        await flow.update({"x": "bad", "other": 1})
        assert flow.errors == []
        assert flow.value("shown") == "bad"

    async def test_long_chain(self):
        flow = Dataflow()
        for i in range(1, 5000):
            flow.register({f"n{i}": depends_on(f"n{i - 1}")(lambda v: v + 1)})
        await flow.update(n0=0)
        assert flow.value("n4999") == 4999

    async def test_unchanged_result_stops_propagation(self):
        calls = []
        flow = Dataflow()

        def positive(x):
            return x > 0

        def label(positive):
            calls.append(positive)
            return "yes" if positive else "no"

        flow.register(positive, label)
        await flow.update(x=1)
        await flow.update(x=5)
        assert calls == [True]
        assert flow.value("label") == "yes"

    async def test_unchanged_upstream_reuses_cache(self):
        """A node reached via an unchanged name is settled, not called."""
        calls = []
        flow = Dataflow()
        flow.register(total=lambda price, qty: calls.append("total") or price * qty)
        await flow.update(price=2, qty=3)
        await flow.update(price=2, qty=3)
        assert calls == ["total"]
        assert flow.value("total") == 6

    async def test_unset_upstream_is_none(self):
        seen = []
        flow = Dataflow()
        flow.register(pair=lambda a, b: seen.append((a, b)))
        await flow.update(a=1)
        assert seen == [(1, None)]
        assert flow.value("b") is UNSET

    async def test_batch_overrides_intermediate(self):
        flow = Dataflow()
        flow.register(double=lambda x: x * 2)
        await flow.update({"x": 1, "double": 100})
        # x is upstream of double, so double is recomputed after the batch writes
        assert flow.value("double") == 2

    async def test_sync_and_async_producers(self):
        flow = Dataflow()

        async def fetched(key):
            await asyncio.sleep(0)
            return key.upper()

        def shown(fetched):
            return f"<{fetched}>"

        flow.register(fetched, shown)
        await flow.update(key="abc")
        assert flow.value("shown") == "<ABC>"

    async def test_values_snapshot(self):
        flow = Dataflow()
        flow.register(double=lambda x: x * 2)
        await flow.update(x=4)
        assert flow.values == {"x": 4, "double": 8}

    async def test_independent_instances(self):
        one, two = Dataflow(), Dataflow()
        one.register(out=lambda x: x + 1)
        two.register(out=lambda x: x - 1)
        await asyncio.gather(one.update(x=10), two.update(x=10))
        assert one.value("out") == 11
        assert two.value("out") == 9


class TestInvalidBatch:
    async def test_awaitable_value_rejected(self):
        flow = Dataflow()
        flow.register(double=lambda x: x * 2)
        pending = asyncio.get_running_loop().create_future()

        with pytest.raises(InvalidBatchValueError, match="x"):
            flow.update({"y": 1, "x": pending})

        assert not flow.in_progress
        assert flow.pending_batches == 0
        assert flow.value("y") is UNSET

    def test_requires_running_loop(self):
        flow = Dataflow()
        with pytest.raises(RuntimeError):
            flow.update(x=1)
        assert flow.pending_batches == 0


class TestCycles:
    async def test_cycle_aborts_batch(self):
        flow = Dataflow()
        flow.register(a=lambda b: b, b=lambda a: a)

        with pytest.raises(CycleError) as exc:
            await flow.update(a=1)

        assert set(exc.value.path) == {"a", "b"}
        assert flow.value("a") is UNSET
        assert flow.value("b") is UNSET
        assert not flow.in_progress

    async def test_unawaited_cycle_is_logged(self, caplog):
        flow = Dataflow()
        flow.register(a=lambda b: b, b=lambda a: a)

        with caplog.at_level(logging.ERROR, logger="rippleflow.engine"):
            session = flow.update(a=1)
            await flow.idle()
            await asyncio.sleep(0)

        assert session.done()
        assert "Dataflow session failed" in caplog.text
        assert "a -> b -> a" in caplog.text

    async def test_engine_usable_after_cycle(self):
        flow = Dataflow()
        flow.register(a=lambda b: b, b=lambda a: a, double=lambda x: x * 2)

        with pytest.raises(CycleError):
            await flow.update(a=1)

        await flow.update(x=3)
        assert flow.value("double") == 6


class TestErrors:
    def _flow(self):
        flow = Dataflow()

        def a(x):
            if x < 0:
                raise ValueError("negative")
            return x * 2

        def b(a):
            return a + 1

        def c(x):
            return x * 3

        flow.register(a, b, c)
        return flow

    async def test_failure_isolated(self):
        flow = self._flow()
        await flow.update(x=1)
        assert flow.errors == []

        await flow.update(x=-1)

        assert len(flow.errors) == 1
        error = flow.errors[0]
        assert isinstance(error, NodeExecutionError)
        assert error.node == "a"
        assert error.params == [-1]
        assert isinstance(error.cause, ValueError)
        # downstream keeps its pre-batch value, sibling branch updates
        assert flow.value("a") == 2
        assert flow.value("b") == 3
        assert flow.value("c") == -3

    async def test_join_below_failure_stays_gated(self):
        flow = self._flow()
        flow.register(d=lambda a, c: a + c)
        await flow.update(x=1)
        assert flow.value("d") == 5

        await flow.update(x=-1)

        assert [e.node for e in flow.errors] == ["a"]
        assert flow.value("c") == -3  # healthy sibling updated
        assert flow.value("d") == 5  # never released by a, keeps its value

    async def test_async_failure(self):
        flow = Dataflow()

        async def broken(x):
            await asyncio.sleep(0)
            raise RuntimeError("boom")

        flow.register(broken)
        await flow.update(x=1)
        assert [e.node for e in flow.errors] == ["broken"]
        assert flow.value("broken") is UNSET

    async def test_errors_cleared_per_session(self):
        flow = self._flow()
        await flow.update(x=-1)
        assert len(flow.errors) == 1
        await flow.update(x=2)
        assert flow.errors == []

    async def test_failure_logged(self, caplog):
        flow = self._flow()
        with caplog.at_level(logging.WARNING, logger="rippleflow.engine"):
            await flow.update(x=-1)
        assert "Error executing node a" in caplog.text


class TestReentrantUpdates:
    async def test_nested_batch_runs_after_wavefront(self):
        log = []
        flow = Dataflow()

        def a(x):
            log.append(("a", x))
            if x == 1:
                queued = flow.update(y=10)
                assert queued.done()
                assert flow.pending_batches == 1
            return x

        def b(a):
            log.append(("b", a))
            return a

        def c(y):
            log.append(("c", y))
            return y

        flow.register(a, b, c)
        await flow.update(x=1)

        assert log == [("a", 1), ("b", 1), ("c", 10)]
        assert not flow.in_progress
        assert flow.pending_batches == 0

    async def test_awaiting_nested_update_does_not_block(self):
        flow = Dataflow()

        async def echo(x):
            await flow.update(mirror=x)
            return x

        flow.register(echo)
        await flow.update(x=7)
        assert flow.value("mirror") == 7

    async def test_batches_in_arrival_order(self):
        applied = []
        flow = Dataflow()
        flow.register(seen=lambda x: applied.append(x))
        first = flow.update(x=1)
        flow.update(x=2)
        flow.update(x=3)
        await first
        assert applied == [1, 2, 3]


class TestReading:
    async def test_get_waits_for_session(self):
        calls = []
        flow = _diamond(calls)
        flow.update({"x": 1, "y": 2, "z": 3})
        assert flow.in_progress
        assert await flow.get("d") == 66

    async def test_get_inside_producer(self):
        flow = Dataflow()

        async def peek(x):
            return await flow.get("x")

        flow.register(peek)
        await asyncio.wait_for(flow.update(x=5), timeout=1)
        assert flow.value("peek") == 5

    async def test_value_default(self):
        flow = Dataflow()
        assert flow.value("missing", None) is None
        assert flow.value("missing") is UNSET
        assert await flow.get("missing") is UNSET
