"""Tests for the in-process Panopticon aggregator."""

from __future__ import annotations

import os

import pytest

from panopticon.aggregator import Panopticon
from panopticon.contracts import PanopticonOptions
from panopticon.errors import MetricError, SinkError
from tests.utils import FakeClock, RecordingSink

START_MS = 1_700_000_000_000.0


def make_panopticon(
    clock: FakeClock, persist: bool = False, scale_factor: float = 1.0
) -> tuple[Panopticon, RecordingSink]:
    sink = RecordingSink()
    options = PanopticonOptions(
        start_time_ms=START_MS,
        name="testSet",
        interval_ms=100,
        scale_factor=scale_factor,
        persist=persist,
    )
    return Panopticon(options, worker_id="w1", sinks=[sink], clock=clock), sink


class TestWrites:
    def test_set_and_inc_at_root(self) -> None:
        clock = FakeClock(START_MS + 10)
        panopticon, _ = make_panopticon(clock)

        panopticon.set([], "my name is", "slim shady")
        panopticon.inc([], "testInc", 1)

        data = panopticon.snapshot().data
        assert data["my name is"] == {
            "type": "set",
            "kind": "string",
            "value": "slim shady",
            "timestamp_ms": START_MS + 10,
        }
        assert data["testInc"] == {"type": "inc", "value": 1}

    def test_constructor_accepts_option_mapping(self) -> None:
        panopticon = Panopticon(
            {
                "startTime": "1700000000",
                "name": "testSet",
                "interval": 100,
                "scaleFactor": 1,
                "persist": True,
            },
            clock=FakeClock(1_700_000_050.0),
        )
        assert panopticon.options.start_time_ms == 1_700_000_000.0
        assert panopticon.window == (1_700_000_000.0, 1_700_000_100.0)

    def test_worker_id_defaults_to_pid(self) -> None:
        panopticon = Panopticon(
            PanopticonOptions(start_time_ms=0, name="p", interval_ms=10), clock=FakeClock(5)
        )
        assert panopticon.worker_id == str(os.getpid())

    def test_set_overwrites_and_inc_accumulates(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, _ = make_panopticon(clock)

        panopticon.set(["a", "b"], "state", "starting")
        clock.advance(5)
        panopticon.set(["a", "b"], "state", "running")
        panopticon.inc(["a"], "hits", 2)
        panopticon.inc(["a"], "hits", 3)
        panopticon.inc(["a"], "fresh")

        data = panopticon.snapshot().data
        assert data["a"]["b"]["state"]["value"] == "running"
        assert data["a"]["b"]["state"]["timestamp_ms"] == START_MS + 5
        assert data["a"]["hits"]["value"] == 5
        assert data["a"]["fresh"]["value"] == 1

    def test_sample_and_timed_sample(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, _ = make_panopticon(clock, scale_factor=1000)

        panopticon.sample(["io"], "bytes", 10)
        panopticon.sample(["io"], "bytes", 30)
        # 2 ms expressed in microseconds with scale_factor=1000
        panopticon.timed_sample(["io"], "latency", 2_000_000)

        data = panopticon.snapshot().data["io"]
        assert data["bytes"]["count"] == 2
        assert data["bytes"]["mean"] == 20
        assert data["bytes"]["min"] == 10
        assert data["bytes"]["max"] == 30
        assert data["latency"]["mean"] == pytest.approx(2000.0)

    @pytest.mark.parametrize(
        "write",
        [
            lambda p: p.set([], "k", None),
            lambda p: p.set([], "", "v"),
            lambda p: p.set("path", "k", "v"),
            lambda p: p.inc([], "k", "1"),
            lambda p: p.inc([], "k", True),
            lambda p: p.timed_sample([], "k", -1),
            lambda p: p.inc([], "k", float("nan")),
            lambda p: p.inc([], "k", float("inf")),
            lambda p: p.sample([], "k", float("-inf")),
            lambda p: p.set([], "k", float("nan")),
        ],
    )
    def test_rejects_invalid_writes(self, write) -> None:  # type: ignore[no-untyped-def]
        panopticon, _ = make_panopticon(FakeClock(START_MS))
        with pytest.raises(MetricError):
            write(panopticon)

    def test_kind_conflicts_raise(self) -> None:
        panopticon, _ = make_panopticon(FakeClock(START_MS))
        panopticon.inc([], "counter", 1)
        panopticon.set(["branch"], "leaf", 1)

        with pytest.raises(MetricError, match="inc metric"):
            panopticon.set([], "counter", "x")
        with pytest.raises(MetricError, match="is a path"):
            panopticon.inc([], "branch", 1)
        with pytest.raises(MetricError, match="is a metric"):
            panopticon.inc(["counter"], "child", 1)

    def test_failed_write_leaves_no_partial_branch(self) -> None:
        panopticon, _ = make_panopticon(FakeClock(START_MS))
        with pytest.raises(MetricError):
            panopticon.set(["new"], "k", object())  # type: ignore[arg-type]
        assert dict(panopticon.snapshot().data) == {}


class TestWindows:
    def test_write_after_boundary_closes_previous_window(self) -> None:
        clock = FakeClock(START_MS + 20)
        panopticon, sink = make_panopticon(clock)

        panopticon.inc([], "testInc", 1)
        clock.advance(100)
        panopticon.inc([], "testInc", 1)

        assert len(sink.snapshots) == 1
        closed = sink.snapshots[0]
        assert closed.interval_start_ms == START_MS
        assert closed.interval_end_ms == START_MS + 100
        assert closed.worker_id == "w1"
        assert closed.data["testInc"]["value"] == 1
        assert panopticon.window == (START_MS + 100, START_MS + 200)

    def test_roll_over_is_noop_inside_window(self) -> None:
        clock = FakeClock(START_MS + 20)
        panopticon, sink = make_panopticon(clock)

        assert panopticon.roll_over() is None
        assert sink.snapshots == []

    def test_roll_over_skips_quiet_windows(self) -> None:
        clock = FakeClock(START_MS + 20)
        panopticon, sink = make_panopticon(clock)

        clock.advance(1_000)
        closed = panopticon.roll_over()

        assert closed is not None
        assert closed.interval_start_ms == START_MS
        assert panopticon.window == (START_MS + 1_000, START_MS + 1_100)
        assert len(sink.snapshots) == 1

    def test_without_persist_each_window_starts_empty(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, _ = make_panopticon(clock, persist=False)

        panopticon.set([], "name", "x")
        panopticon.inc([], "count", 2)
        panopticon.collect()

        assert dict(panopticon.snapshot().data) == {}

    def test_persist_carries_sets_and_counters(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, sink = make_panopticon(clock, persist=True)

        panopticon.set([], "my name is", "slim shady")
        panopticon.inc([], "testInc", 1)
        panopticon.sample([], "latency", 5)
        clock.advance(100)
        panopticon.inc([], "testInc", 1)

        data = panopticon.snapshot().data
        assert data["my name is"]["value"] == "slim shady"
        assert data["testInc"]["value"] == 2
        assert "latency" not in data
        assert sink.snapshots[0].data["latency"]["count"] == 1

    def test_collect_before_end_opens_following_window(self) -> None:
        clock = FakeClock(START_MS + 30)
        panopticon, _ = make_panopticon(clock)

        closed = panopticon.collect()

        assert closed.interval_start_ms == START_MS
        assert panopticon.window == (START_MS + 100, START_MS + 200)


class TestLifecycle:
    def test_stop_delivers_final_window_and_blocks_writes(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, sink = make_panopticon(clock)
        panopticon.inc([], "testInc", 1)

        closed = panopticon.stop()

        assert closed is not None
        assert sink.snapshots == [closed]
        assert panopticon.stopped
        assert panopticon.stop() is None
        with pytest.raises(MetricError, match="stopped"):
            panopticon.inc([], "testInc", 1)
        with pytest.raises(MetricError, match="stopped"):
            panopticon.collect()

    def test_context_manager_stops(self) -> None:
        sink = RecordingSink()
        options = PanopticonOptions(start_time_ms=0, name="p", interval_ms=10)
        with Panopticon(options, sinks=[sink], clock=FakeClock(5)) as panopticon:
            panopticon.set([], "k", 1)

        assert panopticon.stopped
        assert sink.snapshots[0].data["k"]["value"] == 1

    def test_sink_failure_is_wrapped(self) -> None:
        def broken(snapshot: object) -> None:
            raise OSError("disk full")

        panopticon, _ = make_panopticon(FakeClock(START_MS))
        panopticon.add_sink(broken)

        with pytest.raises(SinkError) as excinfo:
            panopticon.collect()
        assert isinstance(excinfo.value.__cause__, OSError)

    def test_sink_failure_during_roll_over_keeps_window_open(self) -> None:
        clock = FakeClock(START_MS)
        panopticon, sink = make_panopticon(clock, persist=True)
        failures = [OSError("disk full")]

        def flaky(snapshot: object) -> None:
            if failures:
                raise failures.pop()

        panopticon.add_sink(flaky)
        panopticon.inc([], "testInc", 1)
        clock.advance(150)

        with pytest.raises(SinkError):
            panopticon.inc([], "testInc", 1)

        assert panopticon.window == (START_MS, START_MS + 100)
        assert panopticon.snapshot().data["testInc"]["value"] == 1

        panopticon.inc([], "testInc", 1)

        assert panopticon.window == (START_MS + 100, START_MS + 200)
        assert sink.snapshots[-1].data["testInc"]["value"] == 1
        assert panopticon.snapshot().data["testInc"]["value"] == 2

    def test_instances_do_not_share_state(self) -> None:
        clock = FakeClock(START_MS)
        first, _ = make_panopticon(clock)
        second, _ = make_panopticon(clock)

        first.inc([], "testInc", 1)

        assert dict(second.snapshot().data) == {}
