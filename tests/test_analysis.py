"""Tests for antagonist analysis and load-imbalance utilization."""

from __future__ import annotations

import pytest

from schedviz.core.aggregator import StatisticsFilter
from schedviz.core.analysis import RunningIndex, antagonists, utilization
from schedviz.core.engine import TraceInterpretationEngine
from schedviz.domain.collection import CollectionWindow
from schedviz.domain.enums import CpuState, EntityKind, ThreadState
from schedviz.domain.intervals import Interval, ThreadIdentity

from tests.test_inference import _busy_collection

WINDOW = CollectionWindow(start_ns=0, end_ns=10)


def _thread(pid: int) -> ThreadIdentity:
    return ThreadIdentity(pid=pid, command=f"task{pid}")


def _cpu_iv(cpu: int, start: int, end: int, state: CpuState, pid: int | None = None) -> Interval:
    return Interval(
        entity_kind=EntityKind.CPU,
        cpu=cpu,
        thread=_thread(pid) if pid is not None else None,
        start_ns=start,
        end_ns=end,
        state=state,
    )


def _waiting(pid: int, cpu: int, start: int, end: int) -> Interval:
    return Interval(
        entity_kind=EntityKind.THREAD,
        cpu=cpu,
        thread=_thread(pid),
        start_ns=start,
        end_ns=end,
        state=ThreadState.WAITING,
    )


# ── RunningIndex ─────────────────────────────────────────────────────────────

class TestRunningIndex:
    def test_overlap_lookup(self) -> None:
        index = RunningIndex([
            _cpu_iv(0, 0, 3, CpuState.RUNNING, 1),
            _cpu_iv(0, 3, 5, CpuState.IDLE),
            _cpu_iv(0, 5, 9, CpuState.RUNNING, 2),
        ])
        assert [iv.thread.pid for iv in index.overlapping(0, 2, 6)] == [1, 2]
        assert index.overlapping(0, 3, 5) == []
        assert index.overlapping(7, 0, 10) == []


# ── Antagonists ──────────────────────────────────────────────────────────────

class TestAntagonists:
    def test_busy_trace_victim(self) -> None:
        engine = TraceInterpretationEngine()
        result = engine.interpret(_busy_collection())
        found = engine.antagonists(result, 11)
        assert [str(v) for v in found.victims] == ["11.0"]
        assert [(str(a.antagonist), a.cpu, a.start_ns, a.end_ns) for a in found.antagonisms] == [
            ("10.0", 0, 15, 30),
        ]

    def test_window_clips_antagonisms(self) -> None:
        engine = TraceInterpretationEngine()
        result = engine.interpret(_busy_collection())
        found = engine.antagonists(result, 11, stats_filter=StatisticsFilter(start_ns=20, end_ns=60))
        assert [(a.start_ns, a.end_ns) for a in found.antagonisms] == [(20, 30)]
        assert found.window == CollectionWindow(start_ns=20, end_ns=60)

    def test_unknown_epoch_has_no_victims(self) -> None:
        engine = TraceInterpretationEngine()
        result = engine.interpret(_busy_collection())
        found = engine.antagonists(result, 11, epoch=3)
        assert found.victims == []
        assert found.antagonisms == []

    def test_waiting_on_idle_cpu_has_no_antagonist(self) -> None:
        intervals = [_cpu_iv(0, 0, 10, CpuState.IDLE), _waiting(4, 0, 2, 6)]
        assert antagonists(intervals, [_thread(4)], WINDOW).antagonisms == []

    def test_multiple_antagonists_in_order(self) -> None:
        intervals = [
            _cpu_iv(0, 0, 4, CpuState.RUNNING, 1),
            _cpu_iv(0, 4, 10, CpuState.RUNNING, 2),
            _waiting(4, 0, 2, 8),
        ]
        found = antagonists(intervals, [_thread(4)], WINDOW)
        assert [(a.antagonist.pid, a.start_ns, a.end_ns) for a in found.antagonisms] == [(1, 2, 4), (2, 4, 8)]


# ── Utilization ──────────────────────────────────────────────────────────────

class TestUtilization:
    def test_busy_trace(self) -> None:
        engine = TraceInterpretationEngine()
        result = engine.interpret(_busy_collection())
        util = engine.utilization(result)
        assert (util.wall_ns, util.per_cpu_ns, util.per_thread_ns) == (15, 15, 15)
        assert (util.idle_ns, util.total_ns) == (43, 118)
        assert util.fraction == pytest.approx(1 - 43 / 118)

    def test_two_idle_cpus_and_two_queued_threads(self) -> None:
        intervals = [
            _cpu_iv(0, 0, 10, CpuState.RUNNING, 1),
            _cpu_iv(1, 0, 10, CpuState.IDLE),
            _cpu_iv(2, 0, 10, CpuState.IDLE),
            _waiting(5, 0, 0, 10),
            _waiting(6, 0, 0, 10),
        ]
        util = utilization(intervals, WINDOW)
        assert util.wall_ns == 10
        assert util.per_cpu_ns == 10
        assert util.per_thread_ns == 20
        assert (util.idle_ns, util.total_ns) == (20, 30)

    def test_queue_on_idle_cpu_is_not_overload(self) -> None:
        intervals = [
            _cpu_iv(0, 0, 10, CpuState.IDLE),
            _cpu_iv(1, 0, 10, CpuState.IDLE),
            _waiting(5, 0, 0, 10),
        ]
        assert utilization(intervals, WINDOW).wall_ns == 0

    def test_unknown_cpu_excluded_from_capacity(self) -> None:
        intervals = [
            _cpu_iv(0, 0, 10, CpuState.RUNNING, 1),
            _cpu_iv(1, 0, 10, CpuState.UNKNOWN),
            _waiting(5, 0, 0, 10),
        ]
        util = utilization(intervals, WINDOW)
        assert util.wall_ns == 0
        assert util.total_ns == 10

    def test_cpu_subset(self) -> None:
        intervals = [
            _cpu_iv(0, 0, 10, CpuState.RUNNING, 1),
            _cpu_iv(1, 0, 10, CpuState.IDLE),
            _waiting(5, 0, 0, 10),
        ]
        assert utilization(intervals, WINDOW).wall_ns == 10
        assert utilization(intervals, WINDOW, cpus={0}).wall_ns == 0

    def test_empty(self) -> None:
        util = utilization([], WINDOW)
        assert util.total_ns == 0
        assert util.fraction == 0.0
