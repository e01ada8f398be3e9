"""Tests for the state-inference machine, driven through the engine.

Covers the end-to-end reference scenario, FATAL scoping and partial
results, coverage of the window, switch bookkeeping, back-filling of a
CPU's first span, redundant wakeups, migrations, runtime cross-checks
and determinism.
"""

from __future__ import annotations

from collections import defaultdict

import pytest

from schedviz.core.engine import InterpretationConfig, InterpretationResult, TraceInterpretationEngine
from schedviz.core.inference import InferenceConfig
from schedviz.domain.collection import Collection
from schedviz.domain.enums import CpuState, DiagnosticKind, EntityKind, Severity, ThreadState
from schedviz.domain.intervals import Interval, ThreadIdentity

from tests.test_events import _collection, _migrate, _stat, _switch, _wakeup


# ── Shared traces ────────────────────────────────────────────────────────────

def _reference_collection() -> Collection:
    return _collection({
        1: [
            _wakeup(0, 7, 1),
            _switch(5, 0, 7),
            _switch(15, 7, 0, prev_state=1),
        ],
    })


def _busy_collection() -> Collection:
    """Two CPUs, three threads, a preemption and a migration.  No FATALs."""
    return _collection({
        0: [
            _wakeup(0, 10, 0),
            _switch(10, 0, 10),
            _wakeup(15, 11, 0),
            _switch(30, 10, 11, prev_state=0),
            _migrate(35, 10, 0, 1),
            _switch(50, 11, 0),
        ],
        1: [
            _wakeup(2, 12, 1),
            _switch(5, 0, 12),
            _switch(20, 12, 0),
            _switch(40, 0, 10),
            _stat(45, 10, 5),
            _switch(60, 10, 0),
        ],
    })


def _interpret(collection: Collection, **inference) -> InterpretationResult:
    config = InterpretationConfig(inference=InferenceConfig(**inference))
    return TraceInterpretationEngine(config).interpret(collection)


def _spans(intervals: list[Interval]) -> list[tuple]:
    out = []
    for iv in intervals:
        who = iv.cpu if iv.entity_kind == EntityKind.THREAD else (iv.thread.pid if iv.thread else None)
        out.append((iv.start_ns, iv.end_ns, iv.state, who))
    return out


def _t(pid: int, epoch: int = 0) -> ThreadIdentity:
    return ThreadIdentity(pid=pid, epoch=epoch, command=f"task{pid}")


def _entities(result: InterpretationResult) -> dict[str, list[Interval]]:
    grouped: dict[str, list[Interval]] = defaultdict(list)
    for iv in result.intervals:
        grouped[str(iv.entity)].append(iv)
    return grouped


# ── Reference scenario ───────────────────────────────────────────────────────

class TestReferenceScenario:
    def test_thread_intervals(self) -> None:
        result = _interpret(_reference_collection())
        assert _spans(result.thread_intervals(_t(7))) == [
            (0, 5, ThreadState.WAITING, 1),
            (5, 15, ThreadState.RUNNING, 1),
        ]

    def test_cpu_intervals(self) -> None:
        result = _interpret(_reference_collection())
        assert _spans(result.cpu_intervals(1)) == [
            (0, 5, CpuState.IDLE, None),
            (5, 15, CpuState.RUNNING, 7),
        ]

    def test_no_diagnostics(self) -> None:
        result = _interpret(_reference_collection())
        assert result.diagnostics == []
        assert not result.partial

    def test_idle_pid_is_not_a_thread(self) -> None:
        result = _interpret(_reference_collection())
        assert [t.identity.pid for t in result.threads] == [7]


# ── FATAL scoping ────────────────────────────────────────────────────────────

class TestFatal:
    def _collection(self) -> Collection:
        return _collection({
            0: [_wakeup(0, 3, 0), _switch(4, 0, 3), _switch(40, 3, 0)],
            1: [
                _wakeup(0, 7, 1),
                _switch(5, 0, 7),
                _switch(15, 7, 0, prev_state=1),
                _switch(20, 7, 0, prev_state=1),
                _switch(25, 0, 0),
            ],
        })

    def test_exactly_one_fatal_at_switch(self) -> None:
        result = _interpret(self._collection())
        fatal = [d for d in result.diagnostics if d.severity == Severity.FATAL]
        assert len(fatal) == 1
        assert fatal[0].timestamp_ns == 20
        assert fatal[0].cpu == 1
        assert fatal[0].pid == 7
        assert result.partial
        assert result.halted_cpus == {1: 20}

    def test_no_cpu_intervals_past_fatal(self) -> None:
        result = _interpret(self._collection())
        spans = _spans(result.cpu_intervals(1))
        assert spans == [
            (0, 5, CpuState.IDLE, None),
            (5, 15, CpuState.RUNNING, 7),
            (15, 20, CpuState.IDLE, None),
        ]

    def test_other_cpus_continue(self) -> None:
        result = _interpret(self._collection())
        assert _spans(result.cpu_intervals(0)) == [
            (0, 4, CpuState.IDLE, None),
            (4, 40, CpuState.RUNNING, 3),
        ]

    def test_named_thread_becomes_unknown(self) -> None:
        result = _interpret(self._collection())
        assert _spans(result.thread_intervals(_t(7)))[-1] == (20, 40, ThreadState.UNKNOWN, None)

    def test_events_on_halted_cpu_reported_once(self) -> None:
        result = _interpret(self._collection())
        halted = [d for d in result.diagnostics if d.kind == DiagnosticKind.HALTED_CPU_EVENT]
        assert len(halted) == 1
        assert halted[0].severity == Severity.INFO
        assert halted[0].cpu == 1

    def test_switch_from_idle_on_running_cpu(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0), _switch(4, 0, 3), _switch(8, 0, 5)],
        }))
        fatal = [d for d in result.diagnostics if d.is_fatal]
        assert len(fatal) == 1
        assert fatal[0].pid is None
        assert fatal[0].cpu == 0

    def test_migrate_from_wrong_cpu_scoped_to_origin(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0), _migrate(5, 3, 2, 1), _switch(9, 0, 0)],
            2: [_wakeup(1, 4, 2)],
        }))
        fatal = [d for d in result.diagnostics if d.is_fatal]
        assert len(fatal) == 1
        assert fatal[0].cpu == 2
        assert result.cpu_intervals(0)


# ── Structural properties ────────────────────────────────────────────────────

class TestCoverage:
    def test_every_entity_covers_window(self) -> None:
        result = _interpret(_busy_collection())
        assert not result.partial
        for entity, intervals in _entities(result).items():
            assert intervals[0].start_ns == result.window.start_ns, entity
            assert intervals[-1].end_ns == result.window.end_ns, entity
            for before, after in zip(intervals, intervals[1:]):
                assert before.end_ns == after.start_ns, entity

    def test_all_cpus_and_threads_present(self) -> None:
        result = _interpret(_busy_collection())
        assert set(_entities(result)) == {"cpu:0", "cpu:1", "thread:10.0", "thread:11.0", "thread:12.0"}

    def test_no_zero_length_intervals(self) -> None:
        result = _interpret(_busy_collection())
        assert all(iv.duration_ns > 0 for iv in result.intervals)

    def test_busy_timelines(self) -> None:
        result = _interpret(_busy_collection())
        assert _spans(result.cpu_intervals(1)) == [
            (0, 2, CpuState.UNKNOWN, None),
            (2, 5, CpuState.IDLE, None),
            (5, 20, CpuState.RUNNING, 12),
            (20, 40, CpuState.IDLE, None),
            (40, 60, CpuState.RUNNING, 10),
        ]
        assert _spans(result.thread_intervals(_t(10))) == [
            (0, 10, ThreadState.WAITING, 0),
            (10, 30, ThreadState.RUNNING, 0),
            (30, 35, ThreadState.WAITING, 0),
            (35, 40, ThreadState.WAITING, 1),
            (40, 60, ThreadState.RUNNING, 1),
        ]
        assert _spans(result.thread_intervals(_t(11))) == [
            (0, 15, ThreadState.UNKNOWN, None),
            (15, 30, ThreadState.WAITING, 0),
            (30, 50, ThreadState.RUNNING, 0),
            (50, 60, ThreadState.SLEEPING, None),
        ]

    def test_no_diagnostics_on_consistent_trace(self) -> None:
        assert _interpret(_busy_collection()).diagnostics == []


class TestSwitchClosesIntervals:
    def test_each_switch_closes_cpu_and_thread_intervals(self) -> None:
        collection = _busy_collection()
        result = _interpret(collection)
        for cpu, records in collection.records.items():
            for raw in records:
                if raw["event"] != "sched_switch":
                    continue
                ts = raw["timestamp_ns"]
                cpu_closed = [iv for iv in result.cpu_intervals(cpu) if iv.end_ns == ts]
                assert len(cpu_closed) == 1, (cpu, ts)
                for pid in (raw["prev_pid"], raw["next_pid"]):
                    if pid == 0:
                        continue
                    closed = [iv for iv in result.thread_intervals(_t(pid)) if iv.end_ns == ts]
                    assert len(closed) == 1, (pid, ts)


class TestDeterminism:
    def test_repeated_interpretation_identical(self) -> None:
        engine = TraceInterpretationEngine()
        collection = _busy_collection()
        first = engine.interpret(collection)
        second = engine.interpret(collection)
        assert first.intervals == second.intervals
        assert first.diagnostics == second.diagnostics
        assert first.threads == second.threads

    def test_independent_engines_agree(self) -> None:
        a = TraceInterpretationEngine().interpret(_busy_collection())
        b = TraceInterpretationEngine().interpret(_busy_collection())
        assert a == b


# ── Transition details ───────────────────────────────────────────────────────

class TestBackfill:
    def test_first_switch_backfills_previous_occupant(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0)],
            1: [_stat(4, 5, 100), _switch(10, 5, 0)],
        }))
        assert _spans(result.cpu_intervals(1)) == [
            (0, 4, CpuState.UNKNOWN, None),
            (4, 10, CpuState.RUNNING, 5),
        ]
        assert _spans(result.thread_intervals(_t(5))) == [
            (0, 4, ThreadState.UNKNOWN, None),
            (4, 10, ThreadState.RUNNING, 1),
        ]

    def test_cpu_without_switch_stays_unknown(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0), _wakeup(9, 4, 0)],
        }))
        assert _spans(result.cpu_intervals(0)) == [(0, 9, CpuState.UNKNOWN, None)]


class TestRedundantWakeup:
    def _collection(self) -> Collection:
        return _collection({0: [_wakeup(0, 3, 0), _wakeup(2, 3, 0), _switch(6, 0, 3)]})

    def test_dropped_with_warning(self) -> None:
        result = _interpret(self._collection())
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.REDUNDANT_WAKEUP]
        assert result.diagnostics[0].severity == Severity.WARNING
        assert _spans(result.thread_intervals(_t(3)))[0] == (0, 6, ThreadState.WAITING, 0)

    def test_fatal_when_not_dropped(self) -> None:
        result = _interpret(self._collection(), drop_redundant_wakeups=False)
        assert [d.severity for d in result.diagnostics] == [Severity.FATAL, Severity.INFO]
        assert result.halted_cpus == {0: 2}


class TestMigration:
    def test_waiting_thread_moves_queue(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0), _migrate(4, 3, 0, 1)],
            1: [_switch(9, 0, 3)],
        }))
        assert _spans(result.thread_intervals(_t(3))) == [
            (0, 4, ThreadState.WAITING, 0),
            (4, 9, ThreadState.WAITING, 1),
        ]
        assert result.diagnostics == []

    def test_sleeping_thread_migration_is_noop(self) -> None:
        result = _interpret(_collection({
            0: [_wakeup(0, 3, 0), _switch(2, 0, 3), _switch(4, 3, 0), _migrate(6, 3, 0, 1), _wakeup(7, 3, 1)],
            1: [_switch(9, 0, 3)],
        }))
        assert result.diagnostics == []
        assert _spans(result.thread_intervals(_t(3))) == [
            (0, 2, ThreadState.WAITING, 0),
            (2, 4, ThreadState.RUNNING, 0),
            (4, 7, ThreadState.SLEEPING, None),
            (7, 9, ThreadState.WAITING, 1),
        ]


class TestStatRuntime:
    def test_consistent_runtime_not_flagged(self) -> None:
        result = _interpret(_collection({
            1: [_wakeup(0, 7, 1), _switch(5, 0, 7), _stat(10, 7, 5), _stat(14, 7, 4), _switch(15, 7, 0)],
        }))
        assert result.diagnostics == []

    def test_excess_runtime_flagged(self) -> None:
        result = _interpret(
            _collection({1: [_wakeup(0, 7, 1), _switch(5, 0, 7), _stat(10, 7, 500), _switch(15, 7, 0)]}),
            runtime_tolerance_ns=100,
        )
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.RUNTIME_MISMATCH]

    def test_runtime_for_thread_not_running(self) -> None:
        result = _interpret(_collection({1: [_wakeup(0, 7, 1), _stat(3, 7, 1), _switch(5, 0, 7)]}))
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.RUNTIME_MISMATCH]
        assert result.diagnostics[0].pid == 7


class TestThreadEvents:
    def test_series_filtered_by_pid_and_range(self) -> None:
        result = _interpret(_busy_collection())
        events = TraceInterpretationEngine.thread_events(result, 10, start_ns=5, end_ns=40)
        assert [e.timestamp_ns for e in events] == [10, 30, 35, 40]

    @pytest.mark.parametrize("pid,count", [(11, 3), (12, 3), (99, 0)])
    def test_series_counts(self, pid: int, count: int) -> None:
        result = _interpret(_busy_collection())
        assert len(TraceInterpretationEngine.thread_events(result, pid)) == count
