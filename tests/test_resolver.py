"""Tests for PID-identity resolution: split policy, resolver and PID reuse."""

from __future__ import annotations

from schedviz.core.engine import InterpretationConfig, TraceInterpretationEngine
from schedviz.core.resolver import (
    CommandChangePolicy,
    PidIdentityResolver,
    SplitPolicy,
    SplitPolicyConfig,
    SplitTrigger,
)
from schedviz.domain.enums import CpuState, DiagnosticKind, EntityKind, EventType, Severity, ThreadState
from schedviz.domain.events import ThreadDescriptor
from schedviz.domain.intervals import ThreadIdentity

from tests.test_events import _collection, _stat, _switch, _wakeup


def _trigger(
    event_type: EventType = EventType.WAKEUP,
    command: str = "b",
    priority: int = 120,
    last_command: str = "a",
    last_priority: int = 120,
    continuity: bool = False,
) -> SplitTrigger:
    return SplitTrigger(
        descriptor=ThreadDescriptor(pid=42, command=command, priority=priority),
        event_type=event_type,
        timestamp_ns=100,
        last_command=last_command,
        last_priority=last_priority,
        continuity=continuity,
    )


def _ran_then_slept() -> list[dict]:
    return [
        _wakeup(0, 42, 0, comm="a"),
        _switch(5, 0, 42, next_comm="a"),
        _switch(10, 42, 0, prev_comm="a"),
    ]


def _overlapping(intervals, start_ns: int, end_ns: int) -> list:
    return [iv for iv in intervals if iv.start_ns < end_ns and start_ns < iv.end_ns]


def _assert_timelines_agree(result) -> None:
    """Every running thread span sits on CPU spans running that same identity, and back."""
    for iv in result.intervals:
        if iv.entity_kind == EntityKind.THREAD and iv.state == ThreadState.RUNNING:
            on_cpu = _overlapping(result.cpu_intervals(iv.cpu), iv.start_ns, iv.end_ns)
            assert on_cpu, f"no CPU span under {iv}"
            for span in on_cpu:
                assert (span.state, span.thread) == (CpuState.RUNNING, iv.thread), f"{span} vs {iv}"
        if iv.entity_kind == EntityKind.CPU and iv.state == CpuState.RUNNING:
            for span in _overlapping(result.thread_intervals(iv.thread), iv.start_ns, iv.end_ns):
                assert (span.state, span.cpu) == (ThreadState.RUNNING, iv.cpu), f"{span} vs {iv}"


class _NeverSplit:
    def split_reason(self, trigger: SplitTrigger) -> str | None:
        return None


# ── Policy ───────────────────────────────────────────────────────────────────

class TestCommandChangePolicy:
    def test_command_change_splits(self) -> None:
        assert "command changed" in CommandChangePolicy().split_reason(_trigger())

    def test_same_command_keeps_epoch(self) -> None:
        assert CommandChangePolicy().split_reason(_trigger(command="a")) is None

    def test_continuity_suppresses_command_change(self) -> None:
        assert CommandChangePolicy().split_reason(_trigger(continuity=True)) is None

    def test_migrate_and_stat_never_split(self) -> None:
        policy = CommandChangePolicy()
        assert policy.split_reason(_trigger(EventType.MIGRATE_TASK)) is None
        assert policy.split_reason(_trigger(EventType.STAT_RUNTIME)) is None

    def test_wakeup_new_splits_even_with_continuity(self) -> None:
        reason = CommandChangePolicy().split_reason(
            _trigger(EventType.WAKEUP_NEW, command="a", continuity=True)
        )
        assert reason is not None and "fork" in reason

    def test_wakeup_new_trigger_can_be_disabled(self) -> None:
        policy = CommandChangePolicy(SplitPolicyConfig(split_on_wakeup_new=False))
        assert policy.split_reason(_trigger(EventType.WAKEUP_NEW, command="a")) is None

    def test_priority_change_only_when_enabled(self) -> None:
        trigger = _trigger(command="a", priority=100)
        assert CommandChangePolicy().split_reason(trigger) is None
        enabled = CommandChangePolicy(SplitPolicyConfig(split_on_priority_change=True))
        assert "priority" in enabled.split_reason(trigger)

    def test_unknown_priority_never_splits(self) -> None:
        enabled = CommandChangePolicy(SplitPolicyConfig(split_on_priority_change=True))
        assert enabled.split_reason(_trigger(command="a", priority=-1)) is None

    def test_policies_satisfy_protocol(self) -> None:
        assert isinstance(CommandChangePolicy(), SplitPolicy)
        assert isinstance(_NeverSplit(), SplitPolicy)


# ── Resolver ─────────────────────────────────────────────────────────────────

class TestPidIdentityResolver:
    def test_first_sighting_creates_epoch_zero(self) -> None:
        resolver = PidIdentityResolver()
        identity, fresh = resolver.identify(ThreadDescriptor(pid=7, command="x"), 10)
        assert fresh
        assert identity == ThreadIdentity(pid=7, epoch=0, command="x")
        again, fresh = resolver.identify(ThreadDescriptor(pid=7, command="x"), 20)
        assert not fresh
        assert again == identity

    def test_split_opens_next_epoch(self) -> None:
        resolver = PidIdentityResolver()
        resolver.identify(ThreadDescriptor(pid=7, command="x"), 10)
        identity = resolver.split(ThreadDescriptor(pid=7, command="y"), 30, "test")
        assert identity.key == (7, 1)
        assert resolver.current(7) == identity
        assert [t.identity.key for t in resolver.threads()] == [(7, 0), (7, 1)]

    def test_observe_records_commands_and_last_seen(self) -> None:
        resolver = PidIdentityResolver()
        resolver.identify(ThreadDescriptor(pid=7, command="x", priority=120), 10)
        resolver.observe(ThreadDescriptor(pid=7, command="y", priority=110), 50)
        resolver.observe(ThreadDescriptor(pid=7, command="z"), 60, record_command=False)
        (info,) = resolver.threads()
        assert info.commands == ["x", "y"]
        assert info.priorities == [120, 110]
        assert (info.first_seen_ns, info.last_seen_ns) == (10, 60)

    def test_unknown_pid_has_no_current_identity(self) -> None:
        assert PidIdentityResolver().current(99) is None


# ── Through the engine ───────────────────────────────────────────────────────

class TestPidReuse:
    def _result(self, **policy):
        config = InterpretationConfig(split_policy=SplitPolicyConfig(**policy))
        collection = _collection({
            0: _ran_then_slept() + [
                _wakeup(20, 42, 0, comm="b"),
                _switch(25, 0, 42, next_comm="b"),
                _switch(30, 42, 0, prev_comm="b"),
            ],
        })
        engine = TraceInterpretationEngine(config)
        return engine, engine.interpret(collection)

    def test_command_change_splits_identity(self) -> None:
        _, result = self._result()
        assert [str(i) for i in result.identities(42)] == ["42.0", "42.1"]
        assert [t.commands for t in result.threads] == [["a"], ["b"]]
        (split,) = result.diagnostics
        assert split.severity == Severity.INFO
        assert split.kind == DiagnosticKind.IDENTITY_SPLIT
        assert split.timestamp_ns == 20
        assert split.pid == 42

    def test_epochs_have_separate_timelines(self) -> None:
        _, result = self._result()
        old, new = result.identities(42)
        assert [(iv.start_ns, iv.end_ns, iv.state) for iv in result.thread_intervals(old)] == [
            (0, 5, ThreadState.WAITING),
            (5, 10, ThreadState.RUNNING),
            (10, 30, ThreadState.SLEEPING),
        ]
        assert [(iv.start_ns, iv.end_ns, iv.state) for iv in result.thread_intervals(new)] == [
            (0, 20, ThreadState.UNKNOWN),
            (20, 25, ThreadState.WAITING),
            (25, 30, ThreadState.RUNNING),
        ]

    def test_statistics_are_disjoint(self) -> None:
        engine, result = self._result()
        stats = engine.aggregate(result)
        old, new = stats.threads["42.0"], stats.threads["42.1"]
        assert (old.run_ns, old.wait_ns, old.sleep_ns, old.wakeups) == (5, 5, 20, 1)
        assert (new.run_ns, new.wait_ns, new.unknown_ns, new.wakeups) == (5, 5, 20, 1)
        assert old.run_ns + new.run_ns == stats.cpus[0].running_ns

    def test_no_split_when_disabled(self) -> None:
        _, result = self._result(split_on_command_change=False)
        assert [str(i) for i in result.identities(42)] == ["42.0"]
        assert result.diagnostics == []

    def test_custom_policy(self) -> None:
        engine = TraceInterpretationEngine(policy=_NeverSplit())
        result = engine.interpret(_collection({
            0: _ran_then_slept() + [_wakeup(20, 42, 0, comm="b")],
        }))
        assert len(result.identities(42)) == 1

    def test_wakeup_new_on_seen_pid_splits(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: _ran_then_slept() + [_wakeup(20, 42, 0, comm="a", new=True)],
        }))
        assert [i.key for i in result.identities(42)] == [(42, 0), (42, 1)]

    def test_wakeup_new_on_unseen_pid_does_not_split(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [_wakeup(0, 42, 0, comm="a", new=True), _switch(5, 0, 42, next_comm="a")],
        }))
        assert [i.key for i in result.identities(42)] == [(42, 0)]
        assert result.diagnostics == []


class TestContinuity:
    def test_rename_while_running_keeps_identity(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [
                _wakeup(0, 42, 0, comm="a"),
                _switch(5, 0, 42, next_comm="a"),
                _switch(10, 42, 0, prev_comm="b"),
            ],
        }))
        assert len(result.identities(42)) == 1
        assert result.threads[0].commands == ["a", "b"]
        assert result.diagnostics == []

    def test_rename_of_unknown_thread_keeps_identity(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [_wakeup(0, 5, 0), _stat(2, 42, 1, comm="a")],
            1: [_switch(8, 42, 0, prev_comm="b")],
        }))
        assert len(result.identities(42)) == 1

    def test_renamed_running_thread_woken_elsewhere_keeps_identity(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [
                _wakeup(0, 42, 0, comm="a"),
                _switch(5, 0, 42, next_comm="a"),
                _switch(30, 42, 0, prev_comm="b"),
            ],
            1: [_wakeup(10, 42, 0, comm="b")],
        }))
        assert [str(i) for i in result.identities(42)] == ["42.0"]
        assert result.threads[0].commands == ["a", "b"]
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.REDUNDANT_WAKEUP]
        assert result.halted_cpus == {}
        (running,) = [iv for iv in result.thread_intervals(result.identities(42)[0])
                      if iv.state == ThreadState.RUNNING]
        assert (running.start_ns, running.end_ns, running.cpu) == (5, 30, 0)
        _assert_timelines_agree(result)

    def test_renamed_waiting_thread_keeps_identity(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [
                _wakeup(0, 42, 0, comm="a"),
                _wakeup(3, 42, 0, comm="b"),
                _switch(5, 0, 42, next_comm="b"),
                _switch(9, 42, 0, prev_comm="b"),
            ],
        }))
        assert len(result.identities(42)) == 1
        assert not result.partial
        _assert_timelines_agree(result)

    def test_fork_onto_running_pid_does_not_split(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: [
                _wakeup(0, 42, 0, comm="a"),
                _switch(5, 0, 42, next_comm="a"),
                _switch(20, 42, 0, prev_comm="a"),
            ],
            1: [_wakeup(10, 42, 0, comm="a", new=True)],
        }))
        assert len(result.identities(42)) == 1
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.REDUNDANT_WAKEUP]
        _assert_timelines_agree(result)

    def test_split_of_sleeping_thread_keeps_timelines_consistent(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: _ran_then_slept() + [
                _wakeup(20, 42, 0, comm="b"),
                _switch(25, 0, 42, next_comm="b"),
                _switch(30, 42, 0, prev_comm="b"),
            ],
            1: [_wakeup(2, 9, 1), _switch(4, 0, 9), _switch(28, 9, 0)],
        }))
        assert len(result.identities(42)) == 2
        _assert_timelines_agree(result)


class TestUnresolvableSplit:
    def test_split_then_fatal(self) -> None:
        result = TraceInterpretationEngine().interpret(_collection({
            0: _ran_then_slept() + [_switch(15, 42, 0, prev_comm="b")],
        }))
        assert [(d.severity, d.kind) for d in result.diagnostics] == [
            (Severity.INFO, DiagnosticKind.IDENTITY_SPLIT),
            (Severity.FATAL, DiagnosticKind.PRECONDITION_VIOLATION),
        ]
        assert result.halted_cpus == {0: 15}
