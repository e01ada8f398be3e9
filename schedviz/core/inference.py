"""StateInferenceMachine — derives steady-state intervals from transitions.

Tracepoints only report transitions.  The machine walks the globally
ordered event stream once, keeping the believed state of every CPU and
every thread identity in an InferenceContext, and closes an interval each
time a believed state changes.

Rules:
    1. A state nobody has observed yet is UNKNOWN, and UNKNOWN satisfies
       every precondition.  The first event for an entity establishes it.
    2. A precondition violation is first offered to the PID-identity
       resolver.  Only if no identity split explains it does it become a
       FATAL diagnostic.
    3. A FATAL is scoped to one CPU: that CPU produces no further intervals
       and the threads tied to it drop back to UNKNOWN.  Every other CPU
       carries on within the same pass.
    4. Zero-length intervals are never emitted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from schedviz.core.resolver import PidIdentityResolver, SplitPolicy
from schedviz.domain.collection import CollectionWindow
from schedviz.domain.diagnostics import Diagnostic, DiagnosticLog
from schedviz.domain.enums import (
    CpuState,
    DiagnosticKind,
    EntityKind,
    Severity,
    ThreadState,
)
from schedviz.domain.events import (
    MigrateTaskEvent,
    RawEvent,
    StatRuntimeEvent,
    SwitchEvent,
    ThreadDescriptor,
    WakeupEvent,
)
from schedviz.domain.intervals import Interval, ThreadIdentity, ThreadInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceConfig:
    idle_pid: int = 0
    drop_redundant_wakeups: bool = True
    runtime_tolerance_ns: int = 10_000


# ── Per-pass state ───────────────────────────────────────────────────────────

@dataclass
class _ThreadSlot:
    identity: ThreadIdentity
    since: int
    state: ThreadState = ThreadState.UNKNOWN
    cpu: Optional[int] = None
    switched_in_ns: Optional[int] = None
    last_stat_ns: Optional[int] = None


@dataclass
class _CpuSlot:
    cpu: int
    since: int
    state: CpuState = CpuState.UNKNOWN
    occupant: Optional[ThreadIdentity] = None
    # Set between the first event recorded on the CPU and its first switch.
    observed_at: Optional[int] = None
    halted: bool = False

    @property
    def pending(self) -> bool:
        return self.observed_at is not None


class InferenceContext:
    """Mutable state owned by exactly one inference pass."""

    def __init__(self, window: CollectionWindow, cpus: list[int], resolver: PidIdentityResolver) -> None:
        self.window = window
        self.resolver = resolver
        self.log = DiagnosticLog()
        self.intervals: list[Interval] = []
        self.cpus: dict[int, _CpuSlot] = {cpu: _CpuSlot(cpu=cpu, since=window.start_ns) for cpu in cpus}
        self.threads: dict[tuple[int, int], _ThreadSlot] = {}
        self.halted: dict[int, int] = {}
        self.ignored: dict[int, int] = {}

    def cpu(self, cpu: int) -> _CpuSlot:
        slot = self.cpus.get(cpu)
        if slot is None:
            slot = self.cpus[cpu] = _CpuSlot(cpu=cpu, since=self.window.start_ns)
        return slot

    def thread(self, identity: ThreadIdentity) -> _ThreadSlot:
        slot = self.threads.get(identity.key)
        if slot is None:
            slot = self.threads[identity.key] = _ThreadSlot(identity=identity, since=self.window.start_ns)
        return slot

    def current_thread(self, pid: int) -> _ThreadSlot | None:
        identity = self.resolver.current(pid)
        return self.threads.get(identity.key) if identity else None

    # ── Interval bookkeeping ─────────────────────────────────────────────

    def close_thread(self, slot: _ThreadSlot, end_ns: int) -> None:
        if end_ns > slot.since:
            on_cpu = slot.state in (ThreadState.RUNNING, ThreadState.WAITING)
            self.intervals.append(
                Interval(
                    entity_kind=EntityKind.THREAD,
                    thread=slot.identity,
                    cpu=slot.cpu if on_cpu else None,
                    start_ns=slot.since,
                    end_ns=end_ns,
                    state=slot.state,
                )
            )
        slot.since = max(slot.since, end_ns)

    def move_thread(self, slot: _ThreadSlot, ts: int, state: ThreadState, cpu: int | None = None) -> None:
        if state == slot.state and cpu == slot.cpu:
            return
        self.close_thread(slot, ts)
        slot.state = state
        slot.cpu = cpu
        if state == ThreadState.RUNNING:
            slot.switched_in_ns = ts
            slot.last_stat_ns = None

    def close_cpu(
        self,
        slot: _CpuSlot,
        end_ns: int,
        state: CpuState | None = None,
        occupant: ThreadIdentity | None = None,
    ) -> None:
        """Close the open CPU span, optionally overriding what it is recorded as."""
        if state is None:
            state, occupant = slot.state, slot.occupant
        if end_ns > slot.since:
            self.intervals.append(
                Interval(
                    entity_kind=EntityKind.CPU,
                    cpu=slot.cpu,
                    thread=occupant if state == CpuState.RUNNING else None,
                    start_ns=slot.since,
                    end_ns=end_ns,
                    state=state,
                )
            )
        slot.since = max(slot.since, end_ns)

    def taint(self, slot: _ThreadSlot, ts: int) -> None:
        """Forget a thread's state: it is UNKNOWN until observed again."""
        self.move_thread(slot, ts, ThreadState.UNKNOWN)


@dataclass
class InferenceOutput:
    intervals: list[Interval]
    diagnostics: list[Diagnostic]
    threads: list[ThreadInfo]
    halted_cpus: dict[int, int] = field(default_factory=dict)


class _Unresolvable(Exception):
    """A precondition violation no identity split explains."""

    def __init__(self, pid: int | None, reason: str) -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(reason)


# ── Machine ──────────────────────────────────────────────────────────────────

class StateInferenceMachine:
    """Single sequential pass: ordered events in, intervals and diagnostics out."""

    def __init__(self, config: InferenceConfig | None = None, policy: SplitPolicy | None = None) -> None:
        self.config = config or InferenceConfig()
        self._policy = policy

    def run(
        self,
        events: list[RawEvent],
        window: CollectionWindow,
        cpus: list[int],
        diagnostics: list[Diagnostic] | None = None,
    ) -> InferenceOutput:
        """Interpret *events*, already in global order, within *window*.

        Args:
            events: The merged event stream.
            window: Validated collection window; every interval is clipped to it.
            cpus: CPUs that recorded events, each an interval entity.
            diagnostics: Earlier-stage diagnostics to place ahead of this pass's.
        """
        ctx = InferenceContext(window, cpus, PidIdentityResolver(self._policy))
        if diagnostics:
            ctx.log.extend(diagnostics)

        for event in events:
            self._apply(ctx, event)

        self._finish(ctx)
        ctx.intervals.sort(key=_interval_sort_key)
        logger.info(
            "Inference pass: %d event(s) -> %d interval(s), %d diagnostic(s), %d halted CPU(s)",
            len(events), len(ctx.intervals), len(ctx.log), len(ctx.halted),
        )
        return InferenceOutput(
            intervals=ctx.intervals,
            diagnostics=ctx.log.entries,
            threads=ctx.resolver.threads(),
            halted_cpus=dict(ctx.halted),
        )

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _apply(self, ctx: InferenceContext, event: RawEvent) -> None:
        scope = _scope_cpus(event)
        halted = [cpu for cpu in scope if cpu in ctx.halted]
        if halted:
            self._ignore(ctx, event, halted[0])
            return

        cpu_slot = ctx.cpu(event.cpu)
        if cpu_slot.state == CpuState.UNKNOWN and not cpu_slot.pending and not cpu_slot.halted:
            cpu_slot.observed_at = event.timestamp_ns

        try:
            if isinstance(event, SwitchEvent):
                self._on_switch(ctx, event)
            elif isinstance(event, WakeupEvent):
                self._on_wakeup(ctx, event)
            elif isinstance(event, MigrateTaskEvent):
                self._on_migrate(ctx, event)
            elif isinstance(event, StatRuntimeEvent):
                self._on_stat_runtime(ctx, event)
        except _Unresolvable as exc:
            self._fatal(ctx, event, scope[0], exc)

    def _ignore(self, ctx: InferenceContext, event: RawEvent, cpu: int) -> None:
        ctx.ignored[cpu] = ctx.ignored.get(cpu, 0) + 1
        for desc in event.threads:
            slot = ctx.current_thread(desc.pid)
            if slot is not None:
                ctx.taint(slot, event.timestamp_ns)
        logger.debug("Ignoring %s at %d: CPU %d halted", event.type.value, event.timestamp_ns, cpu)

    # ── Participant resolution ───────────────────────────────────────────

    def _resolve(
        self,
        ctx: InferenceContext,
        event: RawEvent,
        desc: ThreadDescriptor,
        allowed: Callable[[_ThreadSlot], bool],
        record_command: bool = True,
    ) -> _ThreadSlot:
        """Map *desc* to the thread slot the event applies to.

        A runnable epoch (RUNNING or WAITING) is never split: its PID
        cannot have been reused while the thread is still alive.

        Raises:
            _Unresolvable: If the current identity violates the precondition
                and a fresh epoch does not satisfy it either.
        """
        ts = event.timestamp_ns
        identity, fresh = ctx.resolver.identify(desc, ts)
        slot = ctx.thread(identity)
        ok = allowed(slot)
        if fresh:
            if not ok:
                raise _Unresolvable(desc.pid, f"new thread {desc} cannot take part in {event.type.value}")
            return slot

        alive = slot.state in (ThreadState.RUNNING, ThreadState.WAITING)
        explained = alive or slot.state == ThreadState.UNKNOWN
        reason = ctx.resolver.split_reason(desc, event.type, ts, explained)
        if reason is not None and alive:
            logger.debug("Not splitting %s at %d while %s: %s", slot.identity, ts, _describe(slot), reason)
            reason = None
        if reason is None:
            if not ok:
                raise _Unresolvable(
                    desc.pid,
                    f"{event.type.value} needs {desc} in a different state, "
                    f"believed {_describe(slot)}",
                )
            ctx.resolver.observe(desc, ts, record_command)
            return slot

        retired = slot
        identity = ctx.resolver.split(desc, ts, reason)
        ctx.move_thread(retired, ts, ThreadState.SLEEPING)
        ctx.log.emit(
            Severity.INFO,
            DiagnosticKind.IDENTITY_SPLIT,
            ts,
            f"PID {desc.pid} reused: {retired.identity} -> {identity} ({reason})",
            cpu=event.cpu,
            pid=desc.pid,
        )
        slot = ctx.thread(identity)
        if not allowed(slot):
            raise _Unresolvable(
                desc.pid, f"new epoch {identity} also violates {event.type.value} ({reason})"
            )
        return slot

    def _is_idle(self, desc: ThreadDescriptor) -> bool:
        return desc.pid == self.config.idle_pid

    # ── Transitions ──────────────────────────────────────────────────────

    def _on_switch(self, ctx: InferenceContext, ev: SwitchEvent) -> None:
        ts = ev.timestamp_ns
        cpu = ctx.cpu(ev.cpu)
        cpu_unknown = cpu.pending or cpu.state == CpuState.UNKNOWN

        prev: _ThreadSlot | None = None
        if self._is_idle(ev.prev):
            if not (cpu_unknown or cpu.state == CpuState.IDLE):
                raise _Unresolvable(None, f"switch from idle but CPU {ev.cpu} runs {cpu.occupant}")
        else:
            def prev_allowed(slot: _ThreadSlot) -> bool:
                thread_ok = slot.state == ThreadState.UNKNOWN or (
                    slot.state == ThreadState.RUNNING and slot.cpu == ev.cpu
                )
                cpu_ok = cpu_unknown or (
                    cpu.state == CpuState.RUNNING and cpu.occupant == slot.identity
                )
                return thread_ok and cpu_ok

            prev = self._resolve(ctx, ev, ev.prev, prev_allowed)

        nxt: _ThreadSlot | None = None
        if not self._is_idle(ev.next):
            def next_allowed(slot: _ThreadSlot) -> bool:
                if prev is not None and slot is prev:
                    return False
                return slot.state == ThreadState.UNKNOWN or (
                    slot.state == ThreadState.WAITING and slot.cpu == ev.cpu
                )

            nxt = self._resolve(ctx, ev, ev.next, next_allowed)

        # Outgoing CPU interval.
        if cpu.pending:
            ctx.close_cpu(cpu, cpu.observed_at, CpuState.UNKNOWN, None)
            if prev is None:
                ctx.close_cpu(cpu, ts, CpuState.IDLE, None)
            else:
                ctx.close_cpu(cpu, ts, CpuState.RUNNING, prev.identity)
        else:
            ctx.close_cpu(cpu, ts)

        # Outgoing thread.
        if prev is not None:
            backfill_from = cpu.observed_at
            if backfill_from is not None and prev.state == ThreadState.UNKNOWN and prev.since <= backfill_from:
                ctx.move_thread(prev, backfill_from, ThreadState.RUNNING, ev.cpu)
            to_cpu = ev.cpu if ev.prev_state == ThreadState.WAITING else None
            ctx.move_thread(prev, ts, ev.prev_state, to_cpu)

        cpu.observed_at = None

        # Incoming thread and CPU.
        if nxt is not None:
            ctx.move_thread(nxt, ts, ThreadState.RUNNING, ev.cpu)
            cpu.state, cpu.occupant = CpuState.RUNNING, nxt.identity
        else:
            cpu.state, cpu.occupant = CpuState.IDLE, None
        logger.debug("CPU %d at %d: %s -> %s", ev.cpu, ts, ev.prev.pid, ev.next.pid)

    def _on_wakeup(self, ctx: InferenceContext, ev: WakeupEvent) -> None:
        if self._is_idle(ev.thread):
            return
        ts = ev.timestamp_ns

        def wakeup_allowed(slot: _ThreadSlot) -> bool:
            if slot.state in (ThreadState.UNKNOWN, ThreadState.SLEEPING):
                return True
            return self.config.drop_redundant_wakeups

        slot = self._resolve(ctx, ev, ev.thread, wakeup_allowed)
        # Only reachable in WAITING or RUNNING when redundant wakeups are dropped.
        if slot.state in (ThreadState.WAITING, ThreadState.RUNNING):
            ctx.log.emit(
                Severity.WARNING,
                DiagnosticKind.REDUNDANT_WAKEUP,
                ts,
                f"{ev.type.value} for {slot.identity} already {_describe(slot)}; dropped",
                cpu=ev.target_cpu,
                pid=ev.thread.pid,
            )
            return
        ctx.move_thread(slot, ts, ThreadState.WAITING, ev.target_cpu)

    def _on_migrate(self, ctx: InferenceContext, ev: MigrateTaskEvent) -> None:
        if self._is_idle(ev.thread):
            return

        def migrate_allowed(slot: _ThreadSlot) -> bool:
            return slot.state in (ThreadState.UNKNOWN, ThreadState.SLEEPING) or (
                slot.state == ThreadState.WAITING and slot.cpu == ev.orig_cpu
            )

        slot = self._resolve(ctx, ev, ev.thread, migrate_allowed, record_command=False)
        # The kernel picks a CPU for a sleeping task before sched_wakeup fires.
        if slot.state == ThreadState.SLEEPING:
            return
        ctx.move_thread(slot, ev.timestamp_ns, ThreadState.WAITING, ev.dest_cpu)

    def _on_stat_runtime(self, ctx: InferenceContext, ev: StatRuntimeEvent) -> None:
        if self._is_idle(ev.thread):
            return
        slot = self._resolve(ctx, ev, ev.thread, lambda s: True, record_command=False)
        if slot.state == ThreadState.UNKNOWN:
            return
        ts = ev.timestamp_ns
        if slot.state != ThreadState.RUNNING or slot.cpu != ev.cpu:
            ctx.log.emit(
                Severity.WARNING,
                DiagnosticKind.RUNTIME_MISMATCH,
                ts,
                f"runtime reported for {slot.identity} on CPU {ev.cpu}, believed {_describe(slot)}",
                cpu=ev.cpu,
                pid=ev.thread.pid,
            )
            return
        marks = [m for m in (slot.switched_in_ns, slot.last_stat_ns) if m is not None]
        since = max(marks) if marks else ts
        inferred_ns = ts - since
        if ev.runtime_ns > inferred_ns + self.config.runtime_tolerance_ns:
            ctx.log.emit(
                Severity.WARNING,
                DiagnosticKind.RUNTIME_MISMATCH,
                ts,
                f"{slot.identity} reports {ev.runtime_ns} ns of runtime, "
                f"only {inferred_ns} ns inferred running since {since}",
                cpu=ev.cpu,
                pid=ev.thread.pid,
            )
        slot.last_stat_ns = ts

    # ── Failure and end of pass ──────────────────────────────────────────

    def _fatal(self, ctx: InferenceContext, event: RawEvent, cpu: int, exc: _Unresolvable) -> None:
        ts = event.timestamp_ns
        ctx.log.emit(
            Severity.FATAL,
            DiagnosticKind.PRECONDITION_VIOLATION,
            ts,
            f"unresolvable {event.type.value}: {exc.reason}; no further intervals for CPU {cpu}",
            cpu=cpu,
            pid=exc.pid,
        )
        logger.warning("FATAL on CPU %d at %d: %s", cpu, ts, exc.reason)

        slot = ctx.cpus.get(cpu)
        if slot is not None:
            ctx.close_cpu(slot, ts, CpuState.UNKNOWN if slot.pending else None)
            slot.state, slot.occupant, slot.observed_at, slot.halted = CpuState.UNKNOWN, None, None, True
        ctx.halted[cpu] = ts

        tied = [
            t for t in ctx.threads.values()
            if t.cpu == cpu and t.state in (ThreadState.RUNNING, ThreadState.WAITING)
        ]
        named = [ctx.current_thread(desc.pid) for desc in event.threads]
        for thread in tied + [t for t in named if t is not None]:
            ctx.taint(thread, ts)

    def _finish(self, ctx: InferenceContext) -> None:
        end = ctx.window.end_ns
        for cpu, count in sorted(ctx.ignored.items()):
            ctx.log.emit(
                Severity.INFO,
                DiagnosticKind.HALTED_CPU_EVENT,
                ctx.halted[cpu],
                f"{count} event(s) scoped to halted CPU {cpu} were not interpreted",
                cpu=cpu,
            )
        for slot in ctx.cpus.values():
            if slot.halted:
                continue
            if slot.pending:
                ctx.close_cpu(slot, end, CpuState.UNKNOWN, None)
            else:
                ctx.close_cpu(slot, end)
        for thread in ctx.threads.values():
            ctx.close_thread(thread, end)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _scope_cpus(event: RawEvent) -> list[int]:
    """CPUs a failure of *event* is charged to, most specific first."""
    if isinstance(event, WakeupEvent):
        return [event.target_cpu]
    if isinstance(event, MigrateTaskEvent):
        return [event.orig_cpu, event.dest_cpu]
    return [event.cpu]


def _describe(slot: _ThreadSlot) -> str:
    if slot.cpu is None:
        return slot.state.value
    return f"{slot.state.value} on CPU {slot.cpu}"


def _interval_sort_key(interval: Interval) -> tuple:
    if interval.entity_kind == EntityKind.CPU:
        return (0, interval.cpu, 0, interval.start_ns)
    return (1, interval.thread.pid, interval.thread.epoch, interval.start_ns)
