"""Interval analyses: antagonists and load-imbalance utilization.

Both work on a frozen interval set and a window, and clip every span to
that window, so results for adjacent windows add up to the result for
their union.
"""

from __future__ import annotations

import bisect
from collections import defaultdict
from typing import Iterable

from schedviz.domain.collection import CollectionWindow
from schedviz.domain.enums import CpuState, EntityKind, ThreadState
from schedviz.domain.intervals import Interval, ThreadIdentity
from schedviz.domain.statistics import Antagonism, Antagonists, Utilization


class RunningIndex:
    """CPU RUNNING intervals per CPU, sorted for overlap lookups."""

    def __init__(self, intervals: Iterable[Interval]) -> None:
        by_cpu: dict[int, list[Interval]] = defaultdict(list)
        for iv in intervals:
            if iv.entity_kind == EntityKind.CPU and iv.state == CpuState.RUNNING:
                by_cpu[iv.cpu].append(iv)
        self._intervals = {cpu: sorted(ivs, key=lambda iv: iv.start_ns) for cpu, ivs in by_cpu.items()}
        self._ends = {cpu: [iv.end_ns for iv in ivs] for cpu, ivs in self._intervals.items()}

    def overlapping(self, cpu: int, start_ns: int, end_ns: int) -> list[Interval]:
        """RUNNING intervals on *cpu* that intersect ``[start_ns, end_ns)``."""
        ivs = self._intervals.get(cpu, [])
        # CPU intervals never overlap, so ends are sorted too.
        i = bisect.bisect_right(self._ends.get(cpu, []), start_ns)
        found = []
        while i < len(ivs) and ivs[i].start_ns < end_ns:
            found.append(ivs[i])
            i += 1
        return found


def antagonisms_for(
    victim: ThreadIdentity,
    thread_intervals: Iterable[Interval],
    running: RunningIndex,
    window: CollectionWindow,
) -> list[Antagonism]:
    """Every span another thread ran on a CPU *victim* was queued on."""
    found: list[Antagonism] = []
    for waiting in thread_intervals:
        if waiting.state != ThreadState.WAITING or waiting.cpu is None:
            continue
        start, end = window.clip(waiting.start_ns, waiting.end_ns)
        if start >= end:
            continue
        for run in running.overlapping(waiting.cpu, start, end):
            if run.thread is None or run.thread.key == victim.key:
                continue
            a_start, a_end = max(start, run.start_ns), min(end, run.end_ns)
            if a_start < a_end:
                found.append(
                    Antagonism(
                        victim=victim,
                        antagonist=run.thread,
                        cpu=waiting.cpu,
                        start_ns=a_start,
                        end_ns=a_end,
                    )
                )
    return found


def antagonists(
    intervals: list[Interval],
    victims: list[ThreadIdentity],
    window: CollectionWindow,
) -> Antagonists:
    """Antagonist analysis for *victims* within *window*."""
    running = RunningIndex(intervals)
    wanted = {v.key for v in victims}
    per_victim: dict[tuple[int, int], list[Interval]] = defaultdict(list)
    for iv in intervals:
        if iv.entity_kind == EntityKind.THREAD and iv.thread.key in wanted:
            per_victim[iv.thread.key].append(iv)

    found: list[Antagonism] = []
    for victim in victims:
        found.extend(antagonisms_for(victim, per_victim.get(victim.key, []), running, window))
    found.sort(key=lambda a: (a.start_ns, a.cpu, a.victim.key, a.antagonist.key))
    return Antagonists(victims=list(victims), antagonisms=found, window=window)


def utilization(
    intervals: list[Interval],
    window: CollectionWindow,
    cpus: set[int] | None = None,
) -> Utilization:
    """Sweep elementary spans to measure idle capacity next to queued work.

    Within each span where no CPU or queue changes, ``idle`` CPUs could
    have absorbed work from ``overloaded`` CPUs (running ones with a
    thread waiting in their queue).  Lost work is the smaller of the two,
    per CPU or per thread.
    """
    # (timestamp, order, cpu, cpu_state or None, waiting delta); removals sort first.
    changes: list[tuple[int, int, int, CpuState | None, int]] = []
    for iv in intervals:
        if iv.cpu is None or (cpus is not None and iv.cpu not in cpus):
            continue
        start, end = window.clip(iv.start_ns, iv.end_ns)
        if start >= end:
            continue
        if iv.entity_kind == EntityKind.CPU:
            changes.append((end, 0, iv.cpu, None, 0))
            changes.append((start, 1, iv.cpu, iv.state, 0))
        elif iv.state == ThreadState.WAITING:
            changes.append((end, 0, iv.cpu, None, -1))
            changes.append((start, 1, iv.cpu, None, 1))
    changes.sort(key=lambda c: (c[0], c[1]))

    cpu_state: dict[int, CpuState] = {}
    waiting: dict[int, int] = defaultdict(int)
    wall = per_cpu = per_thread = idle_total = known_total = 0

    for i, (ts, order, cpu, state, delta) in enumerate(changes):
        if delta:
            waiting[cpu] += delta
        elif order == 0:
            cpu_state.pop(cpu, None)
        else:
            cpu_state[cpu] = state
        if i + 1 < len(changes) and changes[i + 1][0] == ts:
            continue
        if i + 1 == len(changes):
            break
        span = changes[i + 1][0] - ts
        idle = sum(1 for s in cpu_state.values() if s == CpuState.IDLE)
        known = sum(1 for s in cpu_state.values() if s != CpuState.UNKNOWN)
        busy = [
            queue for queue, n in waiting.items()
            if n > 0 and cpu_state.get(queue) == CpuState.RUNNING
        ]
        overloaded = len(busy)
        queued = sum(waiting[queue] for queue in busy)
        idle_total += span * idle
        known_total += span * known
        if idle and overloaded:
            wall += span
            per_cpu += span * min(idle, overloaded)
            per_thread += span * min(idle, queued)

    return Utilization(
        wall_ns=wall,
        per_cpu_ns=per_cpu,
        per_thread_ns=per_thread,
        idle_ns=idle_total,
        total_ns=known_total,
    )
