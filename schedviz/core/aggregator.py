"""Aggregator — reduces a frozen interval set into Statistics.

A pure reduction.  Durations are clipped to the filter window, and every
counted transition (wakeup, migration, WAITING→RUNNING latency, context
switch) is attributed to the timestamp it happened at, using the
half-open window ``[start, end)``.  Aggregating a window therefore equals
merging the aggregates of any contiguous partition of it.

Transitions are recognised from the *unfiltered* per-entity timeline so
that a window boundary never hides what preceded an interval.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional

from schedviz.core.analysis import RunningIndex, antagonisms_for, utilization
from schedviz.domain.collection import CollectionWindow
from schedviz.domain.diagnostics import Diagnostic
from schedviz.domain.enums import CpuState, EntityKind, ThreadState
from schedviz.domain.intervals import Interval, ThreadIdentity
from schedviz.domain.statistics import (
    CpuStatistics,
    LatencyDistribution,
    Statistics,
    ThreadStatistics,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatisticsFilter:
    """Restricts aggregation to CPUs, threads and a time sub-window.

    ``None`` means "no restriction".  Threads match by PID or by exact
    ``(pid, epoch)`` identity; when both are given a thread must match both.
    """

    cpus: Optional[frozenset[int]] = None
    pids: Optional[frozenset[int]] = None
    identities: Optional[frozenset[tuple[int, int]]] = None
    start_ns: Optional[int] = None
    end_ns: Optional[int] = None

    def window(self, full: CollectionWindow) -> CollectionWindow:
        start, end = full.clip(
            full.start_ns if self.start_ns is None else self.start_ns,
            full.end_ns if self.end_ns is None else self.end_ns,
        )
        return CollectionWindow(start_ns=start, end_ns=end)

    def matches_cpu(self, cpu: int | None) -> bool:
        if self.cpus is None:
            return True
        return cpu is not None and cpu in self.cpus

    def matches_thread(self, identity: ThreadIdentity) -> bool:
        if self.pids is not None and identity.pid not in self.pids:
            return False
        if self.identities is not None and identity.key not in self.identities:
            return False
        return True


class Aggregator:
    """Computes per-thread, per-CPU and utilization statistics."""

    def __init__(self, workers: int = 4) -> None:
        self._workers = max(1, workers)

    def aggregate(
        self,
        intervals: list[Interval],
        window: CollectionWindow,
        stats_filter: StatisticsFilter | None = None,
        diagnostics: Iterable[Diagnostic] = (),
    ) -> Statistics:
        flt = stats_filter or StatisticsFilter()
        sub = flt.window(window)

        cpu_timelines: dict[int, list[Interval]] = defaultdict(list)
        thread_timelines: dict[tuple[int, int], list[Interval]] = defaultdict(list)
        identities: dict[tuple[int, int], ThreadIdentity] = {}
        for iv in intervals:
            if iv.entity_kind == EntityKind.CPU:
                cpu_timelines[iv.cpu].append(iv)
            else:
                thread_timelines[iv.thread.key].append(iv)
                identities[iv.thread.key] = iv.thread
        for timeline in (*cpu_timelines.values(), *thread_timelines.values()):
            timeline.sort(key=lambda iv: iv.start_ns)

        cpus = {
            cpu: _cpu_statistics(cpu, timeline, sub)
            for cpu, timeline in sorted(cpu_timelines.items())
            if flt.matches_cpu(cpu)
        }

        running = RunningIndex(intervals)
        selected = [identities[key] for key in sorted(identities) if flt.matches_thread(identities[key])]
        with ThreadPoolExecutor(max_workers=self._workers) as executor:
            computed = list(
                executor.map(
                    lambda identity: _thread_statistics(
                        identity, thread_timelines[identity.key], running, sub, flt
                    ),
                    selected,
                )
            )
        threads = {str(s.thread): s for s in computed}

        util = utilization(intervals, sub, set(flt.cpus) if flt.cpus is not None else None)
        logger.debug(
            "Aggregated %d interval(s) over [%d, %d): %d thread(s), %d CPU(s)",
            len(intervals), sub.start_ns, sub.end_ns, len(threads), len(cpus),
        )
        return Statistics(
            window=sub,
            threads=threads,
            cpus=cpus,
            utilization=util,
            diagnostics=list(diagnostics),
        )


# ── Reductions ───────────────────────────────────────────────────────────────

def _in_window(ts: int, window: CollectionWindow) -> bool:
    return window.start_ns <= ts < window.end_ns


def _cpu_statistics(cpu: int, timeline: list[Interval], window: CollectionWindow) -> CpuStatistics:
    totals = {state: 0 for state in CpuState}
    switches = 0
    prev: Interval | None = None
    for iv in timeline:
        totals[iv.state] += iv.overlap_ns(window.start_ns, window.end_ns)
        if (
            prev is not None
            and prev.end_ns == iv.start_ns
            and prev.state != CpuState.UNKNOWN
            and iv.state != CpuState.UNKNOWN
            and _in_window(iv.start_ns, window)
        ):
            switches += 1
        prev = iv
    return CpuStatistics(
        cpu=cpu,
        idle_ns=totals[CpuState.IDLE],
        running_ns=totals[CpuState.RUNNING],
        unknown_ns=totals[CpuState.UNKNOWN],
        switches=switches,
    )


def _thread_statistics(
    identity: ThreadIdentity,
    timeline: list[Interval],
    running: RunningIndex,
    window: CollectionWindow,
    flt: StatisticsFilter,
) -> ThreadStatistics:
    totals = {state: 0 for state in ThreadState}
    post_wakeup = wakeups = migrations = 0
    latencies: list[int] = []
    antagonist_ns: dict[str, int] = defaultdict(int)

    prev: Interval | None = None
    last_cpu: int | None = None
    waiting_since: int | None = None
    woken = False
    counted: list[Interval] = []

    for iv in timeline:
        starts_here = _in_window(iv.start_ns, window)
        overlap = iv.overlap_ns(window.start_ns, window.end_ns)

        if iv.state == ThreadState.WAITING:
            if prev is None or prev.state in (ThreadState.SLEEPING, ThreadState.UNKNOWN):
                woken = True
                waiting_since = iv.start_ns
                if starts_here and flt.matches_cpu(iv.cpu):
                    wakeups += 1
            elif prev.state == ThreadState.RUNNING:
                woken = False
                waiting_since = iv.start_ns
        elif iv.state == ThreadState.RUNNING:
            if prev is not None and prev.state == ThreadState.WAITING and waiting_since is not None:
                if starts_here and flt.matches_cpu(iv.cpu):
                    latencies.append(iv.start_ns - waiting_since)
            waiting_since = None
            woken = False
        else:
            waiting_since = None
            woken = False

        if iv.cpu is not None:
            if last_cpu is not None and iv.cpu != last_cpu and starts_here and flt.matches_cpu(iv.cpu):
                migrations += 1
            last_cpu = iv.cpu

        if flt.matches_cpu(iv.cpu):
            totals[iv.state] += overlap
            if iv.state == ThreadState.WAITING:
                counted.append(iv)
                if woken:
                    post_wakeup += overlap
        prev = iv

    for antagonism in antagonisms_for(identity, counted, running, window):
        antagonist_ns[str(antagonism.antagonist)] += antagonism.end_ns - antagonism.start_ns

    return ThreadStatistics(
        thread=identity,
        run_ns=totals[ThreadState.RUNNING],
        wait_ns=totals[ThreadState.WAITING],
        sleep_ns=totals[ThreadState.SLEEPING],
        unknown_ns=totals[ThreadState.UNKNOWN],
        post_wakeup_wait_ns=post_wakeup,
        wakeups=wakeups,
        migrations=migrations,
        latency=LatencyDistribution.of(latencies),
        antagonist_ns=dict(antagonist_ns),
    )
