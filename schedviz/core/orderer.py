"""GlobalOrderer — merges per-CPU event sequences into one total order.

The merge key is ``(timestamp_ns, cpu, seq)``: equal timestamps from
different CPUs go CPU-ascending, and within one CPU the capture order is
never changed.

Clock skew cannot be detected from timestamps alone, because the merge
sorts them.  It shows up only against the order the records were
*captured* in: a record captured later that claims an earlier timestamp
than one already seen on another CPU.  When the collection carries
capture indices, the orderer replays that order and flags such inversions.
It never corrects them.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from schedviz.domain.diagnostics import Diagnostic, DiagnosticLog
from schedviz.domain.enums import DiagnosticKind, Severity
from schedviz.domain.events import RawEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrdererConfig:
    """Clock granularity below which cross-CPU events count as concurrent."""

    skew_tolerance_ns: int = 1000


@dataclass
class OrderedTrace:
    events: list[RawEvent]
    diagnostics: list[Diagnostic] = field(default_factory=list)


class GlobalOrderer:
    """k-way merge of per-CPU streams with capture-order skew detection."""

    def __init__(self, config: OrdererConfig | None = None) -> None:
        self._config = config or OrdererConfig()

    def order(self, events_by_cpu: dict[int, list[RawEvent]]) -> OrderedTrace:
        streams = [events_by_cpu[cpu] for cpu in sorted(events_by_cpu)]
        merged = list(heapq.merge(*streams, key=lambda ev: ev.order_key))
        diagnostics = self.detect_skew(merged)
        logger.debug(
            "Merged %d event(s) from %d CPU(s), %d skew warning(s)",
            len(merged), len(streams), len(diagnostics),
        )
        return OrderedTrace(events=merged, diagnostics=diagnostics)

    def detect_skew(self, events: list[RawEvent]) -> list[Diagnostic]:
        """Flag cross-CPU timestamp inversions relative to capture order.

        One WARNING is emitted per (lagging CPU, leading CPU) episode.  The
        episode ends once the lagging CPU reports a timestamp within
        tolerance of the running maximum again.
        """
        captured = sorted(
            (ev for ev in events if ev.capture_index is not None),
            key=lambda ev: ev.capture_index,
        )
        epsilon = self._config.skew_tolerance_ns
        log = DiagnosticLog()
        active: set[tuple[int, int]] = set()
        max_ts: int | None = None
        max_cpu: int | None = None

        for event in captured:
            if max_ts is None:
                max_ts, max_cpu = event.timestamp_ns, event.cpu
                continue
            lag = max_ts - event.timestamp_ns
            if lag > epsilon and event.cpu != max_cpu:
                pair = (event.cpu, max_cpu)
                if pair not in active:
                    active.add(pair)
                    log.emit(
                        Severity.WARNING,
                        DiagnosticKind.CLOCK_SKEW,
                        event.timestamp_ns,
                        f"CPU {event.cpu} event captured after a CPU {max_cpu} event "
                        f"at {max_ts} claims an earlier timestamp ({lag} ns inversion, "
                        f"tolerance {epsilon} ns)",
                        cpu=event.cpu,
                        other_cpu=max_cpu,
                    )
                    logger.warning(
                        "Clock skew between CPU %d and CPU %d: %d ns", event.cpu, max_cpu, lag
                    )
            elif lag <= epsilon:
                active = {p for p in active if p[0] != event.cpu}
            if event.timestamp_ns > max_ts:
                max_ts, max_cpu = event.timestamp_ns, event.cpu

        return log.entries
