"""EventNormalizer — validates raw per-CPU records into canonical events.

Design principles:
    1. Malformed input is capture corruption, not an inference ambiguity:
       any structural problem raises StructuralError and aborts the whole
       collection before inference begins.
    2. Each CPU's records are validated by an independent task with no
       shared mutable state; results are combined in CPU order so the
       outcome never depends on task scheduling.
    3. Buffer overruns shrink the valid window.  Events outside it are
       clipped and reported once, never interpreted.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from schedviz.adapters.registry import (
    AdaptationError,
    AdapterRegistry,
    AdapterStats,
    default_registry,
)
from schedviz.domain.collection import Collection, CollectionWindow
from schedviz.domain.diagnostics import Diagnostic, DiagnosticLog
from schedviz.domain.enums import DiagnosticKind, Severity
from schedviz.domain.events import MigrateTaskEvent, RawEvent, WakeupEvent

logger = logging.getLogger(__name__)


class StructuralError(Exception):
    """Raised when a collection's raw records are malformed."""

    def __init__(self, reason: str, cpu: int | None = None, seq: int | None = None) -> None:
        self.reason = reason
        self.cpu = cpu
        self.seq = seq
        where = ""
        if cpu is not None:
            where = f" (CPU {cpu}" + (f", record {seq})" if seq is not None else ")")
        super().__init__(f"Structural error{where}: {reason}")


@dataclass(frozen=True)
class NormalizerConfig:
    """Structural limits and timestamp handling for normalization."""

    max_cpus: int = 4096
    max_pid: int = 4_194_304
    normalize_timestamps: bool = False
    workers: int = 4


@dataclass
class NormalizedTrace:
    """Canonical per-CPU event sequences plus the validated window."""

    events_by_cpu: dict[int, list[RawEvent]]
    window: CollectionWindow
    normalization_offset: int = 0
    clipped_count: int = 0
    skipped_count: int = 0
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return sum(len(events) for events in self.events_by_cpu.values())


@dataclass
class _CpuResult:
    cpu: int
    events: list[RawEvent]
    skipped: int


class EventNormalizer:
    """Turns a Collection's raw records into a NormalizedTrace."""

    def __init__(
        self,
        config: NormalizerConfig | None = None,
        registry: AdapterRegistry | None = None,
    ) -> None:
        self._config = config or NormalizerConfig()
        self._registry = registry or default_registry()

    # ── Public API ───────────────────────────────────────────────────────

    def normalize(self, collection: Collection) -> NormalizedTrace:
        """Validate every record and compute the valid window.

        Raises:
            StructuralError: If any record or the metadata is malformed.
        """
        metadata = collection.metadata
        declared = set(metadata.event_types)
        for cpu in metadata.overflowed_cpus:
            self._check_cpu(cpu, "overflowed CPU")

        results = self._normalize_cpus(collection.records, declared)
        events_by_cpu = {r.cpu: r.events for r in results}
        skipped = sum(r.skipped for r in results)
        self._check_capture_indices(events_by_cpu)

        window = self._valid_window(collection, events_by_cpu)
        log = DiagnosticLog()

        clipped = 0
        for cpu, events in events_by_cpu.items():
            kept = [ev for ev in events if window.contains(ev.timestamp_ns)]
            clipped += len(events) - len(kept)
            events_by_cpu[cpu] = kept
        if clipped:
            log.emit(
                Severity.WARNING,
                DiagnosticKind.CLIPPED_EVENTS,
                window.start_ns,
                f"{clipped} event(s) fell outside the valid window "
                f"[{window.start_ns}, {window.end_ns}] and were clipped",
            )
        if skipped:
            log.emit(
                Severity.INFO,
                DiagnosticKind.SKIPPED_EVENTS,
                window.start_ns,
                f"{skipped} record(s) for non-scheduling tracepoints were skipped",
            )

        offset = 0
        if self._config.normalize_timestamps:
            offset = window.start_ns
            events_by_cpu = {
                cpu: [ev.model_copy(update={"timestamp_ns": ev.timestamp_ns - offset}) for ev in events]
                for cpu, events in events_by_cpu.items()
            }
            window = CollectionWindow(start_ns=0, end_ns=window.end_ns - offset)

        trace = NormalizedTrace(
            events_by_cpu=events_by_cpu,
            window=window,
            normalization_offset=offset,
            clipped_count=clipped,
            skipped_count=skipped,
            diagnostics=[
                d.model_copy(update={"timestamp_ns": d.timestamp_ns - offset}) for d in log.entries
            ],
        )
        logger.info(
            "Normalized collection %s: %d event(s) on %d CPU(s), window [%d, %d], %d clipped",
            collection.collection_id,
            trace.event_count,
            len(events_by_cpu),
            window.start_ns,
            window.end_ns,
            clipped,
        )
        return trace

    # ── Per-CPU validation ───────────────────────────────────────────────

    def _normalize_cpus(
        self,
        records: dict[int, list[dict[str, Any]]],
        declared: set[str],
    ) -> list[_CpuResult]:
        cpus = sorted(records)
        for cpu in cpus:
            self._check_cpu(cpu, "record group")
        workers = max(1, min(self._config.workers, len(cpus) or 1))
        counters: list[dict[str, AdapterStats]] = [{} for _ in cpus]
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(self._normalize_cpu, cpu, records[cpu], declared, stats)
                    for cpu, stats in zip(cpus, counters)
                ]
        finally:
            # Every task has joined here, failed ones included.
            for stats in counters:
                self._registry.absorb(stats)
        # Collected in CPU order so the first reported error is deterministic.
        return [f.result() for f in futures]

    def _normalize_cpu(
        self,
        cpu: int,
        records: list[dict[str, Any]],
        declared: set[str],
        stats: dict[str, AdapterStats],
    ) -> _CpuResult:
        events: list[RawEvent] = []
        skipped = 0
        last_ts: int | None = None
        known = self._registry.event_names

        for seq, raw in enumerate(records):
            if not isinstance(raw, dict):
                raise StructuralError(f"record is not a mapping: {raw!r}", cpu, seq)
            name = raw.get("event")
            if not name:
                raise StructuralError("record has no 'event' name", cpu, seq)
            if declared and name not in declared:
                raise StructuralError(f"event '{name}' is not in the declared event types", cpu, seq)
            if name not in known:
                skipped += 1
                continue
            if raw.get("cpu") is not None and raw.get("cpu") != cpu:
                raise StructuralError(f"record claims CPU {raw.get('cpu')!r}", cpu, seq)

            try:
                event = self._registry.adapt(raw, cpu, seq, stats)
            except AdaptationError as exc:
                raise StructuralError(exc.reason, cpu, seq) from exc

            self._check_ranges(event, seq)
            if last_ts is not None and event.timestamp_ns < last_ts:
                raise StructuralError(
                    f"timestamp {event.timestamp_ns} regresses below {last_ts}", cpu, seq
                )
            last_ts = event.timestamp_ns
            events.append(event)

        logger.debug("CPU %d: %d event(s), %d skipped", cpu, len(events), skipped)
        return _CpuResult(cpu=cpu, events=events, skipped=skipped)

    def _check_cpu(self, cpu: Any, what: str, seq: int | None = None) -> None:
        if not isinstance(cpu, int) or isinstance(cpu, bool) or not 0 <= cpu < self._config.max_cpus:
            raise StructuralError(
                f"{what} CPU {cpu!r} out of range [0, {self._config.max_cpus})", None, seq
            )

    def _check_ranges(self, event: RawEvent, seq: int) -> None:
        for thread in event.threads:
            if thread.pid > self._config.max_pid:
                raise StructuralError(
                    f"PID {thread.pid} exceeds maximum {self._config.max_pid}", event.cpu, seq
                )
        referenced: list[int] = []
        if isinstance(event, WakeupEvent):
            referenced.append(event.target_cpu)
        elif isinstance(event, MigrateTaskEvent):
            referenced.extend((event.orig_cpu, event.dest_cpu))
        for cpu in referenced:
            if cpu >= self._config.max_cpus:
                raise StructuralError(
                    f"referenced CPU {cpu} out of range [0, {self._config.max_cpus})", event.cpu, seq
                )

    # ── Collection-wide checks ───────────────────────────────────────────

    @staticmethod
    def _check_capture_indices(events_by_cpu: dict[int, list[RawEvent]]) -> None:
        seen: dict[int, int] = {}
        for cpu in sorted(events_by_cpu):
            for event in events_by_cpu[cpu]:
                if event.capture_index is None:
                    continue
                if event.capture_index in seen:
                    raise StructuralError(
                        f"capture index {event.capture_index} also used on CPU {seen[event.capture_index]}",
                        cpu,
                        event.seq,
                    )
                seen[event.capture_index] = cpu

    @staticmethod
    def _valid_window(
        collection: Collection,
        events_by_cpu: dict[int, list[RawEvent]],
    ) -> CollectionWindow:
        """Window bounds from metadata, observed events, and buffer overruns.

        In overwrite mode an overrun lost the *oldest* events of a CPU, so
        the trace is only complete after the latest first-event among the
        overflowed CPUs.  Otherwise the *newest* events were dropped and the
        trace is only complete before the earliest last-event among them.
        """
        metadata = collection.metadata
        timestamps = [ev.timestamp_ns for events in events_by_cpu.values() for ev in events]
        if not timestamps and (metadata.start_ns is None or metadata.end_ns is None):
            raise StructuralError("no usable events in collection")

        start = metadata.start_ns if metadata.start_ns is not None else min(timestamps)
        end = metadata.end_ns if metadata.end_ns is not None else max(timestamps)

        for cpu in metadata.overflowed_cpus:
            events = events_by_cpu.get(cpu)
            if not events:
                raise StructuralError("overflowed CPU has no events", cpu)
            if metadata.overwrite:
                start = max(start, events[0].timestamp_ns)
            else:
                end = min(end, events[-1].timestamp_ns)

        if end < start:
            raise StructuralError(f"valid window is empty: start {start} after end {end}")
        return CollectionWindow(start_ns=start, end_ns=end)
