"""TraceInterpretationEngine — the full pipeline for one collection.

Design principles:
    1. Pure function of its input: interpret() takes an immutable
       Collection and returns an InterpretationResult.  No state survives
       between calls, so results are memoizable by collection id.
    2. Normalizer → Orderer → StateInferenceMachine (with the resolver
       inline) → Aggregator.  Each pass builds its own working state.
    3. Structural errors propagate as StructuralError.  Everything else the
       data cannot support is reported as a Diagnostic.
    4. All thresholds are explicit frozen configs.  The engine never reads
       application settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from schedviz.adapters.registry import AdapterRegistry
from schedviz.core.aggregator import Aggregator, StatisticsFilter
from schedviz.core.analysis import antagonists, utilization
from schedviz.core.inference import InferenceConfig, StateInferenceMachine
from schedviz.core.normalizer import EventNormalizer, NormalizerConfig
from schedviz.core.orderer import GlobalOrderer, OrdererConfig
from schedviz.core.resolver import CommandChangePolicy, SplitPolicy, SplitPolicyConfig
from schedviz.domain.collection import Collection, CollectionWindow
from schedviz.domain.diagnostics import Diagnostic
from schedviz.domain.enums import EntityKind, Severity
from schedviz.domain.events import RawEvent
from schedviz.domain.intervals import Interval, ThreadIdentity, ThreadInfo
from schedviz.domain.statistics import Antagonists, Statistics, Utilization

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterpretationConfig:
    """Every tunable of the interpretation pipeline."""

    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    orderer: OrdererConfig = field(default_factory=OrdererConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    split_policy: SplitPolicyConfig = field(default_factory=SplitPolicyConfig)
    aggregator_workers: int = 4


class InterpretationResult(BaseModel):
    """Immutable output of one interpretation pass."""

    collection_id: str
    window: CollectionWindow
    intervals: list[Interval] = Field(default_factory=list)
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    threads: list[ThreadInfo] = Field(default_factory=list)
    events: list[RawEvent] = Field(default_factory=list, repr=False)
    halted_cpus: dict[int, int] = Field(
        default_factory=dict, description="CPU → timestamp of the FATAL that halted it",
    )
    normalization_offset: int = 0

    model_config = {"frozen": True}

    @property
    def partial(self) -> bool:
        """True when some CPU stopped producing intervals after a FATAL."""
        return any(d.severity == Severity.FATAL for d in self.diagnostics)

    def cpu_intervals(self, cpu: int) -> list[Interval]:
        return [iv for iv in self.intervals if iv.entity_kind == EntityKind.CPU and iv.cpu == cpu]

    def thread_intervals(self, identity: ThreadIdentity) -> list[Interval]:
        return [
            iv for iv in self.intervals
            if iv.entity_kind == EntityKind.THREAD and iv.thread.key == identity.key
        ]

    def identities(self, pid: int) -> list[ThreadIdentity]:
        return [t.identity for t in self.threads if t.identity.pid == pid]

    def summary(self) -> dict:
        counts: dict[str, int] = {}
        for d in self.diagnostics:
            counts[d.severity.value] = counts.get(d.severity.value, 0) + 1
        return {
            "collection_id": self.collection_id,
            "window": {"start_ns": self.window.start_ns, "end_ns": self.window.end_ns},
            "interval_count": len(self.intervals),
            "event_count": len(self.events),
            "thread_count": len(self.threads),
            "diagnostics": counts,
            "partial": self.partial,
            "halted_cpus": sorted(self.halted_cpus),
            "normalization_offset": self.normalization_offset,
        }


class TraceInterpretationEngine:
    """Stateless interpreter of scheduling trace collections.

    Usage:
        engine = TraceInterpretationEngine(InterpretationConfig())
        result = engine.interpret(collection)
        stats = engine.aggregate(result, StatisticsFilter(cpus=frozenset({1})))
    """

    def __init__(
        self,
        config: InterpretationConfig | None = None,
        registry: AdapterRegistry | None = None,
        policy: SplitPolicy | None = None,
    ) -> None:
        self.config = config or InterpretationConfig()
        self._normalizer = EventNormalizer(self.config.normalizer, registry)
        self._orderer = GlobalOrderer(self.config.orderer)
        self._machine = StateInferenceMachine(
            self.config.inference,
            policy or CommandChangePolicy(self.config.split_policy),
        )
        self._aggregator = Aggregator(self.config.aggregator_workers)

    def interpret(self, collection: Collection) -> InterpretationResult:
        """Run the full pipeline over *collection*.

        Raises:
            StructuralError: If the collection's records are malformed.
        """
        logger.info(
            "Interpreting collection %s (%d record(s), %d CPU(s))",
            collection.collection_id, collection.record_count, len(collection.cpus),
        )
        trace = self._normalizer.normalize(collection)
        ordered = self._orderer.order(trace.events_by_cpu)
        output = self._machine.run(
            ordered.events,
            trace.window,
            sorted(trace.events_by_cpu),
            diagnostics=trace.diagnostics + ordered.diagnostics,
        )
        result = InterpretationResult(
            collection_id=collection.collection_id,
            window=trace.window,
            intervals=output.intervals,
            diagnostics=output.diagnostics,
            threads=output.threads,
            events=ordered.events,
            halted_cpus=output.halted_cpus,
            normalization_offset=trace.normalization_offset,
        )
        if result.partial:
            logger.warning(
                "Collection %s is partial: CPU(s) %s halted",
                collection.collection_id, sorted(result.halted_cpus),
            )
        return result

    def aggregate(
        self,
        result: InterpretationResult,
        stats_filter: StatisticsFilter | None = None,
    ) -> Statistics:
        """Reduce a result's intervals; its diagnostics are passed through."""
        return self._aggregator.aggregate(
            result.intervals, result.window, stats_filter, result.diagnostics
        )

    def antagonists(
        self,
        result: InterpretationResult,
        pid: int,
        epoch: Optional[int] = None,
        stats_filter: StatisticsFilter | None = None,
    ) -> Antagonists:
        """Who ran while the thread(s) with *pid* were queued."""
        victims = [i for i in result.identities(pid) if epoch is None or i.epoch == epoch]
        window = (stats_filter or StatisticsFilter()).window(result.window)
        return antagonists(result.intervals, victims, window)

    def utilization(
        self,
        result: InterpretationResult,
        stats_filter: StatisticsFilter | None = None,
    ) -> Utilization:
        flt = stats_filter or StatisticsFilter()
        cpus = set(flt.cpus) if flt.cpus is not None else None
        return utilization(result.intervals, flt.window(result.window), cpus)

    @staticmethod
    def thread_events(
        result: InterpretationResult,
        pid: int,
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> list[RawEvent]:
        """Ordered events involving *pid* within ``[start_ns, end_ns]``."""
        return [
            ev for ev in result.events
            if ev.involves(pid)
            and (start_ns is None or ev.timestamp_ns >= start_ns)
            and (end_ns is None or ev.timestamp_ns <= end_ns)
        ]
