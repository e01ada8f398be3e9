"""Statistics domain models — reductions over a frozen interval set.

Every model here is additive: durations are clipped to the aggregation
window and every counted transition is attributed to the instant it
happened.  ``merge`` therefore combines the statistics of two adjacent
windows into exactly the statistics of their union.
"""

from __future__ import annotations

import math

from pydantic import BaseModel, Field

from schedviz.domain.collection import CollectionWindow
from schedviz.domain.diagnostics import Diagnostic
from schedviz.domain.intervals import ThreadIdentity


def _merge_counts(a: dict, b: dict) -> dict:
    merged = dict(a)
    for key, value in b.items():
        merged[key] = merged.get(key, 0) + value
    return merged


class LatencyDistribution(BaseModel):
    """WAITING→RUNNING latencies, kept as the sorted sample multiset."""

    samples_ns: tuple[int, ...] = ()

    model_config = {"frozen": True}

    @classmethod
    def of(cls, samples: list[int]) -> "LatencyDistribution":
        return cls(samples_ns=tuple(sorted(samples)))

    @property
    def count(self) -> int:
        return len(self.samples_ns)

    @property
    def total_ns(self) -> int:
        return sum(self.samples_ns)

    @property
    def min_ns(self) -> int | None:
        return self.samples_ns[0] if self.samples_ns else None

    @property
    def max_ns(self) -> int | None:
        return self.samples_ns[-1] if self.samples_ns else None

    @property
    def mean_ns(self) -> float | None:
        if not self.samples_ns:
            return None
        return self.total_ns / self.count

    def percentile(self, p: float) -> int | None:
        """Nearest-rank percentile, ``p`` in (0, 100]."""
        if not 0.0 < p <= 100.0:
            raise ValueError(f"percentile must be in (0, 100], got {p}")
        if not self.samples_ns:
            return None
        rank = math.ceil(p / 100.0 * self.count)
        return self.samples_ns[rank - 1]

    def merge(self, other: "LatencyDistribution") -> "LatencyDistribution":
        return LatencyDistribution.of(list(self.samples_ns) + list(other.samples_ns))

    def summary(self) -> dict:
        return {
            "count": self.count,
            "total_ns": self.total_ns,
            "min_ns": self.min_ns,
            "max_ns": self.max_ns,
            "mean_ns": self.mean_ns,
            "p50_ns": self.percentile(50),
            "p90_ns": self.percentile(90),
            "p99_ns": self.percentile(99),
        }


class ThreadStatistics(BaseModel):
    """Time-in-state and transition counts for one thread identity."""

    thread: ThreadIdentity
    run_ns: int = 0
    wait_ns: int = 0
    sleep_ns: int = 0
    unknown_ns: int = 0
    post_wakeup_wait_ns: int = Field(default=0, description="Waiting time directly following a wakeup")
    wakeups: int = 0
    migrations: int = 0
    latency: LatencyDistribution = Field(default_factory=LatencyDistribution)
    antagonist_ns: dict[str, int] = Field(
        default_factory=dict,
        description="Time other threads ran on the CPU this thread was queued on, keyed by thread",
    )

    model_config = {"frozen": True}

    @property
    def observed_ns(self) -> int:
        return self.run_ns + self.wait_ns + self.sleep_ns + self.unknown_ns

    def merge(self, other: "ThreadStatistics") -> "ThreadStatistics":
        if other.thread != self.thread:
            raise ValueError(f"can't merge statistics of {self.thread} and {other.thread}")
        return ThreadStatistics(
            thread=self.thread,
            run_ns=self.run_ns + other.run_ns,
            wait_ns=self.wait_ns + other.wait_ns,
            sleep_ns=self.sleep_ns + other.sleep_ns,
            unknown_ns=self.unknown_ns + other.unknown_ns,
            post_wakeup_wait_ns=self.post_wakeup_wait_ns + other.post_wakeup_wait_ns,
            wakeups=self.wakeups + other.wakeups,
            migrations=self.migrations + other.migrations,
            latency=self.latency.merge(other.latency),
            antagonist_ns=_merge_counts(self.antagonist_ns, other.antagonist_ns),
        )

    def summary(self) -> dict:
        return {
            "thread": str(self.thread),
            "pid": self.thread.pid,
            "command": self.thread.command,
            "run_ns": self.run_ns,
            "wait_ns": self.wait_ns,
            "sleep_ns": self.sleep_ns,
            "unknown_ns": self.unknown_ns,
            "post_wakeup_wait_ns": self.post_wakeup_wait_ns,
            "wakeups": self.wakeups,
            "migrations": self.migrations,
            "latency": self.latency.summary(),
            "antagonist_ns": dict(sorted(self.antagonist_ns.items())),
        }


class CpuStatistics(BaseModel):
    """Time-in-state and switch count for one CPU."""

    cpu: int
    idle_ns: int = 0
    running_ns: int = 0
    unknown_ns: int = 0
    switches: int = Field(default=0, description="Changes of occupant attributed to this window")

    model_config = {"frozen": True}

    @property
    def utilization(self) -> float:
        known = self.idle_ns + self.running_ns
        if known == 0:
            return 0.0
        return self.running_ns / known

    def merge(self, other: "CpuStatistics") -> "CpuStatistics":
        if other.cpu != self.cpu:
            raise ValueError(f"can't merge statistics of CPU {self.cpu} and CPU {other.cpu}")
        return CpuStatistics(
            cpu=self.cpu,
            idle_ns=self.idle_ns + other.idle_ns,
            running_ns=self.running_ns + other.running_ns,
            unknown_ns=self.unknown_ns + other.unknown_ns,
            switches=self.switches + other.switches,
        )

    def summary(self) -> dict:
        return {
            "cpu": self.cpu,
            "idle_ns": self.idle_ns,
            "running_ns": self.running_ns,
            "unknown_ns": self.unknown_ns,
            "switches": self.switches,
            "utilization": round(self.utilization, 4),
        }


class Utilization(BaseModel):
    """Work lost to imbalance: some CPU idle while another has queued threads.

    ``wall_ns`` counts wall time with at least one idle and one overloaded
    CPU; ``per_cpu_ns`` weights it by how many idle CPUs could have been
    paired with an overloaded one, ``per_thread_ns`` by how many idle CPUs
    could have taken a waiting thread.
    """

    wall_ns: int = 0
    per_cpu_ns: int = 0
    per_thread_ns: int = 0
    idle_ns: int = 0
    total_ns: int = 0

    model_config = {"frozen": True}

    @property
    def fraction(self) -> float:
        if self.total_ns == 0:
            return 0.0
        return 1.0 - self.idle_ns / self.total_ns

    def merge(self, other: "Utilization") -> "Utilization":
        return Utilization(
            wall_ns=self.wall_ns + other.wall_ns,
            per_cpu_ns=self.per_cpu_ns + other.per_cpu_ns,
            per_thread_ns=self.per_thread_ns + other.per_thread_ns,
            idle_ns=self.idle_ns + other.idle_ns,
            total_ns=self.total_ns + other.total_ns,
        )

    def summary(self) -> dict:
        return {
            "wall_ns": self.wall_ns,
            "per_cpu_ns": self.per_cpu_ns,
            "per_thread_ns": self.per_thread_ns,
            "cpu_utilization_fraction": round(self.fraction, 4),
        }


class Statistics(BaseModel):
    """Everything ``aggregate`` produces for one window."""

    window: CollectionWindow
    threads: dict[str, ThreadStatistics] = Field(default_factory=dict)
    cpus: dict[int, CpuStatistics] = Field(default_factory=dict)
    utilization: Utilization = Field(default_factory=Utilization)
    diagnostics: list[Diagnostic] = Field(default_factory=list)

    model_config = {"frozen": True}

    def merge(self, other: "Statistics") -> "Statistics":
        """Combine the statistics of two adjacent windows."""
        if other.window.start_ns != self.window.end_ns and self.window.start_ns != other.window.end_ns:
            raise ValueError("can only merge statistics of adjacent windows")
        threads = dict(self.threads)
        for key, stats in other.threads.items():
            threads[key] = threads[key].merge(stats) if key in threads else stats
        cpus = dict(self.cpus)
        for cpu, stats in other.cpus.items():
            cpus[cpu] = cpus[cpu].merge(stats) if cpu in cpus else stats
        return Statistics(
            window=CollectionWindow(
                start_ns=min(self.window.start_ns, other.window.start_ns),
                end_ns=max(self.window.end_ns, other.window.end_ns),
            ),
            threads=threads,
            cpus=cpus,
            utilization=self.utilization.merge(other.utilization),
            diagnostics=self.diagnostics,
        )

    def summary(self) -> dict:
        return {
            "window": {"start_ns": self.window.start_ns, "end_ns": self.window.end_ns},
            "threads": [s.summary() for _, s in sorted(self.threads.items(), key=lambda kv: kv[1].thread.key)],
            "cpus": [s.summary() for _, s in sorted(self.cpus.items())],
            "utilization": self.utilization.summary(),
            "diagnostic_count": len(self.diagnostics),
        }


class Antagonism(BaseModel):
    """One span during which *antagonist* ran where *victim* was queued."""

    victim: ThreadIdentity
    antagonist: ThreadIdentity
    cpu: int
    start_ns: int
    end_ns: int

    model_config = {"frozen": True}


class Antagonists(BaseModel):
    """Antagonist analysis result for a single victim thread."""

    victims: list[ThreadIdentity] = Field(default_factory=list)
    antagonisms: list[Antagonism] = Field(default_factory=list)
    window: CollectionWindow

    model_config = {"frozen": True}
