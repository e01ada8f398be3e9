"""PID-Identity Resolver — splits reused PIDs into logical thread identities.

The kernel recycles PIDs, and nothing in a scheduling trace says "this is a
different thread now".  The resolver keeps, per PID, the current epoch's
last-known command and priority, and asks a SplitPolicy whether a new
observation is better explained by an unrelated thread taking over the PID.

This is a heuristic.  Thread pools that rename their workers can trigger
spurious splits, and a reused PID that keeps the same command is invisible
to it.  The triggers are therefore configurable rather than hard-coded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from schedviz.domain.enums import EventType
from schedviz.domain.events import UNKNOWN_PRIORITY, ThreadDescriptor
from schedviz.domain.intervals import ThreadIdentity, ThreadInfo

logger = logging.getLogger(__name__)


# ── Split policy ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SplitTrigger:
    """Everything a policy may look at when deciding on a split."""

    descriptor: ThreadDescriptor
    event_type: EventType
    timestamp_ns: int
    last_command: str
    last_priority: int
    continuity: bool


@runtime_checkable
class SplitPolicy(Protocol):
    """Decides whether an observation starts a new epoch for its PID."""

    def split_reason(self, trigger: SplitTrigger) -> str | None:
        """Return a human-readable reason to split, or None to keep the epoch."""
        ...


@dataclass(frozen=True)
class SplitPolicyConfig:
    split_on_command_change: bool = True
    split_on_wakeup_new: bool = True
    split_on_priority_change: bool = False


class CommandChangePolicy:
    """Default policy: a command change nothing explains means a new thread.

    Only SWITCH and WAKEUP observations can trigger a split.  Continuity
    (the thread is runnable and so still alive, or its state is unknown)
    suppresses the command and priority triggers.
    """

    _TRIGGER_EVENTS = frozenset({EventType.SWITCH, EventType.WAKEUP, EventType.WAKEUP_NEW})

    def __init__(self, config: SplitPolicyConfig | None = None) -> None:
        self.config = config or SplitPolicyConfig()

    def split_reason(self, trigger: SplitTrigger) -> str | None:
        if trigger.event_type not in self._TRIGGER_EVENTS:
            return None
        desc = trigger.descriptor
        if trigger.event_type == EventType.WAKEUP_NEW and self.config.split_on_wakeup_new:
            return f"fork onto PID {desc.pid}, already in use by '{trigger.last_command}'"
        if trigger.continuity:
            return None
        if self.config.split_on_command_change and desc.command != trigger.last_command:
            return f"command changed from '{trigger.last_command}' to '{desc.command}'"
        if (
            self.config.split_on_priority_change
            and UNKNOWN_PRIORITY not in (desc.priority, trigger.last_priority)
            and desc.priority != trigger.last_priority
        ):
            return f"priority changed from {trigger.last_priority} to {desc.priority}"
        return None


# ── Resolver ─────────────────────────────────────────────────────────────────

@dataclass
class _Epoch:
    identity: ThreadIdentity
    first_seen_ns: int
    last_seen_ns: int
    last_command: str
    last_priority: int
    commands: list[str] = field(default_factory=list)
    priorities: list[int] = field(default_factory=list)

    def record(self, desc: ThreadDescriptor, timestamp_ns: int) -> None:
        self.last_seen_ns = max(self.last_seen_ns, timestamp_ns)
        self.last_command = desc.command
        if desc.command not in self.commands:
            self.commands.append(desc.command)
        if desc.priority != UNKNOWN_PRIORITY:
            self.last_priority = desc.priority
            if desc.priority not in self.priorities:
                self.priorities.append(desc.priority)

    def info(self) -> ThreadInfo:
        return ThreadInfo(
            identity=self.identity,
            commands=list(self.commands),
            priorities=list(self.priorities),
            first_seen_ns=self.first_seen_ns,
            last_seen_ns=self.last_seen_ns,
        )


class PidIdentityResolver:
    """Owns the PID → ThreadIdentity mapping for one inference pass.

    Identities are created lazily on first sighting.  Once the pass ends the
    resolver is discarded, so epochs are frozen with it.
    """

    def __init__(self, policy: SplitPolicy | None = None) -> None:
        self._policy = policy or CommandChangePolicy()
        self._current: dict[int, _Epoch] = {}
        self._epochs: list[_Epoch] = []

    def current(self, pid: int) -> ThreadIdentity | None:
        epoch = self._current.get(pid)
        return epoch.identity if epoch else None

    def identify(self, desc: ThreadDescriptor, timestamp_ns: int) -> tuple[ThreadIdentity, bool]:
        """Current identity for *desc*'s PID, creating epoch 0 if unseen.

        Returns the identity and whether it was just created.
        """
        epoch = self._current.get(desc.pid)
        if epoch is not None:
            return epoch.identity, False
        return self._open(desc, timestamp_ns, 0).identity, True

    def observe(self, desc: ThreadDescriptor, timestamp_ns: int, record_command: bool = True) -> None:
        """Note a sighting consistent with the current epoch."""
        epoch = self._current[desc.pid]
        if record_command:
            epoch.record(desc, timestamp_ns)
        else:
            epoch.last_seen_ns = max(epoch.last_seen_ns, timestamp_ns)

    def split_reason(
        self,
        desc: ThreadDescriptor,
        event_type: EventType,
        timestamp_ns: int,
        continuity: bool,
    ) -> str | None:
        """Ask the policy whether *desc* belongs to a new thread."""
        epoch = self._current[desc.pid]
        return self._policy.split_reason(
            SplitTrigger(
                descriptor=desc,
                event_type=event_type,
                timestamp_ns=timestamp_ns,
                last_command=epoch.last_command,
                last_priority=epoch.last_priority,
                continuity=continuity,
            )
        )

    def split(self, desc: ThreadDescriptor, timestamp_ns: int, reason: str) -> ThreadIdentity:
        """Open the next epoch for *desc*'s PID starting at *timestamp_ns*."""
        old = self._current[desc.pid]
        epoch = self._open(desc, timestamp_ns, old.identity.epoch + 1)
        logger.info(
            "PID %d split into epoch %d at %d: %s",
            desc.pid, epoch.identity.epoch, timestamp_ns, reason,
        )
        return epoch.identity

    def threads(self) -> list[ThreadInfo]:
        """Every identity seen so far, ordered by (pid, epoch)."""
        return [e.info() for e in sorted(self._epochs, key=lambda e: e.identity.key)]

    def _open(self, desc: ThreadDescriptor, timestamp_ns: int, epoch_no: int) -> _Epoch:
        epoch = _Epoch(
            identity=ThreadIdentity(pid=desc.pid, epoch=epoch_no, command=desc.command),
            first_seen_ns=timestamp_ns,
            last_seen_ns=timestamp_ns,
            last_command=desc.command,
            last_priority=desc.priority,
        )
        epoch.record(desc, timestamp_ns)
        self._current[desc.pid] = epoch
        self._epochs.append(epoch)
        return epoch
