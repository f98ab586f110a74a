from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any

from . import db
from .models import utc_now
from .settings import settings

logger = logging.getLogger("ddr")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Event kinds
BINDING_SUCCEEDED = "BindingSucceeded"
BINDING_FAILED = "BindingFailed"
VOLUME_DECLARED = "VolumeDeclared"
CLAIM_RELEASED = "ClaimReleased"
CLAIM_RELEASE_DEFERRED = "ClaimReleaseDeferred"
ROLLOUT_PHASE = "RolloutPhase"
REPLICA_CREATED = "ReplicaCreated"
REPLICA_TERMINATING = "ReplicaTerminating"
REPLICA_GONE = "ReplicaGone"
REPLICA_ADOPTED = "ReplicaAdopted"
STARTUP_TIMEOUT = "StartupTimeout"
PROBE_FLIP = "ProbeStateChanged"
ENDPOINTS_CHANGED = "EndpointsChanged"
SPEC_CONFLICT = "SpecConflict"
TRANSIENT_ERROR = "TransientError"
WORKLOAD_FAILED = "WorkloadFailed"
WORKLOAD_DELETED = "WorkloadDeleted"
INVARIANT_VIOLATION = "InvariantViolation"
LOOP = "Loop"


@dataclass(frozen=True)
class Event:
    ts: str
    level: str
    kind: str
    message: str
    workload: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink:
    """Structured event consumer.

    Keeps a bounded ring of recent events in memory, mirrors them to the
    ``ddr`` logger and, when ``persist`` is set, appends them to the SQLite
    ``events`` table.
    """

    def __init__(self, persist: bool = True, db_path: str | None = None, buffer: int | None = None):
        self.persist = persist
        self.db_path = db_path
        self._lock = Lock()
        self._events: deque[Event] = deque(maxlen=max(1, buffer or settings.event_buffer))
        if self.persist:
            db.init_db(self.db_path)

    def emit(self, kind: str, message: str, workload: str | None = None, level: str = "INFO", **data: Any) -> Event:
        ev = Event(ts=utc_now(), level=level.upper(), kind=kind, message=message, workload=workload, data=data)
        with self._lock:
            self._events.append(ev)
        logger.log(_LEVELS.get(ev.level, logging.INFO), "[%s] %s%s", kind, f"{workload}: " if workload else "", message)
        if self.persist:
            db.log_event(ev.level, kind, message, workload=workload, data=data, db_path=self.db_path, ts=ev.ts)
        return ev

    def recent(self, limit: int = 100, workload: str | None = None, kind: str | None = None) -> list[Event]:
        with self._lock:
            items = list(self._events)
        if workload:
            items = [e for e in items if e.workload == workload]
        if kind:
            items = [e for e in items if e.kind == kind]
        return list(reversed(items))[:limit]

    def history(self, limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
        """Newest events first, read back from SQLite so they survive restarts.

        Falls back to the in-memory ring when events are not persisted.
        """
        if self.persist:
            return db.latest_events(limit=limit, workload=workload, db_path=self.db_path)
        return [asdict(e) for e in self.recent(limit=limit, workload=workload)]

    def kinds(self) -> list[str]:
        """Event kinds in emission order (oldest first)."""
        with self._lock:
            return [e.kind for e in self._events]
