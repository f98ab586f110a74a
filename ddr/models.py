from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class ProbeKind(str, Enum):
    EXEC = "exec"
    HTTP = "http"


class ProbeType(str, Enum):
    LIVENESS = "liveness"
    READINESS = "readiness"


class HealthState(str, Enum):
    UNKNOWN = "Unknown"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


class StrategyType(str, Enum):
    RECREATE = "Recreate"
    ROLLING_UPDATE = "RollingUpdate"


class AccessMode(str, Enum):
    READ_WRITE_ONCE = "ReadWriteOnce"
    READ_ONLY_MANY = "ReadOnlyMany"
    READ_WRITE_MANY = "ReadWriteMany"


class ReclaimPolicy(str, Enum):
    RETAIN = "Retain"
    DELETE = "Delete"


class VolumeState(str, Enum):
    UNBOUND = "Unbound"
    BOUND = "Bound"
    RELEASED = "Released"


class ClaimState(str, Enum):
    PENDING = "Pending"
    BOUND = "Bound"


class RolloutPhase(str, Enum):
    IDLE = "Idle"
    PROGRESSING = "Progressing"
    SETTLED = "Settled"
    FAILED = "Failed"


_QUANTITY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGTPE]i?|k)?\s*$")
_BINARY = {"Ki": 1, "Mi": 2, "Gi": 3, "Ti": 4, "Pi": 5, "Ei": 6}
_DECIMAL = {"k": 1, "K": 1, "M": 2, "G": 3, "T": 4, "P": 5, "E": 6}


def parse_quantity(value: int | str) -> int:
    """Convert a storage quantity such as ``5Gi`` or ``500M`` to bytes."""
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Negative quantity: {value}")
        return value
    m = _QUANTITY_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid quantity: {value!r}")
    number, suffix = float(m.group(1)), m.group(2)
    if not suffix:
        return int(number)
    if suffix in _BINARY:
        return int(number * 1024 ** _BINARY[suffix])
    return int(number * 1000 ** _DECIMAL[suffix])


@dataclass(frozen=True)
class ProbeSpec:
    kind: ProbeKind
    command: tuple[str, ...] = ()
    path: str = "/health"
    port: int | None = None
    period_s: float = 10.0
    timeout_s: float = 1.0
    initial_delay_s: float = 0.0
    failure_threshold: int = 3
    success_threshold: int = 1


@dataclass(frozen=True)
class Resources:
    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None


@dataclass(frozen=True)
class StorageRequirement:
    claim: str
    mount_path: str
    read_only: bool = False


@dataclass(frozen=True)
class UpdateStrategy:
    type: StrategyType = StrategyType.ROLLING_UPDATE
    max_surge: int = 1
    max_unavailable: int = 0


@dataclass(frozen=True)
class DesiredSpec:
    """Declarative target for one workload.

    Replaced wholesale whenever the declaration changes. ``revision`` only
    covers what a replica runs, so changing ``replicas`` or ``strategy``
    scales the workload instead of rolling it.
    """

    name: str
    image: str
    replicas: int = 1
    port: int = 80
    env: dict[str, str] = field(default_factory=dict)
    secret_env: dict[str, str] = field(default_factory=dict)  # env var -> secret name
    command: tuple[str, ...] = ()
    resources: Resources = field(default_factory=Resources)
    liveness: ProbeSpec | None = None
    readiness: ProbeSpec | None = None
    storage: StorageRequirement | None = None
    strategy: UpdateStrategy = field(default_factory=UpdateStrategy)
    service: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    startup_budget_s: float = 120.0
    max_startup_failures: int = 3
    progress_deadline_s: float = 600.0

    @property
    def service_name(self) -> str:
        return self.service or self.name

    @property
    def revision(self) -> str:
        template: dict[str, Any] = {
            "image": self.image,
            "port": self.port,
            "env": sorted(self.env.items()),
            "secret_env": sorted(self.secret_env.items()),
            "command": list(self.command),
            "resources": asdict(self.resources),
            "liveness": asdict(self.liveness) if self.liveness else None,
            "readiness": asdict(self.readiness) if self.readiness else None,
            "storage": asdict(self.storage) if self.storage else None,
        }
        raw = json.dumps(template, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:10]


@dataclass
class ObservedReplica:
    id: str
    workload: str
    revision: str
    created_at: float
    liveness: HealthState = HealthState.UNKNOWN
    readiness: HealthState = HealthState.UNKNOWN
    terminating: bool = False
    ready_since: float | None = None
    was_ready: bool = False

    @property
    def ready(self) -> bool:
        return not self.terminating and self.readiness == HealthState.HEALTHY


@dataclass
class Volume:
    name: str
    capacity: int
    access_mode: AccessMode
    reclaim_policy: ReclaimPolicy = ReclaimPolicy.RETAIN
    labels: dict[str, str] = field(default_factory=dict)
    host_path: str | None = None
    state: VolumeState = VolumeState.UNBOUND
    claim: str | None = None
    order: int = 0


@dataclass
class Claim:
    name: str
    capacity: int
    access_mode: AccessMode
    selector: dict[str, str] = field(default_factory=dict)
    state: ClaimState = ClaimState.PENDING
    volume: str | None = None


@dataclass(frozen=True)
class ServiceEndpointSet:
    service: str
    replicas: frozenset[str] = frozenset()


@dataclass
class WorkloadStatus:
    name: str
    phase: RolloutPhase = RolloutPhase.IDLE
    condition: str = "Pending"  # Pending|Progressing|Available|Conflict|Failed|Deleting
    revision: str | None = None
    message: str = ""
    last_error: str | None = None
    startup_failures: int = 0
    restarts: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    total_replicas: int = 0
    progress_started: float | None = None
    updated_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class ReplicaTemplate:
    """Everything an executor needs to start one replica."""

    workload: str
    revision: str
    image: str
    port: int
    env: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, bytes] = field(default_factory=dict)  # env var -> opaque secret bytes
    command: tuple[str, ...] = ()
    resources: Resources = field(default_factory=Resources)
    volume: Volume | None = None
    mount_path: str | None = None
    read_only: bool = False


@dataclass(frozen=True)
class ReplicaInfo:
    id: str
    workload: str
    revision: str
