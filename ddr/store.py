from __future__ import annotations

from dataclasses import dataclass, replace
from threading import Lock, RLock

from .models import (
    Claim,
    DesiredSpec,
    ObservedReplica,
    ServiceEndpointSet,
    Volume,
    WorkloadStatus,
    utc_now,
)


@dataclass(frozen=True)
class DesiredSnapshot:
    specs: dict[str, DesiredSpec]
    volumes: dict[str, Volume]
    claims: dict[str, Claim]
    secrets: dict[str, bytes]


class DesiredState:
    """Declarations coming from the outside world (API, manifests, tests).

    Writers may live on any thread; the reconciliation loop reads a
    snapshot once per pass and never mutates this object.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._specs: dict[str, DesiredSpec] = {}
        self._volumes: dict[str, Volume] = {}
        self._claims: dict[str, Claim] = {}
        self._secrets: dict[str, bytes] = {}
        self._volume_order = 0

    def apply(self, spec: DesiredSpec) -> None:
        with self._lock:
            self._specs[spec.name] = spec

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._specs.pop(name, None) is not None

    def get(self, name: str) -> DesiredSpec | None:
        with self._lock:
            return self._specs.get(name)

    def declare_volume(self, volume: Volume) -> Volume:
        """Volumes are declared once and never resized."""
        with self._lock:
            if volume.name in self._volumes:
                raise ValueError(f"Volume '{volume.name}' is already declared.")
            self._volume_order += 1
            declared = replace(volume, order=self._volume_order)
            self._volumes[volume.name] = declared
            return declared

    def declare_claim(self, claim: Claim) -> None:
        with self._lock:
            existing = self._claims.get(claim.name)
            if existing is not None and (
                existing.capacity != claim.capacity
                or existing.access_mode != claim.access_mode
                or existing.selector != claim.selector
            ):
                raise ValueError(f"Claim '{claim.name}' already exists with a different request.")
            self._claims[claim.name] = claim

    def delete_claim(self, name: str) -> bool:
        with self._lock:
            return self._claims.pop(name, None) is not None

    def put_secret(self, name: str, data: bytes) -> None:
        with self._lock:
            self._secrets[name] = bytes(data)

    def snapshot(self) -> DesiredSnapshot:
        with self._lock:
            return DesiredSnapshot(
                specs=dict(self._specs),
                volumes={k: replace(v) for k, v in self._volumes.items()},
                claims={k: replace(c) for k, c in self._claims.items()},
                secrets=dict(self._secrets),
            )


class ResourceStore:
    """Authoritative in-memory record of admitted and observed objects.

    Only the reconciliation loop (and the components it drives) mutate the
    store, and only through short critical sections; the lock is never held
    across executor calls. Readers on other threads use the
    ``list_*``/``get_*`` accessors, which return copies.
    """

    def __init__(self) -> None:
        self.lock = RLock()
        self.specs: dict[str, DesiredSpec] = {}
        self.replicas: dict[str, ObservedReplica] = {}
        self.volumes: dict[str, Volume] = {}
        self.claims: dict[str, Claim] = {}
        self.endpoints: dict[str, ServiceEndpointSet] = {}
        self.statuses: dict[str, WorkloadStatus] = {}

    # admitted specs

    def set_spec(self, spec: DesiredSpec) -> None:
        with self.lock:
            self.specs[spec.name] = spec

    def drop_spec(self, name: str) -> None:
        with self.lock:
            self.specs.pop(name, None)

    # replicas

    def replicas_for(self, workload: str) -> list[ObservedReplica]:
        with self.lock:
            out = [r for r in self.replicas.values() if r.workload == workload]
        return sorted(out, key=lambda r: (r.created_at, r.id))

    def add_replica(self, replica: ObservedReplica) -> None:
        with self.lock:
            self.replicas[replica.id] = replica

    def remove_replica(self, replica_id: str) -> ObservedReplica | None:
        with self.lock:
            return self.replicas.pop(replica_id, None)

    def workloads_with_replicas(self) -> set[str]:
        with self.lock:
            return {r.workload for r in self.replicas.values()}

    # status

    def status(self, name: str) -> WorkloadStatus:
        with self.lock:
            st = self.statuses.get(name)
            if st is None:
                st = WorkloadStatus(name=name)
                self.statuses[name] = st
            return st

    def touch_status(self, st: WorkloadStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.statuses[st.name] = st

    def drop_status(self, name: str) -> None:
        with self.lock:
            self.statuses.pop(name, None)

    def get_status(self, name: str) -> WorkloadStatus | None:
        with self.lock:
            st = self.statuses.get(name)
            return replace(st) if st else None

    def list_statuses(self) -> list[WorkloadStatus]:
        with self.lock:
            return [replace(s) for s in sorted(self.statuses.values(), key=lambda s: s.name)]

    # endpoints

    def set_endpoints(self, service: str, replica_ids: set[str] | frozenset[str]) -> bool:
        """Replace the endpoint set of a service. Returns True if membership changed."""
        new = ServiceEndpointSet(service=service, replicas=frozenset(replica_ids))
        with self.lock:
            old = self.endpoints.get(service)
            self.endpoints[service] = new
            return old is None or old.replicas != new.replicas

    def drop_endpoints(self, service: str) -> None:
        with self.lock:
            self.endpoints.pop(service, None)

    def get_endpoints(self, service: str) -> ServiceEndpointSet:
        with self.lock:
            return self.endpoints.get(service) or ServiceEndpointSet(service=service)

    # storage

    def put_volume(self, volume: Volume) -> None:
        with self.lock:
            self.volumes[volume.name] = volume

    def put_claim(self, claim: Claim) -> None:
        with self.lock:
            self.claims[claim.name] = claim

    def list_volumes(self) -> list[Volume]:
        with self.lock:
            return [replace(v) for v in sorted(self.volumes.values(), key=lambda v: v.order)]

    def list_claims(self) -> list[Claim]:
        with self.lock:
            return [replace(c) for c in sorted(self.claims.values(), key=lambda c: c.name)]
