from __future__ import annotations

from threading import Lock

from .executor import ClusterExecutor
from .store import ResourceStore


class NoReadyEndpoints(Exception):
    pass


class RoundRobin:
    def __init__(self) -> None:
        self._lock = Lock()
        self._index: dict[str, int] = {}

    def next_index(self, key: str, n: int) -> int:
        with self._lock:
            if n <= 0:
                return 0
            i = self._index.get(key, 0) % n
            self._index[key] = (i + 1) % n
            return i


def select_endpoint(service: str, store: ResourceStore, rr: RoundRobin) -> str:
    """Pick one Ready replica of a service, round-robin.

    Only members of the service's current endpoint set are eligible, so a
    replica failing readiness stops receiving traffic without being killed.
    """
    members = sorted(store.get_endpoints(service).replicas)
    if not members:
        raise NoReadyEndpoints(f"No ready endpoints for service '{service}'.")
    return members[rr.next_index(f"svc:{service}", len(members))]


def endpoint_url(service: str, store: ResourceStore, rr: RoundRobin, executor: ClusterExecutor) -> tuple[str, str]:
    """Returns (replica_id, base_url) for the next Ready replica of a service."""
    replica_id = select_endpoint(service, store, rr)
    replica = store.replicas.get(replica_id)
    spec = store.specs.get(replica.workload) if replica else None
    port = spec.port if spec else 80
    return replica_id, executor.http_base(replica_id, port)
