from __future__ import annotations

import threading

import pytest

from ddr.errors import TransientInfraError
from ddr.events import EventSink
from ddr.models import ProbeKind, ProbeSpec, ProbeType, ReplicaInfo, ReplicaTemplate
from ddr.reconciler import Backoff, Reconciler
from ddr.store import DesiredState, ResourceStore


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor:
    """In-memory cluster: replicas exist from create until terminate.

    With ``lag`` set, a terminated replica stays listed for one more
    ``list_replicas`` call, like a container that takes a while to stop.
    """

    def __init__(self, lag: bool = False) -> None:
        self.lag = lag
        self.running: dict[str, ReplicaInfo] = {}
        self.stopping: dict[str, ReplicaInfo] = {}
        self.templates: dict[str, ReplicaTemplate] = {}
        self.ops: list[tuple[str, str]] = []
        self.fail_create = 0
        self.fail_list = False
        self.exec_codes: dict[str, int] = {}
        # revisions of the same workload still running when each replica was created
        self.coexisting: list[set[str]] = []
        self._n = 0

    def create_replica(self, template: ReplicaTemplate) -> ReplicaInfo:
        if self.fail_create:
            self.fail_create -= 1
            raise TransientInfraError("create timed out", template.workload)
        self.coexisting.append({r.revision for r in self.listed() if r.workload == template.workload})
        self._n += 1
        rid = f"{template.workload}-{self._n}"
        info = ReplicaInfo(id=rid, workload=template.workload, revision=template.revision)
        self.running[rid] = info
        self.templates[rid] = template
        self.ops.append(("create", rid))
        return info

    def terminate(self, replica_id: str) -> None:
        self.ops.append(("terminate", replica_id))
        info = self.running.pop(replica_id, None)
        if self.lag and info is not None:
            self.stopping[replica_id] = info

    def listed(self) -> list[ReplicaInfo]:
        return list(self.running.values()) + list(self.stopping.values())

    def list_replicas(self) -> list[ReplicaInfo]:
        if self.fail_list:
            raise TransientInfraError("list timed out")
        out = self.listed()
        self.stopping.clear()
        return out

    def exec(self, replica_id: str, command: tuple[str, ...], timeout_s: float) -> int:
        return self.exec_codes.get(replica_id, 0)

    def http_base(self, replica_id: str, port: int) -> str:
        return f"http://{replica_id}:{port}"

    def crash(self, replica_id: str) -> None:
        self.running.pop(replica_id, None)

    def count(self, op: str) -> int:
        return sum(1 for o, _ in self.ops if o == op)


class ScriptedProber:
    """Answers probes from a table; unknown replicas get the per-type default."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: dict[tuple[str, ProbeType], bool] = {}
        self.default: dict[ProbeType, bool] = {ProbeType.LIVENESS: True, ProbeType.READINESS: True}
        self.calls = 0

    def set(self, replica_id: str, probe_type: ProbeType, ok: bool) -> None:
        with self._lock:
            self.results[(replica_id, probe_type)] = ok

    def probe(self, replica, probe_type, spec, timeout_s) -> bool:
        with self._lock:
            self.calls += 1
            return self.results.get((replica.id, probe_type), self.default[probe_type])


def http_probe(**kwargs) -> ProbeSpec:
    kwargs.setdefault("period_s", 0)
    kwargs.setdefault("timeout_s", 5)
    return ProbeSpec(kind=ProbeKind.HTTP, **kwargs)


def run_passes(reconciler: Reconciler, n: int = 1) -> None:
    """Run passes, letting each pass's probes finish before the next one."""
    for _ in range(n):
        reconciler.run_pass()
        reconciler.health.settle()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def prober() -> ScriptedProber:
    return ScriptedProber()


@pytest.fixture
def events() -> EventSink:
    return EventSink(persist=False)


@pytest.fixture
def store() -> ResourceStore:
    return ResourceStore()


@pytest.fixture
def desired() -> DesiredState:
    return DesiredState()


@pytest.fixture
def reconciler(desired, executor, prober, events, clock):
    r = Reconciler(desired, executor, prober=prober, events=events, clock=clock, poll_interval_s=0.01, probe_workers=4)
    r.backoff = Backoff(1.0, 8.0, clock=clock)
    yield r
    r.close()
