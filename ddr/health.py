from __future__ import annotations

import queue
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, replace
from typing import Callable, Protocol

import httpx

from . import events as ev
from .events import EventSink
from .executor import ClusterExecutor
from .models import DesiredSpec, HealthState, ObservedReplica, ProbeKind, ProbeSpec, ProbeType
from .settings import settings
from .store import ResourceStore


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """HTTP GET probe. Only a 200 answer counts as healthy; redirects are not followed.

    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "HTTP 200", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class Prober(Protocol):
    def probe(self, replica: ObservedReplica, probe_type: ProbeType, spec: ProbeSpec, timeout_s: float) -> bool: ...


class ExecutorProber:
    """Runs HTTP probes over the executor's network and exec probes inside the replica."""

    def __init__(self, executor: ClusterExecutor):
        self.executor = executor

    def probe(self, replica: ObservedReplica, probe_type: ProbeType, spec: ProbeSpec, timeout_s: float) -> bool:
        if spec.kind == ProbeKind.HTTP:
            url = f"{self.executor.http_base(replica.id, spec.port or 80)}{spec.path}"
            ok, _msg, _latency = check_health(url, timeout_s=timeout_s)
            return ok
        return self.executor.exec(replica.id, spec.command, timeout_s) == 0


@dataclass(frozen=True)
class ProbeResult:
    replica_id: str
    probe_type: ProbeType
    seq: int
    ok: bool
    detail: str = ""


@dataclass(frozen=True)
class HealthTransition:
    replica_id: str
    workload: str
    probe_type: ProbeType
    old: HealthState
    new: HealthState


class ProbeStateMachine:
    """Unknown -> Healthy | Unhealthy, flipping only on consecutive results."""

    def __init__(self, failure_threshold: int = 3, success_threshold: int = 1):
        self.failure_threshold = max(1, int(failure_threshold))
        self.success_threshold = max(1, int(success_threshold))
        self.state = HealthState.UNKNOWN
        self.successes = 0
        self.failures = 0
        self.last_seq = 0

    def record(self, ok: bool, seq: int) -> HealthState | None:
        """Feed one result. Returns the new state if it flipped."""
        self.last_seq = seq
        if ok:
            self.successes += 1
            self.failures = 0
        else:
            self.failures += 1
            self.successes = 0

        old = self.state
        if ok and self.state != HealthState.HEALTHY and self.successes >= self.success_threshold:
            self.state = HealthState.HEALTHY
        elif not ok and self.state != HealthState.UNHEALTHY and self.failures >= self.failure_threshold:
            self.state = HealthState.UNHEALTHY
        return self.state if self.state != old else None


_Key = tuple[str, ProbeType]


class HealthEvaluator:
    """Probes replicas concurrently and folds results back into the store.

    Probe attempts run on a thread pool. Their results travel through a
    thread-safe queue and are applied by the control loop in ``drain``; each
    result carries a per-(replica, probe) sequence number and anything older
    than what was already applied is dropped.
    """

    def __init__(
        self,
        store: ResourceStore,
        prober: Prober,
        events: EventSink,
        max_workers: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.prober = prober
        self.events = events
        self.clock = clock
        self.results: queue.Queue[ProbeResult] = queue.Queue()
        self._pool = ThreadPoolExecutor(max_workers=max_workers or settings.probe_workers, thread_name_prefix="ddr-probe")
        self._machines: dict[_Key, ProbeStateMachine] = {}
        self._specs: dict[_Key, ProbeSpec] = {}
        self._seq: dict[_Key, int] = {}
        self._inflight: dict[_Key, tuple[Future, float, int]] = {}
        self._last_run: dict[_Key, float] = {}

    def track(self, replica: ObservedReplica, spec: DesiredSpec) -> None:
        """Start probing a new replica. Missing probes count as passing."""
        now = self.clock()
        for probe_type, probe in ((ProbeType.LIVENESS, spec.liveness), (ProbeType.READINESS, spec.readiness)):
            if probe is None:
                self._set_state(replica, probe_type, HealthState.HEALTHY, now)
                continue
            key = (replica.id, probe_type)
            self._machines[key] = ProbeStateMachine(probe.failure_threshold, probe.success_threshold)
            self._specs[key] = replace(probe, port=probe.port or spec.port)

    def forget(self, replica_id: str) -> None:
        """Cancel outstanding probes of a replica; late results are ignored."""
        for key in [k for k in self._machines if k[0] == replica_id]:
            inflight = self._inflight.pop(key, None)
            if inflight is not None:
                inflight[0].cancel()
            self._machines.pop(key, None)
            self._specs.pop(key, None)
            self._seq.pop(key, None)
            self._last_run.pop(key, None)

    def cancel_workload(self, workload: str) -> None:
        for replica in self.store.replicas_for(workload):
            self.forget(replica.id)

    def dispatch(self) -> int:
        """Submit every probe that is due. Returns how many were started."""
        now = self.clock()
        started = 0
        for key, probe in list(self._specs.items()):
            replica = self.store.replicas.get(key[0])
            if replica is None or replica.terminating:
                continue

            inflight = self._inflight.get(key)
            if inflight is not None:
                fut, started_at, seq = inflight
                if not fut.done():
                    if now - started_at <= probe.timeout_s:
                        continue
                    # Overran its timeout: record a failure now; the late result will be stale.
                    fut.cancel()
                    self.results.put(
                        ProbeResult(key[0], key[1], self._next_seq(key), False, f"probe timed out after {probe.timeout_s}s")
                    )
                self._inflight.pop(key, None)

            if now < replica.created_at + probe.initial_delay_s:
                continue
            last = self._last_run.get(key)
            if last is not None and now - last < probe.period_s:
                continue

            seq = self._next_seq(key)
            self._last_run[key] = now
            fut = self._pool.submit(self._run, replica.id, key[1], replace(replica), probe, seq)
            self._inflight[key] = (fut, now, seq)
            started += 1
        return started

    def _next_seq(self, key: _Key) -> int:
        self._seq[key] = self._seq.get(key, 0) + 1
        return self._seq[key]

    def _run(self, replica_id: str, probe_type: ProbeType, replica: ObservedReplica, probe: ProbeSpec, seq: int) -> None:
        start = time.monotonic()
        try:
            ok = bool(self.prober.probe(replica, probe_type, probe, probe.timeout_s))
            detail = "ok" if ok else "probe failed"
        except Exception as e:
            ok, detail = False, f"{type(e).__name__}: {e}"
        elapsed = time.monotonic() - start
        if ok and elapsed > probe.timeout_s:
            ok, detail = False, f"probe took {elapsed:.2f}s (timeout {probe.timeout_s}s)"
        self.results.put(ProbeResult(replica_id, probe_type, seq, ok, detail))

    def settle(self, timeout: float | None = 5.0) -> None:
        """Block until the probe attempts in flight have finished."""
        futures = [f for f, _, _ in self._inflight.values()]
        if futures:
            wait_futures(futures, timeout=timeout)

    def drain(self) -> list[HealthTransition]:
        """Apply queued results in order. Returns the state flips that happened."""
        transitions: list[HealthTransition] = []
        while True:
            try:
                result = self.results.get_nowait()
            except queue.Empty:
                break
            t = self._apply(result)
            if t is not None:
                transitions.append(t)
        return transitions

    def _apply(self, result: ProbeResult) -> HealthTransition | None:
        key = (result.replica_id, result.probe_type)
        machine = self._machines.get(key)
        if machine is None:
            return None
        if result.seq <= machine.last_seq:
            return None
        inflight = self._inflight.get(key)
        if inflight is not None and inflight[2] <= result.seq:
            self._inflight.pop(key, None)

        replica = self.store.replicas.get(result.replica_id)
        if replica is None or replica.terminating:
            return None

        old = machine.state
        flipped = machine.record(result.ok, result.seq)
        if flipped is None:
            return None

        self._set_state(replica, result.probe_type, flipped, self.clock())
        self.events.emit(
            ev.PROBE_FLIP,
            f"{result.probe_type.value} of {replica.id}: {old.value} -> {flipped.value} ({result.detail})",
            workload=replica.workload,
            level="INFO" if flipped == HealthState.HEALTHY else "WARN",
            replica=replica.id,
            probe=result.probe_type.value,
            old=old.value,
            new=flipped.value,
        )
        return HealthTransition(replica.id, replica.workload, result.probe_type, old, flipped)

    @staticmethod
    def _set_state(replica: ObservedReplica, probe_type: ProbeType, state: HealthState, now: float) -> None:
        if probe_type == ProbeType.LIVENESS:
            replica.liveness = state
            return
        replica.readiness = state
        if state == HealthState.HEALTHY:
            replica.ready_since = now
            replica.was_ready = True
        else:
            replica.ready_since = None

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
