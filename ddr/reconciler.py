from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from threading import Event, Thread
from typing import Callable

from . import events as ev
from .alerts import workload_alert
from .errors import BudgetExceededError, InvariantViolation, NoMatchingVolume, SpecConflictError, TransientInfraError
from .events import EventSink
from .executor import ClusterExecutor
from .health import ExecutorProber, HealthEvaluator, Prober
from .models import ClaimState, DesiredSpec, HealthState, ObservedReplica, ProbeType, ReplicaTemplate
from .rollouts import RolloutController, validate_spec
from .settings import settings
from .store import DesiredSnapshot, DesiredState, ResourceStore
from .volumes import VolumeBinder


class Backoff:
    """Bounded exponential backoff per key: base * 2**(n-1), capped."""

    def __init__(self, base_s: float, max_s: float, clock: Callable[[], float] = time.monotonic):
        self.base_s = max(0.0, float(base_s))
        self.max_s = max(self.base_s, float(max_s))
        self.clock = clock
        self._attempts: dict[str, int] = {}
        self._due: dict[str, float] = {}

    def ready(self, key: str) -> bool:
        return self.clock() >= self._due.get(key, 0.0)

    def failed(self, key: str) -> float:
        n = self._attempts.get(key, 0) + 1
        self._attempts[key] = n
        delay = min(self.max_s, self.base_s * (2 ** (n - 1)))
        self._due[key] = self.clock() + delay
        return delay

    def attempts(self, key: str) -> int:
        return self._attempts.get(key, 0)

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)
        self._due.pop(key, None)


@dataclass
class PassReport:
    workloads: int = 0
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class Reconciler:
    """Continuously reconciles desired state with observed state.

    One pass: sync replicas from the executor, apply probe results, resolve
    storage, step every workload's rollout, tear down deleted workloads,
    dispatch probes and recompute service endpoints. A failing workload is
    recorded in its status and never stops the others.
    """

    def __init__(
        self,
        desired: DesiredState,
        executor: ClusterExecutor,
        prober: Prober | None = None,
        store: ResourceStore | None = None,
        events: EventSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval_s: float | None = None,
        probe_workers: int | None = None,
    ):
        self.desired = desired
        self.executor = executor
        self.store = store or ResourceStore()
        self.events = events or EventSink()
        self.clock = clock
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.poll_interval_s
        self.health = HealthEvaluator(
            self.store, prober or ExecutorProber(executor), self.events, max_workers=probe_workers, clock=clock
        )
        self.binder = VolumeBinder(self.store, self.events)
        self.rollouts = RolloutController(self.store, executor, self.health, self.events, clock=clock)
        self.backoff = Backoff(settings.backoff_base_s, settings.backoff_max_s, clock=clock)
        self.halted: str | None = None
        self._reported: dict[str, str] = {}
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="ddr-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self.stop()
        if self._thr and self._thr.is_alive():
            self._thr.join(timeout=max(1.0, self.poll_interval_s * 2))
        self.health.shutdown()

    def _loop(self) -> None:
        self.events.emit(ev.LOOP, "Reconciler started")
        while not self._stop.is_set():
            try:
                self.run_pass()
            except InvariantViolation:
                break
            except Exception as e:
                self.events.emit(ev.LOOP, f"Reconciler pass failed: {type(e).__name__}: {e}", level="ERROR")
            self._stop.wait(max(0.05, self.poll_interval_s))
        self.events.emit(ev.LOOP, "Reconciler stopped", level="WARN" if self.halted else "INFO")

    def run_pass(self) -> PassReport:
        report = PassReport()
        if self.halted:
            return report

        snap = self.desired.snapshot()
        try:
            if not self._observe(snap):
                report.errors["*"] = "observe failed"
                return report
            self._apply_probe_results()
            self._sync_storage(snap)
            self.binder.check_invariants()
            for name in sorted(snap.specs):
                if not self.backoff.ready(name):
                    report.skipped.append(name)
                    continue
                report.workloads += 1
                err = self._reconcile_workload(snap.specs[name], snap)
                if err:
                    report.errors[name] = err
            self._reap_deleted(snap)
            self.health.dispatch()
            self._rebuild_endpoints(snap)
        except InvariantViolation as e:
            self._halt(str(e))
            raise
        return report

    # observed state

    def _observe(self, snap: DesiredSnapshot) -> bool:
        try:
            listed = {info.id: info for info in self.executor.list_replicas()}
        except TransientInfraError as e:
            self._report_once("*observe", ev.TRANSIENT_ERROR, f"Cannot list replicas: {e}", None, "ERROR")
            return False
        self._reported.pop("*observe", None)

        for replica in list(self.store.replicas.values()):
            if replica.id in listed:
                continue
            self.store.remove_replica(replica.id)
            self.health.forget(replica.id)
            if replica.terminating:
                self.events.emit(ev.REPLICA_GONE, f"{replica.id} is gone", workload=replica.workload, replica=replica.id)
                continue
            st = self.store.status(replica.workload)
            st.restarts += 1
            self.store.touch_status(st)
            self.events.emit(
                ev.REPLICA_GONE,
                f"{replica.id} disappeared without being terminated",
                workload=replica.workload,
                level="WARN",
                replica=replica.id,
            )

        now = self.clock()
        for info in listed.values():
            if info.id in self.store.replicas or not info.workload:
                continue
            replica = ObservedReplica(id=info.id, workload=info.workload, revision=info.revision, created_at=now)
            self.store.add_replica(replica)
            spec = snap.specs.get(info.workload)
            if spec is not None:
                self.health.track(replica, spec)
            self.events.emit(ev.REPLICA_ADOPTED, f"Adopted running replica {info.id}", workload=info.workload, replica=info.id)
        return True

    def _apply_probe_results(self) -> None:
        for t in self.health.drain():
            if t.probe_type != ProbeType.LIVENESS or t.new != HealthState.UNHEALTHY:
                continue
            try:
                self.rollouts.replace(t.replica_id, "liveness probe failed")
            except TransientInfraError as e:
                delay = self.backoff.failed(t.workload)
                self.events.emit(
                    ev.TRANSIENT_ERROR,
                    f"Could not replace {t.replica_id}: {e}; retry in {delay:.1f}s",
                    workload=t.workload,
                    level="WARN",
                )

    # storage

    def _sync_storage(self, snap: DesiredSnapshot) -> None:
        for name, vol in snap.volumes.items():
            if name not in self.store.volumes:
                self.store.put_volume(replace(vol))
                self.events.emit(
                    ev.VOLUME_DECLARED,
                    f"Volume '{name}' ({vol.capacity} bytes, {vol.access_mode.value}) available",
                    volume=name,
                )

        for name, claim in snap.claims.items():
            if name not in self.store.claims:
                self.store.put_claim(replace(claim, state=ClaimState.PENDING, volume=None))

        for name in [c for c in self.store.claims if c not in snap.claims]:
            users = self._claim_users(name)
            if users:
                self._report_once(
                    f"*claim:{name}",
                    ev.CLAIM_RELEASE_DEFERRED,
                    f"Claim '{name}' deleted but still mounted by {', '.join(sorted(users))}",
                    None,
                    "WARN",
                )
                continue
            self._reported.pop(f"*claim:{name}", None)
            self.binder.release(name)

        for name, claim in list(self.store.claims.items()):
            if claim.state == ClaimState.BOUND or name not in snap.claims:
                continue
            try:
                self.binder.bind(name)
                self._reported.pop(f"*bind:{name}", None)
            except NoMatchingVolume as e:
                self._report_once(f"*bind:{name}", ev.BINDING_FAILED, str(e), None, "WARN")

    def _claim_users(self, claim_name: str) -> set[str]:
        users: set[str] = set()
        for replica in self.store.replicas.values():
            spec = self.store.specs.get(replica.workload)
            if spec is not None and spec.storage is not None and spec.storage.claim == claim_name:
                users.add(replica.id)
        return users

    # workloads

    def _reconcile_workload(self, spec: DesiredSpec, snap: DesiredSnapshot) -> str | None:
        name = spec.name
        st = self.store.status(name)
        try:
            template = self._template(spec, snap)
            self.store.set_spec(spec)
            self.rollouts.step(spec, template)
            self.backoff.reset(name)
            self._reported.pop(name, None)
            return None
        except SpecConflictError as e:
            st.condition = "Conflict"
            st.last_error = str(e)
            st.message = str(e)
            self.store.touch_status(st)
            self._report_once(name, ev.SPEC_CONFLICT, str(e), name, "WARN")
            return str(e)
        except TransientInfraError as e:
            return self._transient(name, str(e))
        except BudgetExceededError as e:
            self.rollouts.fail(name, str(e))
            if self._report_once(name, ev.WORKLOAD_FAILED, str(e), name, "ERROR"):
                workload_alert(name, "Failed", str(e))
            return str(e)
        except InvariantViolation:
            raise
        except Exception as e:
            # Unexpected errors are retried like infrastructure hiccups.
            return self._transient(name, f"{type(e).__name__}: {e}")

    def _transient(self, name: str, message: str) -> str:
        delay = self.backoff.failed(name)
        st = self.store.status(name)
        st.last_error = message
        st.message = f"Retrying in {delay:.1f}s (attempt {self.backoff.attempts(name)})"
        self.store.touch_status(st)
        self.events.emit(
            ev.TRANSIENT_ERROR,
            f"{message}; retry in {delay:.1f}s",
            workload=name,
            level="WARN",
            attempt=self.backoff.attempts(name),
            delay_s=delay,
        )
        return message

    def _template(self, spec: DesiredSpec, snap: DesiredSnapshot) -> ReplicaTemplate:
        volume = None
        if spec.storage is not None:
            claim = self.store.claims.get(spec.storage.claim)
            if claim is None:
                raise SpecConflictError(f"Claim '{spec.storage.claim}' is not declared", spec.name)
            volume = self.binder.volume_for(claim.name)
            if volume is None:
                raise SpecConflictError(f"Waiting for claim '{claim.name}' to bind", spec.name)
        validate_spec(spec, volume)

        secrets: dict[str, bytes] = {}
        for env_name, secret_name in spec.secret_env.items():
            if secret_name not in snap.secrets:
                raise SpecConflictError(f"Secret '{secret_name}' not found", spec.name)
            secrets[env_name] = snap.secrets[secret_name]

        return ReplicaTemplate(
            workload=spec.name,
            revision=spec.revision,
            image=spec.image,
            port=spec.port,
            env=dict(spec.env),
            secrets=secrets,
            command=spec.command,
            resources=spec.resources,
            volume=replace(volume) if volume else None,
            mount_path=spec.storage.mount_path if spec.storage else None,
            read_only=spec.storage.read_only if spec.storage else False,
        )

    def _reap_deleted(self, snap: DesiredSnapshot) -> None:
        gone = (set(self.store.statuses) | self.store.workloads_with_replicas()) - set(snap.specs)
        for name in sorted(gone):
            self.backoff.reset(name)
            self._reported.pop(name, None)
            st = self.store.status(name)
            if st.condition != "Deleting":
                st.condition = "Deleting"
                st.message = "Workload deleted; terminating replicas"
                self.store.touch_status(st)
                self.events.emit(ev.WORKLOAD_DELETED, "Workload deleted; cancelling probes and terminating replicas", workload=name)
            try:
                done = self.rollouts.teardown(name)
            except TransientInfraError as e:
                self.events.emit(ev.TRANSIENT_ERROR, f"Teardown incomplete: {e}", workload=name, level="WARN")
                continue
            if done:
                self.store.drop_status(name)
                self.store.drop_spec(name)

    def _rebuild_endpoints(self, snap: DesiredSnapshot) -> None:
        services: dict[str, set[str]] = {}
        for name in snap.specs:
            spec = self.store.specs.get(name)
            if spec is None:
                continue
            ready = {r.id for r in self.store.replicas_for(name) if r.ready}
            services.setdefault(spec.service_name, set()).update(ready)

        for service, ids in services.items():
            if self.store.set_endpoints(service, ids):
                self.events.emit(
                    ev.ENDPOINTS_CHANGED,
                    f"Service '{service}' endpoints: {len(ids)} ready",
                    service=service,
                    endpoints=sorted(ids),
                )
        for service in [s for s in self.store.endpoints if s not in services]:
            self.store.drop_endpoints(service)
            self.events.emit(ev.ENDPOINTS_CHANGED, f"Service '{service}' removed", service=service, endpoints=[])

    # reporting

    def _report_once(self, key: str, kind: str, message: str, workload: str | None, level: str) -> bool:
        """Emit an event unless the same message was already reported for key."""
        if self._reported.get(key) == message:
            return False
        self._reported[key] = message
        self.events.emit(kind, message, workload=workload, level=level)
        return True

    def _halt(self, reason: str) -> None:
        self.halted = reason
        self._stop.set()
        self.events.emit(ev.INVARIANT_VIOLATION, f"Reconciliation halted: {reason}", level="CRITICAL")
        workload_alert("*", "Halted", reason)
