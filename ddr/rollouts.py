from __future__ import annotations

import time
from typing import Callable

from . import events as ev
from .errors import BudgetExceededError, SpecConflictError
from .events import EventSink
from .executor import ClusterExecutor
from .health import HealthEvaluator
from .models import (
    AccessMode,
    DesiredSpec,
    ObservedReplica,
    ReplicaTemplate,
    RolloutPhase,
    StrategyType,
    Volume,
    WorkloadStatus,
)
from .store import ResourceStore


def validate_spec(spec: DesiredSpec, volume: Volume | None = None) -> None:
    """Reject declarations no rollout could satisfy."""
    if spec.replicas < 0:
        raise SpecConflictError("replicas must be >= 0", spec.name)
    strategy = spec.strategy
    if strategy.max_surge < 0 or strategy.max_unavailable < 0:
        raise SpecConflictError("max_surge and max_unavailable must be >= 0", spec.name)
    if strategy.type == StrategyType.ROLLING_UPDATE and strategy.max_surge == 0 and strategy.max_unavailable == 0:
        raise SpecConflictError("max_surge and max_unavailable cannot both be 0", spec.name)
    if volume is not None and volume.access_mode == AccessMode.READ_WRITE_ONCE:
        if strategy.type != StrategyType.RECREATE:
            raise SpecConflictError(
                f"Volume '{volume.name}' is ReadWriteOnce; the Recreate strategy is required", spec.name
            )
        if spec.replicas > 1:
            raise SpecConflictError(
                f"Volume '{volume.name}' is ReadWriteOnce; at most one replica can mount it", spec.name
            )


def _victim_order(replicas: list[ObservedReplica]) -> list[ObservedReplica]:
    # Not-ready first, then newest first.
    return sorted(replicas, key=lambda r: (r.ready, -r.created_at))


class RolloutController:
    """Drives one workload per call from its current replicas towards its spec.

    Phases: Idle -> Progressing -> Settled, and Progressing -> Failed once a
    startup or progress budget is exhausted. A Failed workload is left alone
    until its declaration changes.
    """

    def __init__(
        self,
        store: ResourceStore,
        executor: ClusterExecutor,
        health: HealthEvaluator,
        events: EventSink,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.executor = executor
        self.health = health
        self.events = events
        self.clock = clock
        self._seen: dict[str, DesiredSpec] = {}

    def step(self, spec: DesiredSpec, template: ReplicaTemplate) -> RolloutPhase:
        st = self.store.status(spec.name)
        now = self.clock()

        if self._seen.get(spec.name) != spec:
            if st.revision is not None and st.revision != spec.revision:
                self.events.emit(
                    ev.ROLLOUT_PHASE,
                    f"New revision {spec.revision} (was {st.revision})",
                    workload=spec.name,
                    revision=spec.revision,
                    previous=st.revision,
                )
            self._seen[spec.name] = spec
            st.revision = spec.revision
            st.startup_failures = 0
            st.last_error = None
            # Each declaration gets its own progress deadline.
            st.progress_started = now
            if st.phase in {RolloutPhase.FAILED, RolloutPhase.SETTLED}:
                self._transition(st, RolloutPhase.IDLE, "Declaration changed")

        if st.phase == RolloutPhase.FAILED:
            self._count(spec, st)
            return st.phase

        self._enforce_startup_budget(spec, st, now)

        replicas = self.store.replicas_for(spec.name)
        if spec.strategy.type == StrategyType.RECREATE:
            self._recreate(spec, template, replicas)
        else:
            self._rolling(spec, template, replicas)

        self._count(spec, st)
        if self._settled(spec):
            if st.phase != RolloutPhase.SETTLED:
                self._transition(st, RolloutPhase.SETTLED, f"{spec.replicas} replica(s) of {spec.revision} ready")
            st.condition = "Available"
        else:
            if st.phase != RolloutPhase.PROGRESSING:
                st.progress_started = now
                self._transition(st, RolloutPhase.PROGRESSING, f"Rolling to {spec.revision}")
            elif st.progress_started is not None and now - st.progress_started > spec.progress_deadline_s:
                raise BudgetExceededError(
                    f"Rollout did not settle within {spec.progress_deadline_s}s", spec.name
                )
            st.condition = "Progressing"
        self.store.touch_status(st)
        return st.phase

    def fail(self, name: str, message: str) -> None:
        st = self.store.status(name)
        st.last_error = message
        st.condition = "Failed"
        if st.phase != RolloutPhase.FAILED:
            self._transition(st, RolloutPhase.FAILED, message)
        self.store.touch_status(st)

    def replace(self, replica_id: str, reason: str) -> None:
        """Terminate a replica so the next step starts a fresh one."""
        replica = self.store.replicas.get(replica_id)
        if replica is None or replica.terminating:
            return
        self._terminate(replica, reason)
        st = self.store.status(replica.workload)
        st.restarts += 1
        self.store.touch_status(st)

    def teardown(self, name: str) -> bool:
        """Terminate everything a deleted workload still runs. True once nothing is left."""
        self.health.cancel_workload(name)
        self._seen.pop(name, None)
        replicas = self.store.replicas_for(name)
        for r in replicas:
            if not r.terminating:
                self._terminate(r, "workload deleted")
        return not replicas

    # strategies

    def _recreate(self, spec: DesiredSpec, template: ReplicaTemplate, replicas: list[ObservedReplica]) -> None:
        old = [r for r in replicas if r.revision != spec.revision]
        if old:
            for r in old:
                if not r.terminating:
                    self._terminate(r, f"recreate: replacing revision {r.revision}")
            return

        active = [r for r in replicas if not r.terminating]
        extra = len(active) - spec.replicas
        for r in _victim_order(active)[: max(0, extra)]:
            self._terminate(r, "scale down")

        # Exclusive storage: nothing new starts while a predecessor is still shutting down.
        if any(r.terminating for r in replicas):
            return
        for _ in range(max(0, spec.replicas - len(active))):
            self._create(spec, template)

    def _rolling(self, spec: DesiredSpec, template: ReplicaTemplate, replicas: list[ObservedReplica]) -> None:
        target = spec.replicas
        surge = spec.strategy.max_surge
        unavailable = spec.strategy.max_unavailable

        new_active = [r for r in replicas if r.revision == spec.revision and not r.terminating]
        old_active = [r for r in replicas if r.revision != spec.revision and not r.terminating]
        ready = sum(1 for r in replicas if r.ready)
        new_ready = sum(1 for r in new_active if r.ready)
        any_terminating = any(r.terminating for r in replicas)

        extra = len(new_active) - target
        for r in _victim_order(new_active)[: max(0, extra)]:
            if r.ready:
                ready -= 1
                new_ready -= 1
            self._terminate(r, "scale down")
            new_active.remove(r)

        # Old replicas go only as new ones become ready.
        keep_old = max(0, target - new_ready)
        room = target + surge - len(replicas)
        stalled = (
            room <= 0
            and len(old_active) <= keep_old
            and len(new_active) == new_ready
            and not any_terminating
        )
        if stalled:
            # No surge room and nothing new in flight: give up unavailability budget instead.
            keep_old = max(0, keep_old - unavailable)

        floor = target - unavailable
        remaining = len(old_active)
        for r in _victim_order(old_active):
            if remaining <= keep_old:
                break
            if r.ready and ready - 1 < floor:
                break
            was_ready = r.ready
            self._terminate(r, f"rolling update: replacing revision {r.revision}")
            remaining -= 1
            if was_ready:
                ready -= 1

        total = len(self.store.replicas_for(spec.name))
        room = target + surge - total
        for _ in range(max(0, min(target - len(new_active), room))):
            self._create(spec, template)

    # helpers

    def _enforce_startup_budget(self, spec: DesiredSpec, st: WorkloadStatus, now: float) -> None:
        for r in self.store.replicas_for(spec.name):
            if r.terminating or r.was_ready or r.revision != spec.revision:
                continue
            if now - r.created_at <= spec.startup_budget_s:
                continue
            st.startup_failures += 1
            self.events.emit(
                ev.STARTUP_TIMEOUT,
                f"{r.id} not ready after {spec.startup_budget_s}s "
                f"({st.startup_failures}/{spec.max_startup_failures})",
                workload=spec.name,
                level="WARN",
                replica=r.id,
                failures=st.startup_failures,
            )
            self._terminate(r, "startup budget exceeded")
            if st.startup_failures >= spec.max_startup_failures:
                raise BudgetExceededError(
                    f"{st.startup_failures} replica(s) failed to become ready within {spec.startup_budget_s}s",
                    spec.name,
                )

    def _create(self, spec: DesiredSpec, template: ReplicaTemplate) -> ObservedReplica:
        info = self.executor.create_replica(template)
        replica = ObservedReplica(id=info.id, workload=spec.name, revision=template.revision, created_at=self.clock())
        self.store.add_replica(replica)
        self.health.track(replica, spec)
        self.events.emit(
            ev.REPLICA_CREATED,
            f"Created replica {replica.id} ({template.image})",
            workload=spec.name,
            replica=replica.id,
            revision=template.revision,
        )
        return replica

    def _terminate(self, replica: ObservedReplica, reason: str) -> None:
        self.executor.terminate(replica.id)
        replica.terminating = True
        self.health.forget(replica.id)
        self.events.emit(
            ev.REPLICA_TERMINATING,
            f"Terminating {replica.id}: {reason}",
            workload=replica.workload,
            replica=replica.id,
            revision=replica.revision,
            reason=reason,
        )

    def _settled(self, spec: DesiredSpec) -> bool:
        replicas = self.store.replicas_for(spec.name)
        if len(replicas) != spec.replicas:
            return False
        return all(r.revision == spec.revision and r.ready for r in replicas)

    def _count(self, spec: DesiredSpec, st: WorkloadStatus) -> None:
        replicas = self.store.replicas_for(spec.name)
        st.total_replicas = len(replicas)
        st.ready_replicas = sum(1 for r in replicas if r.ready)
        st.updated_replicas = sum(1 for r in replicas if r.revision == spec.revision and not r.terminating)

    def _transition(self, st: WorkloadStatus, phase: RolloutPhase, message: str) -> None:
        old = st.phase
        st.phase = phase
        st.message = message
        self.events.emit(
            ev.ROLLOUT_PHASE,
            f"{old.value} -> {phase.value}: {message}",
            workload=st.name,
            level="ERROR" if phase == RolloutPhase.FAILED else "INFO",
            old=old.value,
            new=phase.value,
            revision=st.revision,
        )
