"""Declarative Deployment Reconciler (DDR).

Single-process control loop that keeps declared workloads running on a
cluster executor:
 - binds storage claims to volumes before admitting stateful workloads
 - rolls workloads forward with Recreate or RollingUpdate strategies
 - probes replicas (liveness / readiness) and self-heals failed ones
 - maintains per-service sets of Ready endpoints

Every state transition is emitted as an event so it can be audited.
"""
