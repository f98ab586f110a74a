from __future__ import annotations

import base64
import binascii
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .executor import validate_health_path, validate_name
from .models import (
    AccessMode,
    Claim,
    DesiredSpec,
    ProbeKind,
    ProbeSpec,
    ReclaimPolicy,
    Resources,
    StorageRequirement,
    StrategyType,
    UpdateStrategy,
    Volume,
    parse_quantity,
)


class ProbeModel(BaseModel):
    kind: Literal["exec", "http"] = "http"
    command: list[str] = Field(default_factory=list, description="exec probes: command run inside the replica")
    path: str = Field("/health", description="http probes: request path")
    port: int | None = Field(None, ge=1, le=65535, description="Defaults to the workload port")
    period_s: float = Field(10.0, ge=0)
    timeout_s: float = Field(1.0, gt=0)
    initial_delay_s: float = Field(0.0, ge=0)
    failure_threshold: int = Field(3, ge=1)
    success_threshold: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _check_transport(self) -> "ProbeModel":
        if self.kind == "exec" and not self.command:
            raise ValueError("exec probes need a command")
        if self.kind == "http":
            validate_health_path(self.path)
        return self

    def to_probe(self) -> ProbeSpec:
        return ProbeSpec(
            kind=ProbeKind(self.kind),
            command=tuple(self.command),
            path=self.path,
            port=self.port,
            period_s=self.period_s,
            timeout_s=self.timeout_s,
            initial_delay_s=self.initial_delay_s,
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
        )


class ResourcesModel(BaseModel):
    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None


class StorageModel(BaseModel):
    claim: str
    mount_path: str = Field(..., description="Absolute path inside the replica")
    read_only: bool = False


class StrategyModel(BaseModel):
    type: Literal["Recreate", "RollingUpdate"] = "RollingUpdate"
    max_surge: int = Field(1, ge=0)
    max_unavailable: int = Field(0, ge=0)


class WorkloadRequest(BaseModel):
    image: str = Field(..., description="Container image (name:tag)")
    replicas: int = Field(1, ge=0, le=100)
    port: int = Field(80, ge=1, le=65535, description="Port the replica listens on")
    env: dict[str, str] = Field(default_factory=dict)
    secret_env: dict[str, str] = Field(default_factory=dict, description="env var -> secret name")
    command: list[str] = Field(default_factory=list)
    resources: ResourcesModel = Field(default_factory=ResourcesModel)
    liveness: ProbeModel | None = None
    readiness: ProbeModel | None = None
    storage: StorageModel | None = None
    strategy: StrategyModel = Field(default_factory=StrategyModel)
    service: str | None = Field(None, description="Service identity; defaults to the workload name")
    labels: dict[str, str] = Field(default_factory=dict)
    startup_budget_s: float = Field(120.0, gt=0)
    max_startup_failures: int = Field(3, ge=1)
    progress_deadline_s: float = Field(600.0, gt=0)

    def to_spec(self, name: str) -> DesiredSpec:
        validate_name(name)
        return DesiredSpec(
            name=name,
            image=self.image,
            replicas=self.replicas,
            port=self.port,
            env=dict(self.env),
            secret_env=dict(self.secret_env),
            command=tuple(self.command),
            resources=Resources(**self.resources.model_dump()),
            liveness=self.liveness.to_probe() if self.liveness else None,
            readiness=self.readiness.to_probe() if self.readiness else None,
            storage=StorageRequirement(**self.storage.model_dump()) if self.storage else None,
            strategy=UpdateStrategy(
                type=StrategyType(self.strategy.type),
                max_surge=self.strategy.max_surge,
                max_unavailable=self.strategy.max_unavailable,
            ),
            service=self.service,
            labels=dict(self.labels),
            startup_budget_s=self.startup_budget_s,
            max_startup_failures=self.max_startup_failures,
            progress_deadline_s=self.progress_deadline_s,
        )


class _CapacityModel(BaseModel):
    @field_validator("capacity", check_fields=False)
    @classmethod
    def _parse_capacity(cls, v: int | str) -> int:
        return parse_quantity(v)


class VolumeRequest(_CapacityModel):
    name: str
    capacity: int | str = Field(..., description="e.g. 20Gi")
    access_mode: Literal["ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany"] = "ReadWriteOnce"
    reclaim_policy: Literal["Retain", "Delete"] = "Retain"
    labels: dict[str, str] = Field(default_factory=dict)
    host_path: str | None = None

    def to_volume(self) -> Volume:
        return Volume(
            name=self.name,
            capacity=int(self.capacity),
            access_mode=AccessMode(self.access_mode),
            reclaim_policy=ReclaimPolicy(self.reclaim_policy),
            labels=dict(self.labels),
            host_path=self.host_path,
        )


class ClaimRequest(_CapacityModel):
    name: str
    capacity: int | str = Field(..., description="e.g. 5Gi")
    access_mode: Literal["ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany"] = "ReadWriteOnce"
    selector: dict[str, str] = Field(default_factory=dict, description="Labels the volume must carry")

    def to_claim(self) -> Claim:
        return Claim(
            name=self.name,
            capacity=int(self.capacity),
            access_mode=AccessMode(self.access_mode),
            selector=dict(self.selector),
        )


class SecretRequest(BaseModel):
    data: str = Field(..., description="base64-encoded secret bytes")

    def decoded(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Secret data is not valid base64: {e}") from e
