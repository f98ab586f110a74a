from __future__ import annotations

import re
import secrets
from typing import Any, Protocol

import docker
from docker.errors import DockerException, NotFound

from .errors import SpecConflictError, TransientInfraError
from .models import ReplicaInfo, ReplicaTemplate, parse_quantity
from .settings import settings

NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

LABEL_MANAGED = "ddr.managed"
LABEL_WORKLOAD = "ddr.workload"
LABEL_REVISION = "ddr.revision"


def validate_name(name: str) -> None:
    if not NAME_RE.match(name):
        raise ValueError(
            "Invalid workload name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed elsewhere.
    if not path.startswith("/"):
        raise ValueError("Probe path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("Probe path must be a simple absolute path (no scheme, no '..').")


class ClusterExecutor(Protocol):
    """What the reconciler needs from whatever actually runs replicas."""

    def create_replica(self, template: ReplicaTemplate) -> ReplicaInfo: ...

    def terminate(self, replica_id: str) -> None: ...

    def list_replicas(self) -> list[ReplicaInfo]: ...

    def exec(self, replica_id: str, command: tuple[str, ...], timeout_s: float) -> int: ...

    def http_base(self, replica_id: str, port: int) -> str: ...


def _nano_cpus(value: str | None) -> int | None:
    if not value:
        return None
    value = value.strip()
    if value.endswith("m"):
        return int(float(value[:-1]) * 1_000_000)
    return int(float(value) * 1_000_000_000)


def _memory_bytes(value: str | None) -> int | None:
    return parse_quantity(value) if value else None


class DockerExecutor:
    """Runs replicas as containers on a local Docker daemon.

    Containers are labeled so they can be re-discovered after restarts.
    Docker's own restart policy stays off: replacement is the reconciler's
    job.
    """

    def __init__(self, network: str | None = None, client: Any = None):
        self.network = network or settings.docker_network
        self._client_obj = client

    def _client(self) -> docker.DockerClient:
        if self._client_obj is None:
            try:
                self._client_obj = docker.from_env()
            except DockerException as e:
                raise TransientInfraError(f"Docker is not available: {e}") from e
        return self._client_obj

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except (DockerException, TransientInfraError):
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
        except DockerException as e:
            raise TransientInfraError(f"Cannot inspect docker network '{self.network}': {e}") from e

    def create_replica(self, template: ReplicaTemplate) -> ReplicaInfo:
        validate_name(template.workload)
        name = f"ddr-{template.workload}-{template.revision[:6]}-{secrets.token_hex(3)}"
        labels = {
            LABEL_MANAGED: "true",
            LABEL_WORKLOAD: template.workload,
            LABEL_REVISION: template.revision,
        }

        environment = dict(template.env)
        for key, blob in template.secrets.items():
            environment[key] = blob.decode("utf-8", errors="replace")

        volumes: dict[str, dict[str, str]] = {}
        if template.volume is not None and template.mount_path:
            source = template.volume.host_path or f"ddr-{template.volume.name}"
            volumes[source] = {"bind": template.mount_path, "mode": "ro" if template.read_only else "rw"}

        try:
            self.ensure_network()
            self._client().containers.run(
                template.image,
                command=list(template.command) or None,
                detach=True,
                name=name,
                environment=environment,
                network=self.network,
                labels=labels,
                volumes=volumes or None,
                mem_limit=_memory_bytes(template.resources.memory_limit),
                mem_reservation=_memory_bytes(template.resources.memory_request),
                nano_cpus=_nano_cpus(template.resources.cpu_limit),
                restart_policy={"Name": "no"},
            )
        except ValueError as e:
            raise SpecConflictError(f"Invalid resources for '{template.workload}': {e}", template.workload) from e
        except DockerException as e:
            raise TransientInfraError(f"Failed to start replica for '{template.workload}': {e}", template.workload) from e

        return ReplicaInfo(id=name, workload=template.workload, revision=template.revision)

    def terminate(self, replica_id: str) -> None:
        try:
            self._client().containers.get(replica_id).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise TransientInfraError(f"Failed to remove replica {replica_id}: {e}") from e

    def list_replicas(self) -> list[ReplicaInfo]:
        """Running replicas. Exited containers are removed and not reported."""
        try:
            containers = self._client().containers.list(all=True, filters={"label": [f"{LABEL_MANAGED}=true"]})
        except DockerException as e:
            raise TransientInfraError(f"Failed to list replicas: {e}") from e

        out: list[ReplicaInfo] = []
        for cont in containers:
            if cont.status in {"exited", "dead"}:
                try:
                    cont.remove(force=True)
                except NotFound:
                    pass
                except DockerException as e:
                    raise TransientInfraError(f"Failed to prune exited replica {cont.name}: {e}") from e
                continue
            labels = cont.labels or {}
            out.append(
                ReplicaInfo(
                    id=cont.name,
                    workload=labels.get(LABEL_WORKLOAD, ""),
                    revision=labels.get(LABEL_REVISION, ""),
                )
            )
        return out

    def exec(self, replica_id: str, command: tuple[str, ...], timeout_s: float) -> int:
        # docker exec has no timeout of its own; the health evaluator bounds the wait.
        try:
            result = self._client().containers.get(replica_id).exec_run(list(command))
        except NotFound:
            return 127
        except DockerException as e:
            raise TransientInfraError(f"exec in {replica_id} failed: {e}") from e
        return int(result.exit_code if result.exit_code is not None else 1)

    def http_base(self, replica_id: str, port: int) -> str:
        """HTTP base URL usable from within the same docker network."""
        return f"http://{replica_id}:{int(port)}"
