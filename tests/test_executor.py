import pytest
from docker.errors import APIError, NotFound

from ddr.errors import TransientInfraError
from ddr.executor import LABEL_REVISION, LABEL_WORKLOAD, DockerExecutor, validate_name
from ddr.models import AccessMode, ReplicaTemplate, Resources, Volume


class FakeContainer:
    def __init__(self, name, status="running", labels=None, exit_code=0):
        self.name = name
        self.status = status
        self.labels = labels or {}
        self.removed = False
        self._exit_code = exit_code

    def remove(self, force=False):
        self.removed = True

    def exec_run(self, cmd):
        return type("ExecResult", (), {"exit_code": self._exit_code, "output": b""})()


class FakeContainers:
    def __init__(self):
        self.by_name = {}
        self.run_calls = []
        self.run_error = None

    def run(self, image, **kwargs):
        if self.run_error:
            raise self.run_error
        self.run_calls.append((image, kwargs))
        c = FakeContainer(kwargs["name"], labels=kwargs["labels"])
        self.by_name[c.name] = c
        return c

    def get(self, name):
        if name not in self.by_name:
            raise NotFound(f"no such container: {name}")
        return self.by_name[name]

    def list(self, all=False, filters=None):
        return list(self.by_name.values())


class FakeNetworks:
    def __init__(self):
        self.created = []

    def get(self, name):
        if name not in self.created:
            raise NotFound(name)

    def create(self, name, driver=None):
        self.created.append(name)


class FakeDocker:
    def __init__(self):
        self.containers = FakeContainers()
        self.networks = FakeNetworks()

    def ping(self):
        return True


def _template(**kw):
    defaults = dict(
        workload="mysql",
        revision="0123456789",
        image="mysql:8.0",
        port=3306,
        env={"A": "1"},
        secrets={"MYSQL_ROOT_PASSWORD": b"change-me"},
        resources=Resources(cpu_limit="500m", memory_limit="1Gi"),
        volume=Volume("mysql-pv", 20 * 1024**3, AccessMode.READ_WRITE_ONCE, host_path="/mnt/data"),
        mount_path="/var/lib/mysql",
    )
    defaults.update(kw)
    return ReplicaTemplate(**defaults)


def test_create_replica_runs_a_labeled_container():
    client = FakeDocker()
    ex = DockerExecutor(network="ddr-test", client=client)

    info = ex.create_replica(_template())

    assert info.workload == "mysql" and info.revision == "0123456789"
    assert info.id.startswith("ddr-mysql-012345-")
    image, kwargs = client.containers.run_calls[0]
    assert image == "mysql:8.0"
    assert kwargs["labels"][LABEL_WORKLOAD] == "mysql"
    assert kwargs["labels"][LABEL_REVISION] == "0123456789"
    assert kwargs["environment"] == {"A": "1", "MYSQL_ROOT_PASSWORD": "change-me"}
    assert kwargs["volumes"] == {"/mnt/data": {"bind": "/var/lib/mysql", "mode": "rw"}}
    assert kwargs["mem_limit"] == 1024**3
    assert kwargs["nano_cpus"] == 500_000_000
    assert kwargs["restart_policy"] == {"Name": "no"}
    assert kwargs["network"] == "ddr-test"
    assert client.networks.created == ["ddr-test"]


def test_docker_errors_are_transient():
    client = FakeDocker()
    client.containers.run_error = APIError("daemon busy")
    ex = DockerExecutor(network="ddr-test", client=client)
    with pytest.raises(TransientInfraError):
        ex.create_replica(_template())


def test_list_prunes_exited_containers():
    client = FakeDocker()
    labels = {LABEL_WORKLOAD: "web", LABEL_REVISION: "abc"}
    client.containers.by_name = {
        "up": FakeContainer("up", labels=labels),
        "dead": FakeContainer("dead", status="exited", labels=labels),
    }
    ex = DockerExecutor(client=client)

    (info,) = ex.list_replicas()

    assert (info.id, info.workload, info.revision) == ("up", "web", "abc")
    assert client.containers.by_name["dead"].removed


def test_exec_and_terminate():
    client = FakeDocker()
    client.containers.by_name = {"c1": FakeContainer("c1", exit_code=1)}
    ex = DockerExecutor(client=client)

    assert ex.exec("c1", ("true",), 1.0) == 1
    assert ex.exec("missing", ("true",), 1.0) == 127
    ex.terminate("c1")
    ex.terminate("missing")
    assert client.containers.by_name["c1"].removed
    assert ex.http_base("c1", 8080) == "http://c1:8080"


@pytest.mark.parametrize("name", ["web", "mysql-0", "a" * 63])
def test_valid_names(name):
    validate_name(name)


@pytest.mark.parametrize("name", ["", "Web", "9lives", "web_1", "a" * 64])
def test_invalid_names(name):
    with pytest.raises(ValueError):
        validate_name(name)
