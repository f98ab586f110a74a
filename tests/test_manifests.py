from pathlib import Path

import pytest
from conftest import run_passes

from ddr.manifests import ManifestError, build_manifest, load_documents, load_manifest, parse_set_values, render
from ddr.models import StrategyType, VolumeState

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "mysql-frontend.yaml"
GI = 1024**3


def test_render_is_pure():
    doc = {"kind": "Deployment", "metadata": {"name": "web"}, "spec": {"image": "nginx", "replicas": 1}}
    out = render(doc, {"spec.replicas": 4, "spec.env.MODE": "prod"})

    assert out["spec"]["replicas"] == 4
    assert out["spec"]["env"] == {"MODE": "prod"}
    assert doc["spec"] == {"image": "nginx", "replicas": 1}


def test_parse_set_values():
    assert parse_set_values(["web.spec.replicas=3", "web.spec.image=nginx:1.28", "x.y="]) == {
        "web.spec.replicas": 3,
        "web.spec.image": "nginx:1.28",
        "x.y": "",
    }
    with pytest.raises(ManifestError):
        parse_set_values(["no-equals-sign"])


def test_load_example_manifest_with_override():
    manifest = load_manifest(EXAMPLE, parse_set_values(["frontend.spec.replicas=5"]))

    assert set(manifest.workloads) == {"mysql", "frontend"}
    assert manifest.workloads["frontend"].replicas == 5
    vol = manifest.volumes["mysql-pv"].to_volume()
    assert vol.capacity == 20 * GI
    assert vol.labels == {"type": "local"}
    assert vol.host_path == "/mnt/data"
    assert manifest.claims["mysql-pv-claim"].to_claim().capacity == 5 * GI
    assert manifest.secrets["mysql-pass"].decoded() == b"change-me"

    specs = {s.name: s for s in manifest.specs()}
    assert specs["mysql"].strategy.type == StrategyType.RECREATE
    assert specs["frontend"].service_name == "web"

    calls = manifest.api_calls()
    assert [(m, p) for m, p, _ in calls] == [
        ("POST", "/volumes"),
        ("POST", "/claims"),
        ("PUT", "/secrets/mysql-pass"),
        ("PUT", "/workloads/mysql"),
        ("PUT", "/workloads/frontend"),
    ]


def test_bad_documents_are_rejected():
    with pytest.raises(ManifestError, match="Unknown kind"):
        build_manifest([{"kind": "CronJob", "metadata": {"name": "x"}, "spec": {}}])
    with pytest.raises(ManifestError, match="metadata.name"):
        build_manifest([{"kind": "Deployment", "spec": {"image": "nginx"}}])
    with pytest.raises(ManifestError):
        build_manifest([{"kind": "Deployment", "metadata": {"name": "web"}, "spec": {"image": "nginx", "replicas": -1}}])
    with pytest.raises(ManifestError):
        load_documents("- just\n- a list\n")
    with pytest.raises(ManifestError):
        load_documents("kind: [unclosed")


def test_example_manifest_converges(reconciler, desired, executor, clock):
    load_manifest(EXAMPLE, parse_set_values(["frontend.spec.replicas=5"])).apply_to(desired)

    # mysql probes start after their initial delay
    for _ in range(6):
        run_passes(reconciler)
        clock.advance(31)

    store = reconciler.store
    assert store.volumes["mysql-pv"].state == VolumeState.BOUND
    assert store.get_status("mysql").condition == "Available"
    assert store.get_status("frontend").condition == "Available"
    assert len(store.get_endpoints("web").replicas) == 5
    assert len(store.get_endpoints("mysql").replicas) == 1

    mysql = [t for t in executor.templates.values() if t.workload == "mysql"]
    assert len(mysql) == 1
    assert mysql[0].volume.name == "mysql-pv"
    assert mysql[0].secrets == {"MYSQL_ROOT_PASSWORD": b"change-me"}

    # applying the same file again changes nothing
    load_manifest(EXAMPLE, parse_set_values(["frontend.spec.replicas=5"])).apply_to(desired)
    ops = list(executor.ops)
    run_passes(reconciler, 2)
    assert executor.ops == ops
