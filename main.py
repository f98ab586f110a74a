"""Docker-backed reconciler service.

Run with ``uvicorn main:app``. Set DDR_MANIFEST to a manifest file to
declare workloads, volumes, claims and secrets at startup.
"""
from __future__ import annotations

from ddr.api import create_app
from ddr.executor import DockerExecutor
from ddr.manifests import load_manifest
from ddr.reconciler import Reconciler
from ddr.settings import settings
from ddr.store import DesiredState


def build_reconciler() -> Reconciler:
    desired = DesiredState()
    if settings.manifest_path:
        load_manifest(settings.manifest_path).apply_to(desired)
    return Reconciler(desired, DockerExecutor())


app = create_app(build_reconciler())
