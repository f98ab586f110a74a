from __future__ import annotations

import secrets
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .api_models import ClaimRequest, SecretRequest, VolumeRequest, WorkloadRequest
from .gateway import NoReadyEndpoints, RoundRobin, endpoint_url
from .models import WorkloadStatus
from .reconciler import Reconciler
from .settings import settings

security = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.admin_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _status_dict(st: WorkloadStatus) -> dict[str, Any]:
    d = asdict(st)
    d.pop("progress_started", None)
    return d


def create_app(reconciler: Reconciler, start_loop: bool = True) -> FastAPI:
    app = FastAPI(title="Declarative Deployment Reconciler")
    desired = reconciler.desired
    store = reconciler.store
    rr = RoundRobin()

    @app.on_event("startup")
    def _startup() -> None:
        if start_loop:
            reconciler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        reconciler.close()

    @app.get("/health")
    def health() -> dict[str, Any]:
        if reconciler.halted:
            raise HTTPException(status_code=503, detail=f"Reconciliation halted: {reconciler.halted}")
        return {"status": "ok"}

    # workloads

    @app.get("/workloads")
    def list_workloads() -> list[dict[str, Any]]:
        statuses = {st.name: st for st in store.list_statuses()}
        for name in desired.snapshot().specs:
            statuses.setdefault(name, WorkloadStatus(name=name))
        return [_status_dict(statuses[name]) for name in sorted(statuses)]

    @app.get("/workloads/{name}")
    def get_workload(name: str) -> dict[str, Any]:
        spec = desired.get(name)
        st = store.get_status(name)
        if spec is None and st is None:
            raise HTTPException(status_code=404, detail=f"Unknown workload '{name}'")
        out = _status_dict(st or WorkloadStatus(name=name))
        out["desired_revision"] = spec.revision if spec else None
        out["replicas"] = [asdict(r) for r in store.replicas_for(name)]
        return out

    @app.put("/workloads/{name}")
    def put_workload(name: str, req: WorkloadRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            spec = req.to_spec(name)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        desired.apply(spec)
        return {"name": name, "revision": spec.revision}

    @app.delete("/workloads/{name}")
    def delete_workload(name: str, user: str = Depends(require_admin)) -> dict[str, Any]:
        if not desired.delete(name):
            raise HTTPException(status_code=404, detail=f"Unknown workload '{name}'")
        return {"name": name, "deleted": True}

    # storage

    @app.get("/volumes")
    def list_volumes() -> list[dict[str, Any]]:
        return [asdict(v) for v in store.list_volumes()]

    @app.post("/volumes", status_code=201)
    def post_volume(req: VolumeRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            vol = desired.declare_volume(req.to_volume())
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return asdict(vol)

    @app.get("/claims")
    def list_claims() -> list[dict[str, Any]]:
        return [asdict(c) for c in store.list_claims()]

    @app.post("/claims", status_code=201)
    def post_claim(req: ClaimRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        claim = req.to_claim()
        try:
            desired.declare_claim(claim)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return asdict(claim)

    @app.delete("/claims/{name}")
    def delete_claim(name: str, user: str = Depends(require_admin)) -> dict[str, Any]:
        if not desired.delete_claim(name):
            raise HTTPException(status_code=404, detail=f"Unknown claim '{name}'")
        return {"name": name, "deleted": True}

    # secrets: write-only

    @app.put("/secrets/{name}")
    def put_secret(name: str, req: SecretRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        try:
            data = req.decoded()
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        desired.put_secret(name, data)
        return {"name": name, "bytes": len(data)}

    # services

    @app.get("/services/{service}/endpoints")
    def get_endpoints(service: str) -> dict[str, Any]:
        eps = store.get_endpoints(service)
        return {"service": service, "replicas": sorted(eps.replicas)}

    @app.get("/services/{service}/route")
    def route(service: str) -> dict[str, Any]:
        try:
            replica_id, url = endpoint_url(service, store, rr, reconciler.executor)
        except NoReadyEndpoints as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"service": service, "replica": replica_id, "url": url}

    # events

    @app.get("/events")
    def get_events(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
        limit = max(1, min(1000, int(limit)))
        return reconciler.events.history(limit=limit, workload=workload)

    return app
