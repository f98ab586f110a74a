"""Declaration files.

A manifest is a YAML (or JSON) stream of documents, each with ``kind``,
``metadata.name`` and a ``spec`` matching the HTTP API request bodies::

    kind: Volume
    metadata: {name: mysql-pv, labels: {tier: db}}
    spec: {capacity: 20Gi, access_mode: ReadWriteOnce, host_path: /mnt/data}

Kubernetes kind names (Deployment, PersistentVolume, PersistentVolumeClaim)
are accepted as aliases. ``render`` applies value overrides before parsing;
it is a pure function and knows nothing about reconciliation.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .api_models import ClaimRequest, SecretRequest, VolumeRequest, WorkloadRequest
from .models import DesiredSpec, Volume
from .store import DesiredState

KIND_ALIASES = {
    "workload": "Workload",
    "deployment": "Workload",
    "volume": "Volume",
    "persistentvolume": "Volume",
    "claim": "Claim",
    "persistentvolumeclaim": "Claim",
    "secret": "Secret",
}


class ManifestError(ValueError):
    pass


@dataclass
class Manifest:
    workloads: dict[str, WorkloadRequest] = field(default_factory=dict)
    volumes: dict[str, VolumeRequest] = field(default_factory=dict)
    claims: dict[str, ClaimRequest] = field(default_factory=dict)
    secrets: dict[str, SecretRequest] = field(default_factory=dict)

    def specs(self) -> list[DesiredSpec]:
        return [req.to_spec(name) for name, req in self.workloads.items()]

    def apply_to(self, desired: DesiredState) -> None:
        """Declare everything in dependency order: storage, secrets, then workloads."""
        declared = {v.name for v in _declared_volumes(desired)}
        for req in self.volumes.values():
            if req.name not in declared:
                desired.declare_volume(req.to_volume())
        for req in self.claims.values():
            desired.declare_claim(req.to_claim())
        for name, secret in self.secrets.items():
            desired.put_secret(name, secret.decoded())
        for spec in self.specs():
            desired.apply(spec)

    def api_calls(self) -> list[tuple[str, str, dict[str, Any]]]:
        """(method, path, json body) for pushing this manifest through the HTTP API."""
        calls: list[tuple[str, str, dict[str, Any]]] = []
        for req in self.volumes.values():
            calls.append(("POST", "/volumes", req.model_dump()))
        for req in self.claims.values():
            calls.append(("POST", "/claims", req.model_dump()))
        for name, secret in self.secrets.items():
            calls.append(("PUT", f"/secrets/{name}", secret.model_dump()))
        for name, req in self.workloads.items():
            calls.append(("PUT", f"/workloads/{name}", req.model_dump()))
        return calls


def _declared_volumes(desired: DesiredState) -> list[Volume]:
    return list(desired.snapshot().volumes.values())


def _set_path(doc: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    cur: Any = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def render(document: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` with dotted-path overrides applied.

    ``{"spec.replicas": 3}`` sets ``document["spec"]["replicas"]``.
    """
    out = copy.deepcopy(document)
    for path, value in values.items():
        _set_path(out, path, value)
    return out


def parse_set_values(pairs: Iterable[str]) -> dict[str, Any]:
    """Parse ``name.path=value`` strings; values are YAML scalars (``3`` -> int)."""
    out: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ManifestError(f"Expected key=value, got {pair!r}")
        key, raw = pair.split("=", 1)
        out[key.strip()] = yaml.safe_load(raw) if raw else ""
    return out


def _values_for(name: str, values: dict[str, Any]) -> dict[str, Any]:
    prefix = f"{name}."
    return {k[len(prefix):]: v for k, v in values.items() if k.startswith(prefix)}


def load_documents(text: str) -> list[dict[str, Any]]:
    try:
        docs = [d for d in yaml.safe_load_all(text) if d]
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid manifest: {e}") from e
    for d in docs:
        if not isinstance(d, dict):
            raise ManifestError(f"Each document must be a mapping, got {type(d).__name__}")
    return docs


def build_manifest(documents: Iterable[dict[str, Any]], values: dict[str, Any] | None = None) -> Manifest:
    """Render and validate documents. ``values`` keys are ``<name>.<dotted.path>``."""
    values = values or {}
    manifest = Manifest()
    for raw in documents:
        name = (raw.get("metadata") or {}).get("name")
        if not name:
            raise ManifestError("Every document needs metadata.name")
        doc = render(raw, _values_for(name, values))
        kind = KIND_ALIASES.get(str(doc.get("kind", "")).lower())
        spec = dict(doc.get("spec") or {})
        try:
            if kind == "Workload":
                manifest.workloads[name] = WorkloadRequest(**spec)
            elif kind == "Volume":
                labels = {**((doc.get("metadata") or {}).get("labels") or {}), **(spec.pop("labels", None) or {})}
                manifest.volumes[name] = VolumeRequest(name=name, labels=labels, **spec)
            elif kind == "Claim":
                manifest.claims[name] = ClaimRequest(name=name, **spec)
            elif kind == "Secret":
                manifest.secrets[name] = SecretRequest(data=doc.get("data", ""))
            else:
                raise ManifestError(f"Unknown kind {doc.get('kind')!r} for '{name}'")
        except ValidationError as e:
            raise ManifestError(f"{doc.get('kind')} '{name}': {e}") from e
    return manifest


def load_manifest(path: str | Path, values: dict[str, Any] | None = None) -> Manifest:
    text = Path(path).read_text(encoding="utf-8")
    return build_manifest(load_documents(text), values)
