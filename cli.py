from __future__ import annotations

import argparse
import json
import sys

import requests

from ddr.manifests import ManifestError, load_manifest, parse_set_values


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth(args: argparse.Namespace) -> tuple[str, str]:
    return (args.user, args.password)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Declarative Deployment Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default="admin", help="API user for mutating calls")
    p.add_argument("--password", default="admin", help="API password for mutating calls")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("workloads", help="List workloads and their status")

    s_status = sub.add_parser("status", help="Show one workload with its replicas")
    s_status.add_argument("name")

    s_apply = sub.add_parser("apply", help="Declare everything in a manifest file")
    s_apply.add_argument("-f", "--file", required=True)
    s_apply.add_argument("--set", action="append", default=[], metavar="NAME.PATH=VALUE", help="Override a value")

    s_del = sub.add_parser("delete", help="Delete a workload")
    s_del.add_argument("name")

    sub.add_parser("volumes", help="List volumes")

    s_claims = sub.add_parser("claims", help="List claims, or delete one")
    s_claims.add_argument("--delete", metavar="NAME")

    s_ep = sub.add_parser("endpoints", help="Ready endpoints of a service")
    s_ep.add_argument("service")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--workload")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "workloads":
        _print(requests.get(f"{base}/workloads", timeout=10).json())
        return 0

    if args.cmd == "status":
        r = requests.get(f"{base}/workloads/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "apply":
        try:
            manifest = load_manifest(args.file, parse_set_values(args.set))
        except (ManifestError, OSError) as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
        failed = 0
        for method, path, body in manifest.api_calls():
            r = requests.request(method, f"{base}{path}", json=body, auth=_auth(args), timeout=30)
            # Re-applying a file re-declares the same volumes; that conflict is expected.
            if r.status_code == 409 and path == "/volumes":
                continue
            if not r.ok:
                failed += 1
            _print({"request": f"{method} {path}", "status": r.status_code, "response": r.json()})
        return 0 if failed == 0 else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/workloads/{args.name}", auth=_auth(args), timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "volumes":
        _print(requests.get(f"{base}/volumes", timeout=10).json())
        return 0

    if args.cmd == "claims":
        if args.delete:
            r = requests.delete(f"{base}/claims/{args.delete}", auth=_auth(args), timeout=10)
            _print(r.json())
            return 0 if r.ok else 1
        _print(requests.get(f"{base}/claims", timeout=10).json())
        return 0

    if args.cmd == "endpoints":
        _print(requests.get(f"{base}/services/{args.service}/endpoints", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.workload:
            params["workload"] = args.workload
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
