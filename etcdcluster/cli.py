from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, Optional
from urllib import error, parse, request


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    query: Optional[Dict[str, str]] = None,
) -> Any:
    url = base_url.rstrip("/") + path
    if query:
        url = f"{url}?{parse.urlencode(query)}"
    req = request.Request(url=url, method=method.upper(), headers={"Accept": "application/json"})
    try:
        with request.urlopen(req, timeout=30) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise RuntimeError(f"unable to reach {base_url}: {exc.reason}") from exc


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from etcdcluster.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "etcdcluster.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def cmd_machines(args: argparse.Namespace) -> int:
    query = {"selector": args.selector} if args.selector else None
    rows = _api_request(base_url=args.api_url, path="/machines", query=query)
    if not isinstance(rows, list):
        raise RuntimeError("Unexpected response for /machines")
    print("NAME\tCLUSTER\tADDRESSES\tDELETING")
    for row in rows:
        labels = row.get("labels") or {}
        addresses = ",".join(item.get("address", "") for item in row.get("addresses") or [])
        print(
            f"{row.get('name', '-')}\t{labels.get('cluster.x-k8s.io/cluster-name', '-')}\t"
            f"{addresses or '-'}\t{'yes' if row.get('deletion_timestamp') else 'no'}"
        )
    return 0


def cmd_clusters(args: argparse.Namespace) -> int:
    rows = _api_request(base_url=args.api_url, path="/clusters")
    if not isinstance(rows, list):
        raise RuntimeError("Unexpected response for /clusters")
    print("ID\tCLUSTER\tREADY\tREPLICAS\tENDPOINT")
    for row in rows:
        print(
            f"{row.get('id', '-')}\t{row.get('cluster_name', '-')}\t{row.get('ready', False)}\t"
            f"{row.get('ready_replicas', 0)}/{row.get('replicas', 0)}\t{row.get('endpoint') or '-'}"
        )
    return 0


def cmd_state(args: argparse.Namespace) -> int:
    _print_json(_api_request(base_url=args.api_url, path=f"/clusters/{args.cluster_id}/state"))
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    result = _api_request(
        base_url=args.api_url,
        path=f"/clusters/{args.cluster_id}/reconcile",
        method="POST",
    )
    if not isinstance(result, dict):
        raise RuntimeError("Unexpected response for cluster reconcile")
    _print_json(result)
    return 0 if result.get("ready") else 3


def cmd_member_health(args: argparse.Namespace) -> int:
    result = _api_request(
        base_url=args.api_url,
        path=f"/clusters/{args.cluster_id}/machines/{args.machine_id}/health",
        method="POST",
    )
    if not isinstance(result, dict):
        raise RuntimeError("Unexpected response for member health")
    _print_json(result)
    return 0 if result.get("healthy") else 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="etcdcluster", description="etcd cluster status CLI")
    parser.add_argument("--api-url", default="http://127.0.0.1:8000")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="")
    serve.add_argument("--port", type=int, default=0)
    serve.set_defaults(func=cmd_serve)

    machines = sub.add_parser("machines", help="List machines")
    machines.add_argument("--selector", default="", help="Label selector, e.g. 'role in (etcd)'")
    machines.set_defaults(func=cmd_machines)

    clusters = sub.add_parser("clusters", help="List etcd clusters")
    clusters.set_defaults(func=cmd_clusters)

    state = sub.add_parser("state", help="Show the derived state of an etcd cluster")
    state.add_argument("cluster_id")
    state.set_defaults(func=cmd_state)

    reconcile = sub.add_parser("reconcile", help="Run one status pass for an etcd cluster")
    reconcile.add_argument("cluster_id")
    reconcile.set_defaults(func=cmd_reconcile)

    member_health = sub.add_parser("member-health", help="Probe one member of an etcd cluster")
    member_health.add_argument("cluster_id")
    member_health.add_argument("machine_id")
    member_health.set_defaults(func=cmd_member_health)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except RuntimeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
