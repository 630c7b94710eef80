from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_status(raw: str) -> dict:
    """cluster=Healthy[,applied] e.g. member1=Healthy or member2=Unhealthy,notapplied"""
    cluster, sep, rest = raw.partition("=")
    if not sep or not cluster:
        raise argparse.ArgumentTypeError(f"expected <cluster>=<health>[,notapplied], got {raw!r}")
    health, _, applied = rest.partition(",")
    return {
        "cluster_name": cluster,
        "health": health or "Unknown",
        "applied": applied.strip().lower() != "notapplied",
    }


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Graceful Eviction Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_list = sub.add_parser("bindings", help="List bindings")
    s_list.add_argument("--namespace")

    s_get = sub.add_parser("get", help="Show one binding")
    s_get.add_argument("key", help="<namespace>/<name>")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--binding", help="Only events for <namespace>/<name>")

    sub.add_parser("controller", help="Show controller counters")

    s_put = sub.add_parser("create", help="Create a binding or replace its placement")
    s_put.add_argument("key", help="<namespace>/<name>")
    s_put.add_argument("--cluster", action="append", default=[], dest="clusters")

    s_move = sub.add_parser("reschedule", help="Move a workload: new clusters plus graceful eviction of old ones")
    s_move.add_argument("key", help="<namespace>/<name>")
    s_move.add_argument("--cluster", action="append", default=[], dest="clusters", required=True)
    s_move.add_argument("--evict", action="append", default=[], help="Cluster to evict gracefully")
    s_move.add_argument("--grace-period-s", type=int, help="Override the global graceful eviction timeout")
    s_move.add_argument("--reason", default="")
    s_move.add_argument("--producer", default="cli")

    s_st = sub.add_parser("status", help="Report aggregated status for a binding")
    s_st.add_argument("key", help="<namespace>/<name>")
    s_st.add_argument("items", nargs="*", type=_parse_status, help="<cluster>=<Healthy|Unhealthy|Unknown>[,notapplied]")

    s_del = sub.add_parser("delete", help="Delete a binding")
    s_del.add_argument("key", help="<namespace>/<name>")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "bindings":
        params = {"namespace": args.namespace} if args.namespace else {}
        _print(requests.get(f"{base}/bindings", params=params, timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.binding:
            params["binding"] = args.binding
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "controller":
        _print(requests.get(f"{base}/controller", timeout=10).json())
        return 0

    if args.cmd == "get":
        r = requests.get(f"{base}/bindings/{args.key}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "create":
        namespace, _, name = args.key.partition("/")
        payload = {"namespace": namespace, "name": name, "clusters": args.clusters}
        r = requests.post(f"{base}/bindings", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reschedule":
        payload = {
            "clusters": args.clusters,
            "evictions": [
                {
                    "from_cluster": c,
                    "grace_period_seconds": args.grace_period_s,
                    "reason": args.reason,
                    "producer": args.producer,
                }
                for c in args.evict
            ],
        }
        r = requests.post(f"{base}/bindings/{args.key}/reschedule", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        r = requests.put(f"{base}/bindings/{args.key}/status", json={"aggregated_status": args.items}, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/bindings/{args.key}", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
