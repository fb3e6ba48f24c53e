from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _weight_pair(pair: str) -> tuple[str, int]:
    """Parse ``revision=weight``, the form the platform CLI uses."""
    name, sep, raw = pair.rpartition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected revision=weight, got {pair!r}")
    try:
        return name, int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"weight must be an integer in {pair!r}")


def _env_pair(value: str) -> tuple[str, str]:
    k, sep, v = value.partition("=")
    if not sep or not k:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return k, v


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Container Workload Orchestrator CLI")
    p.add_argument("--api", default=None, help="API base URL (default: $CWO_API_URL)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("apps", help="List applications")
    sub.add_parser("status", help="Show orchestrator health and provider capabilities")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--app", default=None)

    s_dep = sub.add_parser("deploy", help="Deploy an application")
    s_dep.add_argument("--name", required=True)
    s_dep.add_argument("--image", required=True)
    s_dep.add_argument("--port", type=int, required=True)
    s_dep.add_argument("--dapr-app-id", default="")
    s_dep.add_argument("--no-dapr", action="store_true", help="Deploy without a Dapr sidecar")
    s_dep.add_argument("--health-path", default="/health")
    s_dep.add_argument("--env", type=_env_pair, action="append", default=[], metavar="KEY=VALUE")
    s_dep.add_argument("--min-replicas", type=int, default=1)
    s_dep.add_argument("--max-replicas", type=int, default=10)

    s_roll = sub.add_parser("rollout", help="Start a revision rollout")
    s_roll.add_argument("--app", required=True)
    s_roll.add_argument("--image", required=True)
    s_roll.add_argument("--port", type=int, required=True)
    s_roll.add_argument("--dapr-app-id", default="")
    s_roll.add_argument("--no-dapr", action="store_true")
    s_roll.add_argument("--health-path", default="/health")
    s_roll.add_argument("--canary-weight", type=int, default=10)
    s_roll.add_argument("--step-percent", type=int, default=25)
    s_roll.add_argument("--step-interval-s", type=float, default=15)
    mode = s_roll.add_mutually_exclusive_group()
    mode.add_argument("--auto", action="store_true", help="Step traffic automatically (default)")
    mode.add_argument("--manual", action="store_true", help="Pause after each step; advance with 'continue'")

    s_cont = sub.add_parser("continue", help="Advance a manual rollout by one step")
    s_cont.add_argument("rollout_id")

    s_cancel = sub.add_parser("cancel", help="Cancel a rollout")
    s_cancel.add_argument("rollout_id")

    s_tr = sub.add_parser("traffic", help="Route traffic to a revision (e.g. rev=0 to back out a canary)")
    s_tr.add_argument("--app", required=True)
    s_tr.add_argument("--revision-weight", type=_weight_pair, required=True, metavar="REVISION=WEIGHT")

    s_rev = sub.add_parser("revisions", help="List revisions of an application")
    s_rev.add_argument("--app", required=True)

    s_logs = sub.add_parser("logs", help="Show application logs")
    s_logs.add_argument("--app", required=True)
    s_logs.add_argument("--lines", type=int, default=100)

    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    if args.api is None:
        from .settings import settings

        args.api = settings.api_url
    base = args.api.rstrip("/")

    if args.cmd == "apps":
        r = requests.get(f"{base}/apps", timeout=30)
    elif args.cmd == "status":
        r = requests.get(f"{base}/health", timeout=10)
    elif args.cmd == "events":
        params = {"limit": args.limit}
        if args.app:
            params["app_name"] = args.app
        r = requests.get(f"{base}/events", params=params, timeout=10)
    elif args.cmd == "deploy":
        payload = {
            "name": args.name,
            "image": args.image,
            "port": args.port,
            "dapr_app_id": args.dapr_app_id or args.name,
            "dapr_enabled": not args.no_dapr,
            "health_path": args.health_path,
            "environment": dict(args.env),
            "platform": {"min_replicas": args.min_replicas, "max_replicas": args.max_replicas},
        }
        r = requests.post(f"{base}/apps", json=payload, timeout=30)
    elif args.cmd == "rollout":
        # Default: auto rollout unless --manual is specified.
        payload = {
            "image": args.image,
            "port": args.port,
            "dapr_app_id": args.dapr_app_id or args.app,
            "dapr_enabled": not args.no_dapr,
            "health_path": args.health_path,
            "canary_weight": args.canary_weight,
            "step_percent": args.step_percent,
            "step_interval_s": args.step_interval_s,
            "auto": not args.manual,
        }
        r = requests.post(f"{base}/apps/{args.app}/rollout", json=payload, timeout=30)
    elif args.cmd == "continue":
        r = requests.post(f"{base}/rollouts/{args.rollout_id}/continue", timeout=600)
    elif args.cmd == "cancel":
        r = requests.post(f"{base}/rollouts/{args.rollout_id}/cancel", timeout=30)
    elif args.cmd == "traffic":
        revision, weight = args.revision_weight
        r = requests.post(f"{base}/apps/{args.app}/traffic", json={"revision": revision, "weight": weight}, timeout=60)
    elif args.cmd == "revisions":
        r = requests.get(f"{base}/apps/{args.app}/revisions", timeout=30)
    elif args.cmd == "logs":
        r = requests.get(f"{base}/apps/{args.app}/logs", params={"lines": args.lines}, timeout=30)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
