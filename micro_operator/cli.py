from __future__ import annotations

import argparse
import json
import logging
import sys

import requests
import uvicorn

from . import events
from .cluster import KubernetesClusterClient, load_kube_config
from .controller import Controller, MicroWatcher
from .reconciler import MicroReconciler
from .server import create_app
from .settings import settings
from .tracker import DeploymentTracker


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    events.init_db()
    load_kube_config(settings.in_cluster)

    cluster = KubernetesClusterClient()
    tracker = DeploymentTracker()
    controller = Controller(MicroReconciler(cluster, tracker), workers=args.workers)
    watcher = MicroWatcher(cluster, controller, namespace=args.namespace)

    controller.start()
    watcher.start()
    try:
        uvicorn.run(create_app(controller, tracker), host=settings.probe_host, port=args.port, log_level="warning")
    finally:
        watcher.stop()
        controller.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Micro operator")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the operator")
    s_run.add_argument("--namespace", default=settings.namespace, help="Namespace to watch (default: all)")
    s_run.add_argument("--workers", type=int, default=settings.workers)
    s_run.add_argument("--port", type=int, default=settings.probe_port, help="Probe/status server port")
    s_run.add_argument("-v", "--verbose", action="store_true")

    for name, help_ in (("tracked", "Show deployments tracked by a running operator"), ("events", "Show events")):
        s = sub.add_parser(name, help=help_)
        s.add_argument("--api", default=f"http://localhost:{settings.probe_port}", help="Operator status URL")
        if name == "events":
            s.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    if args.cmd == "run":
        return run(args)

    base = args.api.rstrip("/")

    if args.cmd == "tracked":
        r = requests.get(f"{base}/tracked", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
