from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query

from . import events
from .controller import Controller
from .tracker import DeploymentTracker


def create_app(controller: Controller | None = None, tracker: DeploymentTracker | None = None) -> FastAPI:
    """Probe and status endpoints for a running operator."""
    app = FastAPI(title="Micro Operator")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> dict[str, Any]:
        if controller is None or not controller.started:
            raise HTTPException(status_code=503, detail="controller not started")
        return {"status": "ready", "workers": controller.workers, "queued": len(controller.queue)}

    @app.get("/tracked")
    def tracked() -> list[dict[str, Any]]:
        if tracker is None:
            return []
        out: list[dict[str, Any]] = []
        for identity, dep in tracker.snapshot():
            out.append(
                {
                    "namespace": identity.namespace,
                    "name": identity.name,
                    "kind": identity.kind,
                    "deployment": dep.metadata.name if dep.metadata else None,
                    "replicas": dep.spec.replicas if dep.spec else None,
                }
            )
        return sorted(out, key=lambda x: (x["namespace"], x["name"], x["kind"]))

    @app.get("/events")
    def list_events(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return events.latest_events(limit)

    return app
