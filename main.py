"""HTTP API for the graceful eviction controller.

The controller runs in background threads started with the app. The binding
endpoints play the scheduler and status-collector roles so the whole loop can
be driven by hand or from cli.py.
"""
from __future__ import annotations

from datetime import timedelta

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from gec.alerts import eviction_timeout_alert
from gec.api_models import BindingRequest, RescheduleRequest, StatusRequest
from gec.controller import CONTROLLER_NAME, GracefulEvictionController
from gec.db import BindingStore, NotFound, StoreError
from gec.models import AggregatedStatusItem, EvictionTask, validate_health, validate_name
from gec.ratelimit import RateLimiterOptions
from gec.recorder import EventRecorder
from gec.runtime import ControllerStats, SystemClock
from gec.settings import settings

app = FastAPI(title="Graceful Eviction Controller")

clock = SystemClock()
stats = ControllerStats()
store: BindingStore | None = None
controller: GracefulEvictionController | None = None


def _store() -> BindingStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Store is not initialised")
    return store


def _not_found(e: NotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@app.on_event("startup")
def startup() -> None:
    global store, controller
    store = BindingStore(settings.db_path, timeout_s=settings.reconcile_timeout_s, clock=clock)
    store.init_db()
    if not settings.run_controller:
        return
    controller = GracefulEvictionController(
        client=store,
        clock=clock,
        graceful_eviction_timeout=timedelta(seconds=settings.graceful_eviction_timeout_s),
        rate_limiter_options=RateLimiterOptions.from_settings(settings),
        recorder=EventRecorder(store, CONTROLLER_NAME),
        reconcile_timeout_s=settings.reconcile_timeout_s,
        stats=stats,
        alert=lambda key, cluster: eviction_timeout_alert(key, cluster, settings=settings),
    )
    controller.start(workers=settings.workers, resync_period_s=settings.resync_period_s)


@app.on_event("shutdown")
def shutdown() -> None:
    global controller
    if controller is not None:
        controller.stop(grace_s=settings.shutdown_grace_s)
        controller = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/bindings")
def list_bindings(namespace: str | None = None) -> list[dict]:
    return [b.to_dict() for b in _store().list_bindings(namespace)]


@app.post("/bindings")
def upsert_binding(req: BindingRequest) -> dict:
    try:
        validate_name(req.namespace, "namespace")
        validate_name(req.name, "binding name")
        for c in req.clusters:
            validate_name(c, "cluster name")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    b = _store().upsert_binding(req.namespace, req.name, req.clusters)
    return b.to_dict()


@app.get("/bindings/{namespace}/{name}")
def get_binding(namespace: str, name: str) -> dict:
    try:
        return _store().get(namespace, name).to_dict()
    except NotFound as e:
        raise _not_found(e)


@app.delete("/bindings/{namespace}/{name}")
def delete_binding(namespace: str, name: str) -> dict:
    try:
        b = _store().delete(namespace, name)
    except NotFound as e:
        raise _not_found(e)
    return {"deleted": b.key}


@app.post("/bindings/{namespace}/{name}/reschedule")
def reschedule(namespace: str, name: str, req: RescheduleRequest) -> dict:
    try:
        for c in req.clusters:
            validate_name(c, "cluster name")
        for ev in req.evictions:
            validate_name(ev.from_cluster, "cluster name")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    now = clock.now()
    tasks = [
        EvictionTask(
            from_cluster=ev.from_cluster,
            created_at=now,
            grace_period_seconds=ev.grace_period_seconds,
            reason=ev.reason,
            producer=ev.producer,
            message=ev.message,
        )
        for ev in req.evictions
    ]
    s = _store()
    try:
        b = s.reschedule(namespace, name, req.clusters, tasks)
    except NotFound as e:
        raise _not_found(e)
    for t in tasks:
        s.log_event("INFO", f"Eviction requested from cluster {t.from_cluster}", binding=b.key, reason="EvictionRequested")
    return b.to_dict()


@app.put("/bindings/{namespace}/{name}/status")
def update_status(namespace: str, name: str, req: StatusRequest) -> dict:
    try:
        for item in req.aggregated_status:
            validate_name(item.cluster_name, "cluster name")
            validate_health(item.health)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    items = [
        AggregatedStatusItem(
            cluster_name=i.cluster_name,
            applied=i.applied,
            health=i.health,
            applied_message=i.applied_message,
            status=i.status,
        )
        for i in req.aggregated_status
    ]
    try:
        b = _store().update_status(namespace, name, items)
    except NotFound as e:
        raise _not_found(e)
    return b.to_dict()


@app.get("/events")
def events(limit: int = 100, binding: str | None = None) -> list[dict]:
    limit = max(1, min(1000, int(limit)))
    return _store().latest_events(limit=limit, binding=binding)


@app.get("/controller")
def controller_status() -> dict:
    out: dict = {"running": controller is not None, **stats.snapshot()}
    if controller is not None:
        out["queue_depth"] = len(controller.queue)
        out["delayed"] = controller.queue.pending_delayed()
        out["graceful_eviction_timeout_s"] = int(controller.timeout.total_seconds())
    return out


@app.exception_handler(StoreError)
def _store_error(_request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": f"Store unavailable: {exc}"})
