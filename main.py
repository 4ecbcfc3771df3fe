from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleet.api_models import CreateSetRequest, ScaleRequest
from fleet.controller import Controller
from fleet.db import Store
from fleet.errors import AlreadyExistsError, ConflictError, NotFoundError, TransientError, ValidationError
from fleet.models import SET_KIND, UNIT_KIND, ObjectMeta, SetKey, UnitSet, UnitSetSpec, controller_ref_of
from fleet.settings import settings


store = Store()
controller = Controller(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store.init_db()
    if settings.run_controller:
        controller.start()
    yield
    controller.stop()


app = FastAPI(title="Fleet Controller", lifespan=lifespan)


# --- ERRORS ---
def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


app.add_exception_handler(NotFoundError, _error(404))
app.add_exception_handler(AlreadyExistsError, _error(409))
app.add_exception_handler(ConflictError, _error(409))
app.add_exception_handler(ValidationError, _error(422))
app.add_exception_handler(TransientError, _error(503))


def _dump(obj: Any) -> dict[str, Any]:
    return obj.model_dump(mode="json")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


# --- SETS ---
@app.post("/sets", status_code=201)
def create_set(req: CreateSetRequest) -> dict[str, Any]:
    unit_set = UnitSet(
        metadata=ObjectMeta(name=req.name, namespace=req.namespace, labels=req.labels),
        spec=UnitSetSpec(
            replicas=req.replicas,
            min_ready_seconds=req.min_ready_seconds,
            delete_policy=req.delete_policy,
            selector=req.selector,
            template=req.template,
        ),
    )
    created = store.create(unit_set)
    store.log_event("INFO", "Set created", namespace=req.namespace, set_name=req.name)
    return _dump(created)


@app.get("/sets")
def list_sets(namespace: str | None = None) -> list[dict[str, Any]]:
    return [_dump(s) for s in store.list(SET_KIND, namespace)]


@app.get("/sets/{namespace}/{name}")
def get_set(namespace: str, name: str) -> dict[str, Any]:
    return _dump(store.get(SET_KIND, namespace, name))


@app.put("/sets/{namespace}/{name}/scale")
def scale_set(namespace: str, name: str, req: ScaleRequest) -> dict[str, Any]:
    attempt = 0
    while True:
        unit_set = store.get(SET_KIND, namespace, name)
        unit_set.spec.replicas = req.replicas
        try:
            updated = store.update(unit_set)
        except ConflictError:
            attempt += 1
            if attempt > settings.status_update_retries:
                raise
            continue
        store.log_event("INFO", f"Scaled to {req.replicas} replicas", namespace=namespace, set_name=name)
        return _dump(updated)


@app.delete("/sets/{namespace}/{name}")
def delete_set(namespace: str, name: str) -> dict[str, Any]:
    unit_set = store.get(SET_KIND, namespace, name)
    store.delete(unit_set, unit_set.metadata.uid)
    store.log_event("INFO", "Set deleted", namespace=namespace, set_name=name)
    return {"deleted": f"{namespace}/{name}"}


@app.post("/sets/{namespace}/{name}/reconcile")
def reconcile_set(namespace: str, name: str) -> dict[str, Any]:
    """Run one reconcile cycle synchronously."""
    result = controller.reconciler.reconcile(SetKey(namespace, name))
    return {
        "requeue": result.requeue,
        "requeue_after": result.requeue_after,
        "error": str(result.error) if result.error else None,
    }


# --- UNITS ---
@app.get("/units")
def list_units(namespace: str | None = None, set_name: str | None = None) -> list[dict[str, Any]]:
    units = store.list(UNIT_KIND, namespace)
    if set_name:
        units = [u for u in units if (ref := controller_ref_of(u)) is not None and ref.name == set_name]
    return [_dump(u) for u in units]


@app.delete("/units/{namespace}/{name}")
def delete_unit(namespace: str, name: str) -> dict[str, Any]:
    unit = store.get(UNIT_KIND, namespace, name)
    store.delete(unit, unit.metadata.uid)
    return {"deleted": f"{namespace}/{name}"}


# --- EVENTS ---
@app.get("/events")
def events(limit: int = 100, set_name: str | None = None) -> list[dict[str, Any]]:
    return store.latest_events(limit=max(1, min(1000, limit)), set_name=set_name)
