"""HTTP API for workers and reporting."""

import functools
from collections.abc import Callable
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from milestone_orchestrator.config import Config, get_config
from milestone_orchestrator.errors import (
    CheckpointNotFound,
    CycleError,
    InvalidTransition,
    MigrationInProgress,
    NoWorkAvailable,
    NotFound,
    OrchestratorError,
    UnknownWorker,
)
from milestone_orchestrator.orchestrator import Orchestrator


def _orch(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _error_response(e: Exception) -> JSONResponse:
    body = {"error": str(e), "type": type(e).__name__}
    if isinstance(e, MigrationInProgress):
        return JSONResponse(body, status_code=503, headers={"Retry-After": str(int(max(1, e.retry_after)))})
    if isinstance(e, NoWorkAvailable):
        body["retry_after"] = e.retry_after
        return JSONResponse(body, status_code=409)
    if isinstance(e, CycleError):
        body["cycle"] = e.cycle
        return JSONResponse(body, status_code=409)
    if isinstance(e, InvalidTransition):
        return JSONResponse(body, status_code=409)
    if isinstance(e, (NotFound, UnknownWorker, CheckpointNotFound)):
        return JSONResponse(body, status_code=404)
    return JSONResponse(body, status_code=400)


def handles_errors(handler: Callable):
    """Translate domain errors raised by a handler into JSON responses."""
    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except (OrchestratorError, ValueError) as e:
            return _error_response(e)
    return wrapper


# ── Handlers ──────────────────────────────────────────────────────────────────


@handles_errors
async def index(request: Request):
    return JSONResponse(_orch(request).summary())


@handles_errors
async def api_list_milestones(request: Request):
    orch = _orch(request)
    include_archived = request.query_params.get("include_archived", "").lower() in ("1", "true", "yes")
    milestones = orch.list_milestones(
        status=request.query_params.get("status"), include_archived=include_archived
    )
    return JSONResponse([_milestone_dict(orch, m) for m in milestones])


@handles_errors
async def api_create_milestone(request: Request):
    data = await _body(request)
    orch = _orch(request)
    milestone = orch.create_milestone(
        data.get("title", ""),
        data.get("description", ""),
        data.get("tasks") or [],
        depends_on=data.get("depends_on"),
        gates=data.get("gates"),
    )
    return JSONResponse(_milestone_dict(orch, milestone), status_code=201)


@handles_errors
async def api_get_milestone(request: Request):
    orch = _orch(request)
    milestone = orch.get_milestone(request.path_params["milestone_id"])
    md = _milestone_dict(orch, milestone)
    md["tasks"] = [t.to_record() for t in orch.list_tasks(milestone_id=milestone.id)]
    return JSONResponse(md)


@handles_errors
async def api_milestone_progress(request: Request):
    orch = _orch(request)
    milestone_id = request.path_params["milestone_id"]
    report = orch.get_progress(milestone_id).to_dict()
    report["remaining_effort"] = orch.estimate_remaining(milestone_id)
    return JSONResponse(report)


@handles_errors
async def api_transition_phase(request: Request):
    data = await _body(request)
    orch = _orch(request)
    if "status" not in data:
        raise ValueError("'status' is required")
    milestone = orch.transition_phase(
        request.path_params["milestone_id"], request.path_params["phase"], data["status"]
    )
    return JSONResponse(_milestone_dict(orch, milestone))


@handles_errors
async def api_approve_phase(request: Request):
    data = await _body(request)
    orch = _orch(request)
    if not data.get("approver"):
        raise ValueError("'approver' is required")
    milestone = orch.approve_phase(
        request.path_params["milestone_id"], request.path_params["phase"], data["approver"]
    )
    return JSONResponse(_milestone_dict(orch, milestone))


@handles_errors
async def api_get_task(request: Request):
    orch = _orch(request)
    task = orch.get_task(request.path_params["task_id"])
    td = task.to_record()
    td["events"] = [_event_dict(e) for e in orch.events(entity_id=task.id)]
    return JSONResponse(td)


@handles_errors
async def api_report_task_status(request: Request):
    data = await _body(request)
    if "status" not in data:
        raise ValueError("'status' is required")
    task = _orch(request).report_task_status(
        request.path_params["task_id"], data["status"], data.get("details"), worker_id=data.get("worker_id")
    )
    return JSONResponse(task.to_record())


@handles_errors
async def api_list_workers(request: Request):
    workers = _orch(request).list_workers(request.query_params.get("status"))
    return JSONResponse([w.to_record() for w in workers])


@handles_errors
async def api_register_worker(request: Request):
    data = await _body(request)
    worker = _orch(request).register_worker(data.get("capabilities") or [], data.get("worker_id"))
    return JSONResponse(worker.to_record(), status_code=201)


@handles_errors
async def api_heartbeat(request: Request):
    worker = _orch(request).heartbeat(request.path_params["worker_id"])
    return JSONResponse(worker.to_record())


@handles_errors
async def api_claim_task(request: Request):
    task = _orch(request).claim_task(request.path_params["worker_id"])
    return JSONResponse(task.to_record())


@handles_errors
async def api_release_task(request: Request):
    task = _orch(request).release_task(request.path_params["worker_id"])
    return JSONResponse(task.to_record())


@handles_errors
async def api_events(request: Request):
    params = request.query_params
    events = _orch(request).events(
        entity_id=params.get("entity_id"),
        after_seq=int(params.get("after", 0)),
        event_type=params.get("type"),
    )
    return JSONResponse([_event_dict(e) for e in events])


@handles_errors
async def api_list_checkpoints(request: Request):
    return JSONResponse([_checkpoint_dict(cp) for cp in _orch(request).list_checkpoints()])


@handles_errors
async def api_create_checkpoint(request: Request):
    data = await _body(request)
    cp = _orch(request).checkpoint(data.get("reason", "api"))
    return JSONResponse(_checkpoint_dict(cp), status_code=201)


@handles_errors
async def api_resume(request: Request):
    checkpoint_id = int(request.path_params["checkpoint_id"])
    replayed = _orch(request).resume(checkpoint_id)
    return JSONResponse({"checkpoint_id": checkpoint_id, "replayed": replayed})


@handles_errors
async def api_storage(request: Request):
    return JSONResponse(_orch(request).storage_status())


@handles_errors
async def api_critical_path(request: Request):
    remaining = request.query_params.get("remaining", "").lower() in ("1", "true", "yes")
    path = _orch(request).critical_path(remaining_only=remaining)
    return JSONResponse({"nodes": path.nodes, "effort": path.effort})


# ── Serialization ─────────────────────────────────────────────────────────────


def _milestone_dict(orch: Orchestrator, m) -> dict:
    md = m.to_record()
    md["progress"] = orch.get_progress(m.id).percentage
    return md


def _event_dict(e) -> dict:
    return {
        "seq": e.seq,
        "event_type": e.event_type,
        "entity_id": e.entity_id,
        "payload": {k: v for k, v in e.payload.items() if k not in ("records", "deleted")},
        "session_id": e.session_id,
        "timestamp": e.timestamp.isoformat() if e.timestamp else None,
    }


def _checkpoint_dict(cp) -> dict:
    return {
        "id": cp.id,
        "event_seq": cp.event_seq,
        "reason": cp.reason,
        "record_count": cp.record_count,
        "created_at": cp.created_at.isoformat() if cp.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator | None = None, config: Config | None = None) -> Starlette:
    """Build the app around an orchestrator.

    A given orchestrator is used as-is and left to its owner; otherwise
    the app builds one from ``config`` and owns its lifecycle.
    """
    @asynccontextmanager
    async def lifespan(app: Starlette):
        owned = orchestrator is None
        orch = orchestrator or Orchestrator(config or get_config()).init(start_monitor=True)
        app.state.orchestrator = orch
        try:
            yield
        finally:
            if owned:
                orch.shutdown()

    routes = [
        Route("/", index),
        Route("/api/milestones", api_list_milestones, methods=["GET"]),
        Route("/api/milestones", api_create_milestone, methods=["POST"]),
        Route("/api/milestones/{milestone_id}", api_get_milestone),
        Route("/api/milestones/{milestone_id}/progress", api_milestone_progress),
        Route("/api/milestones/{milestone_id}/phases/{phase}", api_transition_phase, methods=["POST"]),
        Route("/api/milestones/{milestone_id}/phases/{phase}/approve", api_approve_phase, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/status", api_report_task_status, methods=["POST"]),
        Route("/api/workers", api_list_workers, methods=["GET"]),
        Route("/api/workers", api_register_worker, methods=["POST"]),
        Route("/api/workers/{worker_id}/heartbeat", api_heartbeat, methods=["POST"]),
        Route("/api/workers/{worker_id}/claim", api_claim_task, methods=["POST"]),
        Route("/api/workers/{worker_id}/release", api_release_task, methods=["POST"]),
        Route("/api/events", api_events),
        Route("/api/checkpoints", api_list_checkpoints, methods=["GET"]),
        Route("/api/checkpoints", api_create_checkpoint, methods=["POST"]),
        Route("/api/checkpoints/{checkpoint_id:int}/resume", api_resume, methods=["POST"]),
        Route("/api/storage", api_storage),
        Route("/api/critical-path", api_critical_path),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator
    return app


def run_server(config: Config | None = None, host: str = "127.0.0.1", port: int = 8787):
    app = create_app(config=config)
    uvicorn.run(app, host=host, port=port)
