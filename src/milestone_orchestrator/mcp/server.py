"""MCP server exposing the worker-facing orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from milestone_orchestrator.config import Config, get_config
from milestone_orchestrator.errors import NoWorkAvailable, OrchestratorError
from milestone_orchestrator.orchestrator import Orchestrator


@dataclass
class AppContext:
    orchestrator: Orchestrator
    config: Config


# Set by ``run`` when the host already resolved a config
_config: Config | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the orchestrator and its heartbeat monitor; shut down on exit."""
    config = _config or get_config()
    orch = Orchestrator(config).init(start_monitor=True)
    try:
        yield AppContext(orchestrator=orch, config=config)
    finally:
        orch.shutdown()


mcp = FastMCP("milestone-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _orch(ctx: Context) -> Orchestrator:
    return _ctx(ctx).orchestrator


def _error(e: Exception) -> dict:
    result = {"error": str(e), "type": type(e).__name__}
    retry_after = getattr(e, "retry_after", None)
    if retry_after is not None:
        result["retry_after"] = retry_after
    return result


# ── Worker Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def register_worker(ctx: Context, capabilities: list[str] | None = None, worker_id: str | None = None) -> dict:
    """Register as a worker. Keep the returned id and heartbeat regularly."""
    try:
        worker = _orch(ctx).register_worker(capabilities or [], worker_id)
    except (OrchestratorError, ValueError) as e:
        return _error(e)
    result = worker.to_record()
    result["heartbeat_timeout_seconds"] = _ctx(ctx).config.heartbeat_timeout_seconds
    return result


@mcp.tool()
def heartbeat(ctx: Context, worker_id: str) -> dict:
    """Report that this worker is alive. A disconnected worker must register again."""
    try:
        return _orch(ctx).heartbeat(worker_id).to_record()
    except (OrchestratorError, ValueError) as e:
        return _error(e)


@mcp.tool()
def claim_task(ctx: Context, worker_id: str) -> dict:
    """Claim the highest-priority ready task this worker can do.

    When nothing is ready the result carries ``retry_after`` seconds.
    """
    try:
        return _orch(ctx).claim_task(worker_id).to_record()
    except NoWorkAvailable as e:
        return {"task": None, **_error(e)}
    except (OrchestratorError, ValueError) as e:
        return _error(e)


@mcp.tool()
def report_task_status(
    ctx: Context,
    task_id: str,
    status: str,
    worker_id: str | None = None,
    details: dict | None = None,
) -> dict:
    """Report progress on a task: in_progress, completed, failed, blocked or pending."""
    orch = _orch(ctx)
    try:
        task = orch.report_task_status(task_id, status, details, worker_id=worker_id)
    except (OrchestratorError, ValueError) as e:
        return _error(e)
    result = task.to_record()
    result["milestone_progress"] = orch.get_progress(task.milestone_id).percentage
    return result


@mcp.tool()
def release_task(ctx: Context, worker_id: str) -> dict:
    """Give up the claimed task so another worker can take it."""
    try:
        return _orch(ctx).release_task(worker_id).to_record()
    except (OrchestratorError, ValueError) as e:
        return _error(e)


# ── Reporting Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def get_progress(ctx: Context, milestone_id: str) -> dict:
    """Weighted progress of a milestone, with per-phase breakdown."""
    orch = _orch(ctx)
    try:
        report = orch.get_progress(milestone_id).to_dict()
        report["remaining_effort"] = orch.estimate_remaining(milestone_id)
        return report
    except (OrchestratorError, ValueError) as e:
        return _error(e)


@mcp.tool()
def list_milestones(ctx: Context, status: str | None = None, include_archived: bool = False) -> list[dict]:
    """List milestones with their current progress."""
    orch = _orch(ctx)
    result = []
    for m in orch.list_milestones(status=status, include_archived=include_archived):
        md = m.to_record()
        md["progress"] = orch.get_progress(m.id).percentage
        result.append(md)
    return result


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Full details of a task."""
    try:
        return _orch(ctx).get_task(task_id).to_record()
    except (OrchestratorError, ValueError) as e:
        return _error(e)


@mcp.tool()
def create_milestone(
    ctx: Context,
    title: str,
    description: str = "",
    tasks: list[dict] | None = None,
    depends_on: list[str] | None = None,
) -> dict:
    """Create a milestone. Each task is a dict with ``title`` and optionally
    ``phase`` (design, spec, task, execute), ``description``, ``effort``,
    ``priority`` (0 highest to 6 lowest), ``depends_on`` and ``capabilities``.
    """
    try:
        milestone = _orch(ctx).create_milestone(title, description, tasks or [], depends_on=depends_on)
    except (OrchestratorError, ValueError) as e:
        return _error(e)
    return milestone.to_record()


def run(config: Config | None = None, transport: str = "stdio"):
    global _config
    _config = config
    mcp.run(transport=transport)
