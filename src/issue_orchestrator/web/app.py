"""Web JSON API for watching and cancelling tasks."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from issue_orchestrator.config import get_config
from issue_orchestrator.core import dispatch as dispatch_mod
from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.db.engine import init_db
from issue_orchestrator.db.models import STATUS_LABELS, TERMINAL_STATUSES


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(db)
        if status_filter:
            tasks = [t for t in tasks if t.status == status_filter]
        return JSONResponse([_task_summary(t) for t in tasks])
    finally:
        db.close()


async def api_summary(request: Request):
    db = _get_db()
    try:
        tasks = tasks_mod.list_tasks(db)
    finally:
        db.close()

    counts: dict[str, int] = {}
    for t in tasks:
        counts[t.status] = counts.get(t.status, 0) + 1
    active = sum(1 for t in tasks if t.status not in TERMINAL_STATUSES)
    return JSONResponse({
        "counts": counts,
        "total": len(tasks),
        "active": active,
        "total_cost_usd": round(sum(t.cost_usd or 0 for t in tasks), 2),
    })


async def api_get_task(request: Request):
    issue_key = request.path_params["issue_key"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, issue_key)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        data = task.to_dict()
        data["statusLabel"] = STATUS_LABELS.get(task.status, task.status)
        data["cancelRequested"] = tasks_mod.is_cancel_requested(db, issue_key)
        return JSONResponse(data)
    finally:
        db.close()


async def api_task_log(request: Request):
    issue_key = request.path_params["issue_key"]
    try:
        tail = int(request.query_params.get("tail", 0))
    except ValueError:
        return JSONResponse({"error": "tail must be an integer"}, status_code=400)
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, issue_key)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        entries = task.progress_log[-tail:] if tail > 0 else task.progress_log
        return JSONResponse(entries)
    finally:
        db.close()


async def api_cancel_task(request: Request):
    issue_key = request.path_params["issue_key"]
    db = _get_db()
    try:
        if not dispatch_mod.request_cancellation(db, issue_key):
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse({"issueKey": issue_key, "cancelRequested": True}, status_code=202)
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_summary(t) -> dict:
    return {
        "issueKey": t.issue_key,
        "issueSummary": t.issue_summary,
        "repoName": t.repo_name,
        "branchName": t.branch_name,
        "status": t.status,
        "statusLabel": STATUS_LABELS.get(t.status, t.status),
        "prUrl": t.pr_url,
        "costUsd": t.cost_usd,
        "error": t.error,
        "updatedAt": t.updated_at,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tasks", api_list_tasks),
        Route("/api/summary", api_summary),
        Route("/api/tasks/{issue_key}", api_get_task),
        Route("/api/tasks/{issue_key}/log", api_task_log),
        Route("/api/tasks/{issue_key}/cancel", api_cancel_task, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
