"""JSON HTTP API over the board, plus the chat endpoint."""

import contextlib
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from daily_playbook.assistant.bridge import AssistantBridge
from daily_playbook.assistant.client import ChatError, Gateway, get_completer
from daily_playbook.config import get_config
from daily_playbook.core import timer
from daily_playbook.core.board import Board
from daily_playbook.core.sync import ChangeWatcher
from daily_playbook.core.ticker import SlotTicker
from daily_playbook.db.models import BUCKET_IDS, BUCKETS
from daily_playbook.errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)


def _board(request: Request) -> Board:
    return request.app.state.board


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Board ─────────────────────────────────────────────────────────────────────


async def api_board(request: Request):
    board = _board(request)
    tasks, slots = board.snapshot()
    focus = board.focus_slot()
    return JSONResponse({
        "playbook_date": board.playbook_date.isoformat(),
        "buckets": [
            {
                "id": bucket_id,
                "label": label,
                "tasks": [_task_dict(t) for t in tasks if t.bucket_id == bucket_id],
            }
            for bucket_id, label in BUCKETS
        ],
        "slots": [_slot_dict(s) for s in slots],
        "focus_slot": focus.slot_number if focus else None,
        "pending_logs": board.pending_logs,
    })


async def api_bucket_tasks(request: Request):
    bucket_id = request.path_params["bucket_id"]
    if bucket_id not in BUCKET_IDS:
        return JSONResponse({"error": f"Unknown bucket: {bucket_id}"}, status_code=404)
    column = request.query_params.get("column")
    tasks = _board(request).tasks_in_bucket(bucket_id, column)
    return JSONResponse([_task_dict(t) for t in tasks])


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_create_task(request: Request):
    body = await _body(request)
    links = [(link.get("url", ""), link.get("label", "")) for link in body.get("links") or []]
    task = _board(request).add_task(
        body.get("bucket_id", ""),
        body.get("title", ""),
        notes=body.get("notes", ""),
        priority=body.get("priority", "medium"),
        subtasks=body.get("subtasks"),
        links=links,
    )
    return JSONResponse(_task_dict(task), status_code=201)


async def api_get_task(request: Request):
    board = _board(request)
    task_id = request.path_params["task_id"]
    task = board.find_task(task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = _task_dict(task)
    td["slot"] = board.slot_of(task_id)
    return JSONResponse(td)


_TASK_FIELDS = ("title", "notes", "priority", "bucket_id", "column")


async def api_update_task(request: Request):
    body = await _body(request)
    unknown = sorted(set(body) - set(_TASK_FIELDS) - {"task_id"})
    if unknown:
        raise ValidationError(f"Unknown task field: {', '.join(unknown)}")
    task = _board(request).update_task(
        request.path_params["task_id"],
        **{k: body[k] for k in _TASK_FIELDS if body.get(k) is not None},
    )
    return JSONResponse(_task_dict(task))


async def api_delete_task(request: Request):
    task = _board(request).delete_task(request.path_params["task_id"])
    return JSONResponse(_task_dict(task))


async def api_add_log(request: Request):
    body = await _body(request)
    task = _board(request).add_log_entry(request.path_params["task_id"], body.get("text", ""))
    return JSONResponse(_task_dict(task), status_code=201)


async def api_edit_log(request: Request):
    body = await _body(request)
    task = _board(request).edit_log_entry(
        request.path_params["task_id"], request.path_params["entry_id"], body.get("text", "")
    )
    return JSONResponse(_task_dict(task))


# ── Slots ─────────────────────────────────────────────────────────────────────


async def api_slot_action(request: Request):
    board = _board(request)
    n = request.path_params["slot_number"]
    action = request.path_params["action"]
    body = await _body(request) if action not in ("start", "pause", "complete", "return") else {}

    if action == "stage":
        task_id = body.get("task_id", "")
        if not board.move_task_to_slot(task_id, n):
            return JSONResponse({"error": f"Slot {n} is occupied"}, status_code=409)
        return JSONResponse(_slot_dict(board.get_slot(n)))
    if action == "move":
        to_slot = body.get("to_slot")
        moved = board.move_slot_to_slot(n, to_slot)
        return JSONResponse({"moved": moved, "slots": [
            _slot_dict(board.get_slot(n)), _slot_dict(board.get_slot(to_slot))
        ]})
    if action in ("complete", "return", "log"):
        if action == "complete":
            task = board.complete_slot(n)
        elif action == "return":
            task = board.return_task_to_bucket(n)
        else:
            task = board.submit_status_log(n, body.get("accomplished", ""), body.get("next_step", ""))
        return JSONResponse({"task": _task_dict(task) if task else None})

    handlers = {
        "start": lambda: board.start_slot(n),
        "pause": lambda: board.pause_slot(n),
        "duration": lambda: board.set_slot_duration(n, _int(body, "seconds")),
        "preset": lambda: board.apply_preset(n, _int(body, "seconds")),
        "skip": lambda: board.skip_slot(n, _int(body, "delta")),
        "scrub": lambda: board.scrub_slot(n, _float(body, "fraction")),
    }
    handler = handlers.get(action)
    if handler is None:
        return JSONResponse({"error": f"Unknown slot action: {action}"}, status_code=404)
    return JSONResponse(_slot_dict(handler()))


def _int(body: dict, key: str) -> int:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{key}' must be an integer")
    return value


def _float(body: dict, key: str) -> float:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'{key}' must be a number")
    return float(value)


# ── Chat ──────────────────────────────────────────────────────────────────────


async def api_chat(request: Request):
    """Chat endpoint: ``{messages, context, stream?}``."""
    body = await _body(request)
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise ValidationError("'messages' must be a list")
    context = body.get("context")
    gateway = request.app.state.gateway

    if body.get("stream"):
        deltas = gateway.stream(messages, context)
        return StreamingResponse(_sse(deltas), media_type="text/event-stream")

    reply = await run_in_threadpool(gateway.complete, messages, context)
    return JSONResponse({"message": reply.to_message()})


def _sse(deltas):
    try:
        for delta in deltas:
            yield f"data: {json.dumps({'choices': [{'delta': {'content': delta}}]})}\n\n"
    except ChatError as e:
        logger.warning("Chat stream failed: %s", e)
        yield f"data: {json.dumps({'error': str(e)})}\n\n"
    yield "data: [DONE]\n\n"


async def api_assistant(request: Request):
    """Run one assistant turn server-side; GET returns the transcript and
    DELETE closes the panel, dropping any turn still in flight."""
    bridge: AssistantBridge = request.app.state.bridge
    if request.method == "GET":
        return JSONResponse({
            "open": request.app.state.board.chat_open,
            "busy": bridge.busy,
            "transcript": [_entry_dict(e) for e in bridge.transcript],
        })
    if request.method == "DELETE":
        bridge.close()
        return JSONResponse({"open": False, "busy": bridge.busy})
    body = await _body(request)
    bridge.open()
    entries = await run_in_threadpool(bridge.send, body.get("message", ""))
    return JSONResponse({
        "superseded": entries is None,
        "entries": [_entry_dict(e) for e in entries or []],
    })


# ── Errors ────────────────────────────────────────────────────────────────────


async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _invalid(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _store_failed(request: Request, exc: StoreError):
    return JSONResponse({"error": str(exc)}, status_code=503)


async def _chat_failed(request: Request, exc: ChatError):
    status = exc.status_code if exc.status_code in (402, 429) else 502
    return JSONResponse({"error": str(exc)}, status_code=status)


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "bucket_id": t.bucket_id,
        "notes": t.notes,
        "priority": t.priority,
        "column": t.column,
        "subtasks": [{"id": s.id, "text": s.text, "checked": s.checked} for s in t.subtasks],
        "links": [{"id": link.id, "url": link.url, "label": link.label} for link in t.links],
        "log_entries": [_log_dict(e) for e in t.log_entries],
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def _log_dict(e) -> dict:
    return {
        "id": e.id,
        "text": e.text,
        "created_at": e.created_at.isoformat() if e.created_at else None,
        "updated_at": e.updated_at.isoformat() if e.updated_at else None,
    }


def _slot_dict(s) -> dict:
    return {
        "slot_number": s.slot_number,
        "task": _task_dict(s.task) if s.task else None,
        "timer_state": s.timer_state,
        "time_remaining": s.time_remaining,
        "sprint_duration": s.sprint_duration,
        "display": timer.format_time(s.time_remaining),
        "progress": round(timer.progress(s), 4),
    }


def _entry_dict(e) -> dict:
    return {"role": e.role, "content": e.content, "kind": e.kind}


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(board: Board | None = None, completer=None, gateway=None) -> Starlette:
    """Build the API. Without a board, one is opened from the environment and
    the ticker and change watcher run for the app's lifetime."""
    config = get_config()
    owns_board = board is None

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        ticker = watcher = None
        if owns_board:
            ticker = SlotTicker(app.state.board, config.tick_interval)
            watcher = ChangeWatcher(app.state.board, config.db_path, config.poll_interval)
            ticker.start()
            watcher.start()
        try:
            yield
        finally:
            if ticker:
                ticker.stop()
            if watcher:
                watcher.stop()
            if owns_board:
                app.state.board.close()

    routes = [
        Route("/api/board", api_board),
        Route("/api/buckets/{bucket_id}", api_bucket_tasks),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/logs", api_add_log, methods=["POST"]),
        Route("/api/tasks/{task_id}/logs/{entry_id:int}", api_edit_log, methods=["PATCH"]),
        Route("/api/slots/{slot_number:int}/{action}", api_slot_action, methods=["POST"]),
        Route("/api/chat", api_chat, methods=["POST"]),
        Route("/api/assistant", api_assistant, methods=["GET", "POST", "DELETE"]),
    ]
    exception_handlers = {
        NotFoundError: _not_found,
        ValidationError: _invalid,
        StoreError: _store_failed,
        ChatError: _chat_failed,
    }
    app = Starlette(routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)

    app.state.board = board or Board.open(config)
    app.state.gateway = gateway or Gateway(
        config.llm_base_url, config.llm_api_key, config.llm_model, config.chat_timeout
    )
    app.state.bridge = AssistantBridge(app.state.board, completer or get_completer(config))
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
