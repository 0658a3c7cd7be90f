"""MCP server exposing the board and the playbook slots."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from daily_playbook.config import get_config
from daily_playbook.core import timer
from daily_playbook.core.board import Board
from daily_playbook.core.sync import ChangeWatcher
from daily_playbook.core.ticker import SlotTicker
from daily_playbook.db.models import BUCKETS
from daily_playbook.errors import PlaybookError


@dataclass
class AppContext:
    board: Board
    config: object
    ticker: SlotTicker | None = None
    watcher: ChangeWatcher | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the board on startup and keep its timers running; close on shutdown."""
    config = get_config()
    board = Board.open(config)

    ticker = SlotTicker(board, config.tick_interval)
    watcher = ChangeWatcher(board, config.db_path, config.poll_interval)
    ticker.start()
    watcher.start()

    try:
        yield AppContext(board=board, config=config, ticker=ticker, watcher=watcher)
    finally:
        ticker.stop()
        watcher.stop()
        board.close()


mcp = FastMCP("daily-playbook", lifespan=app_lifespan)


def _board(ctx: Context) -> Board:
    return ctx.request_context.lifespan_context.board


# ── Board Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def get_board(ctx: Context) -> dict:
    """Get every bucket's tasks and today's eight playbook slots."""
    board = _board(ctx)
    tasks, slots = board.snapshot()
    return {
        "buckets": {
            bucket_id: {
                "label": label,
                "tasks": [_task_to_dict(t) for t in tasks if t.bucket_id == bucket_id],
            }
            for bucket_id, label in BUCKETS
        },
        "slots": [_slot_to_dict(s) for s in slots],
        "pending_logs": board.pending_logs,
    }


@mcp.tool()
def list_tasks(ctx: Context, bucket_id: str, column: str | None = None) -> list[dict] | dict:
    """List a bucket's tasks, highest priority first. Column: todo, in-progress, done."""
    try:
        tasks = _board(ctx).tasks_in_bucket(bucket_id, column)
    except PlaybookError as e:
        return {"error": str(e)}
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    bucket_id: str,
    notes: str = "",
    priority: str = "medium",
) -> dict:
    """Create a task in a bucket. Priority: low, medium (default) or high."""
    try:
        task = _board(ctx).add_task(bucket_id, title, notes=notes, priority=priority)
    except PlaybookError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its subtasks, links and log entries."""
    board = _board(ctx)
    task = board.find_task(task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    d = _task_to_dict(task)
    d["slot"] = board.slot_of(task_id)
    d["subtasks"] = [{"id": s.id, "text": s.text, "checked": s.checked} for s in task.subtasks]
    d["links"] = [{"id": link.id, "url": link.url, "label": link.label} for link in task.links]
    d["log"] = [{"id": e.id, "text": e.text} for e in task.log_entries]
    return d


@mcp.tool()
def update_task(
    ctx: Context,
    task_id: str,
    title: str | None = None,
    notes: str | None = None,
    priority: str | None = None,
    bucket_id: str | None = None,
    column: str | None = None,
) -> dict:
    """Update a task's title, notes, priority, bucket or column."""
    fields = {
        k: v for k, v in
        {"title": title, "notes": notes, "priority": priority, "bucket_id": bucket_id, "column": column}.items()
        if v is not None
    }
    try:
        task = _board(ctx).update_task(task_id, **fields)
    except PlaybookError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task, emptying its playbook slot if it is staged."""
    try:
        _board(ctx).delete_task(task_id)
    except PlaybookError as e:
        return {"error": str(e)}
    return {"deleted": task_id}


@mcp.tool()
def add_log_entry(ctx: Context, task_id: str, text: str) -> dict:
    """Append a progress note to a task's log."""
    try:
        task = _board(ctx).add_log_entry(task_id, text)
    except PlaybookError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


# ── Slot Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def stage_task(ctx: Context, task_id: str, slot_number: int) -> dict:
    """Move a bucket task into playbook slot 1-8. Fails if the slot is occupied."""
    board = _board(ctx)
    try:
        if not board.move_task_to_slot(task_id, slot_number):
            return {"error": f"Slot {slot_number} is already occupied"}
        return _slot_to_dict(board.get_slot(slot_number))
    except PlaybookError as e:
        return {"error": str(e)}


@mcp.tool()
def move_slot(ctx: Context, from_slot: int, to_slot: int) -> dict:
    """Move a staged task to another slot, swapping with whatever is there."""
    board = _board(ctx)
    try:
        moved = board.move_slot_to_slot(from_slot, to_slot)
    except PlaybookError as e:
        return {"error": str(e)}
    return {"moved": moved}


@mcp.tool()
def start_timer(ctx: Context, slot_number: int) -> dict:
    """Start or resume the sprint timer of a slot."""
    return _slot_call(ctx, "start_slot", slot_number)


@mcp.tool()
def pause_timer(ctx: Context, slot_number: int) -> dict:
    """Pause a running sprint timer."""
    return _slot_call(ctx, "pause_slot", slot_number)


@mcp.tool()
def set_timer(ctx: Context, slot_number: int, minutes: int) -> dict:
    """Set the sprint length of a slot in minutes (15, 25, 30, 45, 60, 90 are the presets)."""
    return _slot_call(ctx, "apply_preset", slot_number, minutes * 60)


@mcp.tool()
def complete_slot(ctx: Context, slot_number: int) -> dict:
    """Mark the slot's task done and put it back in its bucket."""
    return _release_call(ctx, "complete_slot", slot_number)


@mcp.tool()
def return_slot(ctx: Context, slot_number: int) -> dict:
    """Send the slot's task back to its bucket as todo."""
    return _release_call(ctx, "return_task_to_bucket", slot_number)


@mcp.tool()
def submit_status_log(ctx: Context, slot_number: int, accomplished: str, next_step: str) -> dict:
    """Answer a slot's status-log prompt: what was accomplished and the next step."""
    try:
        task = _board(ctx).submit_status_log(slot_number, accomplished, next_step)
    except PlaybookError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


def _slot_call(ctx: Context, method: str, *args) -> dict:
    try:
        slot = getattr(_board(ctx), method)(*args)
    except PlaybookError as e:
        return {"error": str(e)}
    return _slot_to_dict(slot)


def _release_call(ctx: Context, method: str, slot_number: int) -> dict:
    try:
        task = getattr(_board(ctx), method)(slot_number)
    except PlaybookError as e:
        return {"error": str(e)}
    if task is None:
        return {"error": f"Slot {slot_number} is empty"}
    return _task_to_dict(task)


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "title": task.title,
        "bucket": task.bucket_id,
        "priority": task.priority,
        "column": task.column,
    }
    if task.notes:
        d["notes"] = task.notes
    return d


def _slot_to_dict(slot) -> dict:
    d = {
        "slot": slot.slot_number,
        "timer_state": slot.timer_state,
        "time_remaining": timer.format_time(slot.time_remaining),
    }
    if slot.task:
        d["task"] = _task_to_dict(slot.task)
    return d
