"""CLI entry point for the daily playbook."""

import contextlib
import json
import logging
import queue
import sys

import click

from daily_playbook.config import get_config
from daily_playbook.core import timer
from daily_playbook.core.board import Board
from daily_playbook.db.models import BUCKET_IDS, BUCKETS, DURATION_PRESETS, PRIORITIES
from daily_playbook.errors import PlaybookError, ValidationError

_BUCKET_LABELS = dict(BUCKETS)


@contextlib.contextmanager
def _open_board():
    """Board on the configured database; board errors exit with status 1."""
    board = Board.open(get_config())
    try:
        yield board
    except PlaybookError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        board.close()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr")
def main(verbose):
    """pb - Daily Playbook CLI"""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage bucket tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--bucket", "-b", required=True, type=click.Choice(BUCKET_IDS), help="Bucket")
@click.option("--notes", "-n", default="", help="Task notes")
@click.option("--priority", "-p", default="medium", type=click.Choice(PRIORITIES), help="Priority")
@click.option("--subtask", "-s", multiple=True, help="Checklist item (repeatable)")
def task_add(title, bucket, notes, priority, subtask):
    """Create a new task."""
    with _open_board() as board:
        task = board.add_task(bucket, title, notes=notes, priority=priority, subtasks=list(subtask))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Bucket: {_BUCKET_LABELS[task.bucket_id]}")
        click.echo(f"  Priority: {task.priority}")


@task_group.command("list")
@click.option("--bucket", "-b", default=None, type=click.Choice(BUCKET_IDS), help="Only this bucket")
@click.option("--column", default=None, help="Filter by column (todo, in-progress, done)")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(bucket, column, json_output):
    """List bucket tasks, highest priority first."""
    with _open_board() as board:
        buckets = [bucket] if bucket else BUCKET_IDS
        grouped = {b: board.tasks_in_bucket(b, column) for b in buckets}

        if json_output:
            click.echo(json.dumps({b: [_task_dict(t) for t in ts] for b, ts in grouped.items()}, indent=2))
            return

        if not any(grouped.values()):
            click.echo("No tasks found.")
            return

        column_icons = {"todo": "○", "in-progress": "●", "done": "✓"}
        for bucket_id, tasks in grouped.items():
            if not tasks:
                continue
            click.echo(_BUCKET_LABELS[bucket_id])
            for task in tasks:
                icon = column_icons.get(task.column, "?")
                click.echo(f"  {icon} [{task.priority}] {task.id}: {task.title}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _open_board() as board:
        task = board.find_task(task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Bucket: {_BUCKET_LABELS[task.bucket_id]}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Column: {task.column}")
        slot_number = board.slot_of(task_id)
        if slot_number:
            click.echo(f"  Slot: {slot_number}")
        if task.notes:
            click.echo(f"  Notes: {task.notes}")
        for sub in task.subtasks:
            click.echo(f"    [{'x' if sub.checked else ' '}] {sub.text}")
        for link in task.links:
            click.echo(f"    {link.label or link.url} <{link.url}>")
        if task.log_entries:
            click.echo("  Log:")
            for entry in task.log_entries:
                stamp = entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else ""
                click.echo(f"    {stamp} {entry.text}")


@task_group.command("rename")
@click.argument("task_id")
@click.argument("title")
def task_rename(task_id, title):
    """Rename a task."""
    with _open_board() as board:
        task = board.rename_task(task_id, title)
        click.echo(f"Task '{task.id}' renamed to: {task.title}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority", type=click.Choice(PRIORITIES))
def task_priority(task_id, priority):
    """Set a task's priority."""
    with _open_board() as board:
        task = board.set_priority(task_id, priority)
        click.echo(f"Task '{task.id}' priority -> {task.priority}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("bucket", type=click.Choice(BUCKET_IDS))
def task_move(task_id, bucket):
    """Move a task to another bucket."""
    with _open_board() as board:
        task = board.move_task_to_bucket(task_id, bucket)
        click.echo(f"Task '{task.id}' moved to {_BUCKET_LABELS[task.bucket_id]}")


@task_group.command("done")
@click.argument("task_id")
def task_done(task_id):
    """Mark a task done, releasing its slot if it is staged."""
    with _open_board() as board:
        task = board.mark_done(task_id)
        click.echo(f"Task '{task.id}' done")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    with _open_board() as board:
        board.delete_task(task_id)
        click.echo(f"Task '{task_id}' deleted")


@task_group.command("log")
@click.argument("task_id")
@click.argument("text")
def task_log(task_id, text):
    """Add a progress note to a task."""
    with _open_board() as board:
        task = board.add_log_entry(task_id, text)
        click.echo(f"Logged on '{task.id}' ({len(task.log_entries)} entries)")


# ── Slot Commands ─────────────────────────────────────────────────────────────


@main.group("slot")
def slot_group():
    """Manage today's playbook slots."""
    pass


@slot_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def slot_list(json_output):
    """Show the eight slots."""
    with _open_board() as board:
        _, slots = board.snapshot()
        if json_output:
            click.echo(json.dumps([_slot_dict(s) for s in slots], indent=2))
            return

        focus = board.focus_slot()
        click.echo(f"Playbook for {board.playbook_date.isoformat()}")
        for slot in slots:
            marker = "»" if focus and focus.slot_number == slot.slot_number else " "
            if slot.task is None:
                click.echo(f" {marker}{slot.slot_number}. (empty)")
                continue
            click.echo(
                f" {marker}{slot.slot_number}. {slot.task.title} "
                f"[{slot.timer_state} {timer.format_time(slot.time_remaining)}]"
            )


@slot_group.command("stage")
@click.argument("task_id")
@click.argument("slot_number", type=click.IntRange(1, 8))
def slot_stage(task_id, slot_number):
    """Move a bucket task into a slot."""
    with _open_board() as board:
        if not board.move_task_to_slot(task_id, slot_number):
            click.echo(f"Slot {slot_number} is already occupied", err=True)
            sys.exit(1)
        click.echo(f"Staged '{task_id}' in slot {slot_number}")


@slot_group.command("move")
@click.argument("from_slot", type=click.IntRange(1, 8))
@click.argument("to_slot", type=click.IntRange(1, 8))
def slot_move(from_slot, to_slot):
    """Move a staged task to another slot (swapping if occupied)."""
    with _open_board() as board:
        if not board.move_slot_to_slot(from_slot, to_slot):
            click.echo("Nothing moved.")
            return
        click.echo(f"Moved slot {from_slot} -> {to_slot}")


@slot_group.command("start")
@click.argument("slot_number", type=click.IntRange(1, 8))
def slot_start(slot_number):
    """Start or resume a slot's timer. Use `pb watch` to keep it ticking."""
    with _open_board() as board:
        slot = board.start_slot(slot_number)
        click.echo(f"Slot {slot_number} {slot.timer_state} ({timer.format_time(slot.time_remaining)})")


@slot_group.command("pause")
@click.argument("slot_number", type=click.IntRange(1, 8))
def slot_pause(slot_number):
    """Pause a slot's timer."""
    with _open_board() as board:
        slot = board.pause_slot(slot_number)
        click.echo(f"Slot {slot_number} {slot.timer_state} ({timer.format_time(slot.time_remaining)})")


@slot_group.command("complete")
@click.argument("slot_number", type=click.IntRange(1, 8))
def slot_complete(slot_number):
    """Mark a slot's task done."""
    with _open_board() as board:
        task = board.complete_slot(slot_number)
        if task is None:
            click.echo(f"Slot {slot_number} is empty", err=True)
            sys.exit(1)
        click.echo(f"Completed '{task.title}'")


@slot_group.command("return")
@click.argument("slot_number", type=click.IntRange(1, 8))
def slot_return(slot_number):
    """Send a slot's task back to its bucket."""
    with _open_board() as board:
        task = board.return_task_to_bucket(slot_number)
        if task is None:
            click.echo(f"Slot {slot_number} is empty", err=True)
            sys.exit(1)
        click.echo(f"Returned '{task.title}' to {_BUCKET_LABELS[task.bucket_id]}")


@slot_group.command("duration")
@click.argument("slot_number", type=click.IntRange(1, 8))
@click.argument("remaining")
def slot_duration(slot_number, remaining):
    """Set the remaining time, as MM:SS or whole minutes."""
    seconds = _parse_duration(remaining)
    with _open_board() as board:
        _require_staged(board, slot_number)
        slot = board.set_slot_duration(slot_number, seconds)
        click.echo(f"Slot {slot_number}: {timer.format_time(slot.time_remaining)} left")


@slot_group.command("preset")
@click.argument("slot_number", type=click.IntRange(1, 8))
@click.argument("minutes", type=click.Choice([str(s // 60) for s in DURATION_PRESETS]))
def slot_preset(slot_number, minutes):
    """Apply a sprint length preset to a staged slot."""
    with _open_board() as board:
        _require_staged(board, slot_number)
        slot = board.apply_preset(slot_number, int(minutes) * 60)
        click.echo(f"Slot {slot_number}: {timer.format_time(slot.time_remaining)} sprint")


@slot_group.command("log")
@click.argument("slot_number", type=click.IntRange(1, 8))
@click.option("--accomplished", "-a", prompt="What did you accomplish?", help="What got done")
@click.option("--next-step", "-n", prompt="What's the next step?", help="What comes next")
def slot_log(slot_number, accomplished, next_step):
    """Submit the status log for a slot whose sprint is ending."""
    with _open_board() as board:
        task = board.submit_status_log(slot_number, accomplished, next_step)
        click.echo(f"Logged and completed '{task.title}'")


# ── Live Commands ─────────────────────────────────────────────────────────────


@main.command("watch")
def watch_command():
    """Keep running timers ticking and ask for status logs as sprints end."""
    from daily_playbook.core.sync import ChangeWatcher
    from daily_playbook.core.ticker import SlotTicker

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(message)s")
    config = get_config()
    board = Board.open(config)
    due: queue.Queue[int] = queue.Queue()
    board.on_log_required(due.put)
    for slot_number in board.pending_logs:
        due.put(slot_number)

    ticker = SlotTicker(board, config.tick_interval)
    watcher = ChangeWatcher(board, config.db_path, config.poll_interval)
    ticker.start()
    watcher.start()
    click.echo("Watching the playbook. Ctrl-C to stop.")
    try:
        while True:
            try:
                slot_number = due.get(timeout=60)
            except queue.Empty:
                focus = board.focus_slot()
                if focus:
                    click.echo(
                        f"  » slot {focus.slot_number}: {focus.task.title} "
                        f"{timer.format_time(focus.time_remaining)}"
                    )
                continue
            slot = board.get_slot(slot_number)
            if slot.task is None or slot.timer_state != "logging":
                continue
            click.echo(f"\nSlot {slot_number} ({slot.task.title}) is wrapping up.")
            accomplished = click.prompt("What did you accomplish?")
            next_step = click.prompt("What's the next step?")
            try:
                board.submit_status_log(slot_number, accomplished, next_step)
                click.echo("Logged.")
            except PlaybookError as e:
                click.echo(f"Error: {e}", err=True)
    except (KeyboardInterrupt, click.Abort):
        click.echo("\nStopped.")
    finally:
        ticker.stop()
        watcher.stop()
        board.close()


@main.command("chat")
@click.option("--stream", is_flag=True, help="Stream plain replies (no board actions)")
def chat_command(stream):
    """Talk to the assistant about your board."""
    from daily_playbook.assistant.bridge import AssistantBridge
    from daily_playbook.assistant.client import ChatError, get_completer

    config = get_config()
    completer = get_completer(config)
    board = Board.open(config)
    bridge = AssistantBridge(board, completer)
    bridge.open()
    click.echo(bridge.transcript[0].content)
    try:
        while True:
            text = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
            if text.strip() in ("/quit", "/exit"):
                break
            if not text.strip():
                continue
            try:
                if stream:
                    for delta in bridge.stream(text):
                        click.echo(delta, nl=False)
                    click.echo()
                    continue
                for entry in bridge.send(text) or []:
                    click.echo(entry.content)
            except ChatError as e:
                click.echo(f"Error: {e}", err=True)
    except (KeyboardInterrupt, click.Abort):
        click.echo()
    finally:
        bridge.close()
        completer.close()
        board.close()


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API with the timers and change watcher."""
    from daily_playbook.web.app import run_server

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    click.echo(f"Serving the playbook API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from daily_playbook.mcp.server import mcp
    from daily_playbook.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _require_staged(board, slot_number: int):
    # an empty slot keeps its timer only in memory, which ends with this process
    if board.get_slot(slot_number).task is None:
        raise ValidationError(f"Slot {slot_number} is empty; stage a task first")


def _parse_duration(text: str) -> int:
    try:
        if ":" in text:
            minutes, seconds = text.split(":", 1)
            return int(minutes) * 60 + int(seconds)
        return int(text) * 60
    except ValueError:
        raise click.BadParameter(f"expected MM:SS or minutes, got {text!r}")


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "bucket": task.bucket_id,
        "priority": task.priority,
        "column": task.column,
        "notes": task.notes,
    }


def _slot_dict(slot) -> dict:
    return {
        "slot": slot.slot_number,
        "task": _task_dict(slot.task) if slot.task else None,
        "timer_state": slot.timer_state,
        "time_remaining": slot.time_remaining,
        "sprint_duration": slot.sprint_duration,
    }


if __name__ == "__main__":
    main()
