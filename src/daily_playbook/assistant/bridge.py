"""The assistant bridge: chat turns in, board actions out.

A turn is a two-step exchange. The user's message goes to the completion
endpoint along with a snapshot of the board. If the reply carries tool calls
they are run one by one against the board (a failing action is reported and
the rest still run). When the reply had actions but no prose, a second
request asks the model to confirm what was done; if that fails, the result
lines stand on their own.
"""

import json
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass

from daily_playbook.assistant.catalog import FOLLOW_UP_PROMPT, GREETING
from daily_playbook.assistant.client import ChatError, ToolCall
from daily_playbook.db.models import BUCKETS
from daily_playbook.errors import NotFoundError, PlaybookError, ValidationError

logger = logging.getLogger(__name__)

_BUCKET_LABELS = dict(BUCKETS)


@dataclass
class ChatEntry:
    role: str
    content: str
    kind: str = "message"  # greeting, message or actions


@dataclass
class ActionResult:
    ok: bool
    text: str

    def line(self) -> str:
        return f"{'✓' if self.ok else '✗'} {self.text}"


def _ok(text: str) -> ActionResult:
    return ActionResult(True, text)


def _fail(text: str) -> ActionResult:
    return ActionResult(False, text)


class AssistantBridge:
    def __init__(self, board, completer):
        self.board = board
        self.completer = completer
        self.transcript: list[ChatEntry] = [ChatEntry("assistant", GREETING, "greeting")]
        self.busy = False
        self._generation = 0
        self._lock = threading.Lock()
        self._handlers = {
            "create_tasks": self._create_tasks,
            "rename_task": self._rename_task,
            "delete_tasks": self._delete_tasks,
            "move_task_to_slot": self._move_task_to_slot,
            "update_task_priority": self._update_task_priority,
            "move_task_to_bucket": self._move_task_to_bucket,
        }

    # ── Request bookkeeping ───────────────────────────────────────────────────

    def _begin(self) -> int:
        with self._lock:
            self._generation += 1
            self.busy = True
            return self._generation

    def _is_current(self, token: int) -> bool:
        return token == self._generation

    def _finish(self, token: int):
        with self._lock:
            if self._is_current(token):
                self.busy = False

    def cancel(self):
        """Abandon the request in flight; its response will be ignored."""
        with self._lock:
            self._generation += 1
            self.busy = False

    def open(self):
        self.board.set_chat_open(True)

    def close(self):
        """The chat panel went away: drop the request in flight with it."""
        self.cancel()
        self.board.set_chat_open(False)

    def history(self) -> list[dict]:
        return [
            {"role": e.role, "content": e.content}
            for e in self.transcript
            if e.kind != "greeting"
        ]

    # ── Turns ─────────────────────────────────────────────────────────────────

    def send(self, text: str) -> list[ChatEntry] | None:
        """Run one chat turn. Returns the new transcript entries, or None when
        a newer request or ``cancel()`` superseded this one."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message must not be empty")

        token = self._begin()
        self.transcript.append(ChatEntry("user", text))
        try:
            reply = self.completer.complete(self.history(), self.board.context())
            if not self._is_current(token):
                logger.info("Discarding superseded chat response")
                return None

            if not reply.tool_calls:
                entries = [ChatEntry("assistant", reply.content.strip() or "(no response)")]
                self.transcript.extend(entries)
                return entries

            results = self.execute(reply.tool_calls)
            summary = "\n".join(r.line() for r in results)
            entries = [ChatEntry("assistant", summary, "actions")]
            prose = reply.content.strip()
            if not prose:
                prose = self._follow_up(summary, token)
            if prose:
                entries.append(ChatEntry("assistant", prose))
            self.transcript.extend(entries)
            return entries
        finally:
            self._finish(token)

    def _follow_up(self, summary: str, token: int) -> str:
        messages = self.history() + [
            {"role": "assistant", "content": f"Actions taken:\n{summary}"},
            {"role": "user", "content": FOLLOW_UP_PROMPT},
        ]
        try:
            reply = self.completer.complete(messages, self.board.context())
        except ChatError as e:
            logger.warning("Follow-up confirmation failed: %s", e)
            return ""
        if not self._is_current(token):
            return ""
        return reply.content.strip()

    def stream(self, text: str) -> Iterator[str]:
        """Plain chat without actions, streamed. Deltas are appended to the
        last assistant entry as they arrive and also yielded."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message must not be empty")

        token = self._begin()
        self.transcript.append(ChatEntry("user", text))
        messages = self.history()
        entry = ChatEntry("assistant", "")
        self.transcript.append(entry)
        try:
            for delta in self.completer.stream(
                messages, self.board.context(), cancelled=lambda: not self._is_current(token)
            ):
                if not self._is_current(token):
                    break
                entry.content += delta
                yield delta
        except ChatError:
            if not entry.content:
                self.transcript.remove(entry)
            raise
        finally:
            self._finish(token)

    # ── Actions ───────────────────────────────────────────────────────────────

    def execute(self, tool_calls: list[ToolCall]) -> list[ActionResult]:
        """Run tool calls in order. Failures are recorded, never raised."""
        results = []
        for call in tool_calls:
            handler = self._handlers.get(call.name)
            if handler is None:
                results.append(_fail(f"Unknown action: {call.name}"))
                continue
            try:
                args = json.loads(call.arguments or "{}")
            except json.JSONDecodeError:
                results.append(_fail(f"{call.name}: arguments are not valid JSON"))
                continue
            if not isinstance(args, dict):
                results.append(_fail(f"{call.name}: arguments must be an object"))
                continue
            try:
                results.extend(handler(args))
            except (PlaybookError, KeyError, TypeError, ValueError) as e:
                results.append(_fail(f"{call.name}: {_describe(e)}"))
            except Exception as e:
                logger.exception("Action %s failed", call.name)
                results.append(_fail(f"{call.name}: {e}"))
        return results

    def _create_tasks(self, args: dict) -> list[ActionResult]:
        results = []
        for item in args["tasks"]:
            if not isinstance(item, dict):
                results.append(_fail(f"Could not create task from {item!r}: expected an object"))
                continue
            title = item.get("title", "")
            try:
                task = self.board.add_task(
                    item["bucket_id"],
                    title,
                    notes=item.get("description") or "",
                    priority=item.get("priority") or "medium",
                )
            except (PlaybookError, KeyError, TypeError) as e:
                results.append(_fail(f'Could not create "{title}": {_describe(e)}'))
                continue
            results.append(
                _ok(f'Created "{task.title}" in {_BUCKET_LABELS[task.bucket_id]} ({task.priority})')
            )
        return results

    def _rename_task(self, args: dict) -> list[ActionResult]:
        old = self._title(args["task_id"])
        task = self.board.rename_task(args["task_id"], args["new_title"])
        return [_ok(f'Renamed "{old}" to "{task.title}"')]

    def _delete_tasks(self, args: dict) -> list[ActionResult]:
        results = []
        for task_id in args["task_ids"]:
            try:
                task = self.board.delete_task(task_id)
            except PlaybookError as e:
                results.append(_fail(f"Could not delete {task_id}: {e}"))
                continue
            results.append(_ok(f'Deleted "{task.title}"'))
        return results

    def _move_task_to_slot(self, args: dict) -> list[ActionResult]:
        slot_number = _slot_number(args["slot_number"])
        title = self._title(args["task_id"])
        if not self.board.move_task_to_slot(args["task_id"], slot_number):
            return [_fail(f'Slot {slot_number} is already occupied; "{title}" was not moved')]
        return [_ok(f'Moved "{title}" to slot {slot_number}')]

    def _update_task_priority(self, args: dict) -> list[ActionResult]:
        task = self.board.set_priority(args["task_id"], args["priority"])
        return [_ok(f'Set "{task.title}" priority to {task.priority}')]

    def _move_task_to_bucket(self, args: dict) -> list[ActionResult]:
        task = self.board.move_task_to_bucket(args["task_id"], args["new_bucket_id"])
        return [_ok(f'Moved "{task.title}" to {_BUCKET_LABELS[task.bucket_id]}')]

    def _title(self, task_id: str) -> str:
        task = self.board.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task.title


def _slot_number(value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid slot number: {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"Invalid slot number: {value!r}")
        return int(value)
    return int(value)


def _describe(e: Exception) -> str:
    if isinstance(e, KeyError):
        return f"missing {e.args[0]!r}"
    return str(e)
