"""Tests for the assistant bridge and the completion endpoints."""

import json
import tempfile
from datetime import date
from pathlib import Path

import httpx
import pytest

from daily_playbook.assistant.bridge import AssistantBridge
from daily_playbook.assistant.catalog import GREETING, TOOL_NAMES, build_system_prompt
from daily_playbook.assistant.client import (
    ChatClient,
    ChatError,
    ChatReply,
    Gateway,
    QuotaExceededError,
    RateLimitError,
    ToolCall,
    iter_sse_deltas,
)
from daily_playbook.core.board import Board
from daily_playbook.db.engine import init_db
from daily_playbook.errors import ValidationError


class FakeCompleter:
    """Hands out queued replies (or raises queued errors) and records requests."""

    def __init__(self, *replies, deltas=None, on_complete=None):
        self.replies = list(replies)
        self.deltas = deltas or []
        self.on_complete = on_complete
        self.requests = []

    def complete(self, messages, context=None):
        self.requests.append((messages, context))
        if self.on_complete:
            self.on_complete()
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def stream(self, messages, context=None, cancelled=None):
        self.requests.append((messages, context))
        for delta in self.deltas:
            if cancelled and cancelled():
                return
            yield delta


def _call(name, **arguments):
    return ToolCall(id=f"call_{name}", name=name, arguments=json.dumps(arguments))


@pytest.fixture
def board():
    with tempfile.TemporaryDirectory() as tmp:
        b = Board(init_db(Path(tmp) / "test.db"), today=lambda: date(2026, 3, 2))
        yield b
        b.close()


class TestCatalog:
    def test_closed_action_set(self):
        assert TOOL_NAMES == [
            "create_tasks",
            "rename_task",
            "delete_tasks",
            "move_task_to_slot",
            "update_task_priority",
            "move_task_to_bucket",
        ]

    def test_system_prompt_carries_board(self, board):
        board.add_task("finance", "Pay invoices")
        prompt = build_system_prompt(board.context())
        assert "pay-invoices" in prompt

    def test_context_shape(self, board):
        a = board.add_task("finance", "A")
        board.add_task("music", "B")
        board.move_task_to_slot(a.id, 2)
        ctx = board.context()
        assert set(ctx["buckets"]) >= {"finance", "music"}
        assert ctx["buckets"]["music"][0]["title"] == "B"
        assert ctx["playbook"] == [
            {"slot": 2, "task_id": a.id, "title": "A", "timer_state": "idle"}
        ]
        assert ctx["empty_slots"] == [1, 3, 4, 5, 6, 7, 8]


class TestBridge:
    def test_greeting_not_sent_as_history(self, board):
        completer = FakeCompleter(ChatReply(content="Hi!"))
        bridge = AssistantBridge(board, completer)
        assert bridge.transcript[0].content == GREETING
        entries = bridge.send("hello")
        assert entries[0].content == "Hi!"
        messages, context = completer.requests[0]
        assert messages == [{"role": "user", "content": "hello"}]
        assert "buckets" in context

    def test_create_two_finance_tasks(self, board):
        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("create_tasks", tasks=[
                {"title": "Pay invoice", "bucket_id": "finance", "priority": "high"},
                {"title": "Reconcile ledger", "bucket_id": "finance", "priority": "high"},
            ])]),
            ChatReply(content="Added both to Finance."),
        )
        bridge = AssistantBridge(board, completer)
        entries = bridge.send("add two finance tasks")

        actions = entries[0]
        assert actions.kind == "actions"
        lines = actions.content.splitlines()
        assert len(lines) == 2
        assert all(line.startswith("✓") for line in lines)
        assert entries[1].content == "Added both to Finance."
        finance = board.tasks_in_bucket("finance")
        assert [t.title for t in finance] == ["Pay invoice", "Reconcile ledger"]
        assert all(t.priority == "high" for t in finance)
        assert len(completer.requests) == 2

    def test_prose_with_actions_skips_follow_up(self, board):
        completer = FakeCompleter(
            ChatReply(content="Done, it's in Ads.", tool_calls=[
                _call("create_tasks", tasks=[{"title": "New ad", "bucket_id": "ads"}]),
            ]),
        )
        bridge = AssistantBridge(board, completer)
        entries = bridge.send("add an ad task")
        assert [e.kind for e in entries] == ["actions", "message"]
        assert len(completer.requests) == 1

    def test_failures_do_not_stop_later_actions(self, board):
        board.add_task("admin", "Book accountant")
        completer = FakeCompleter(
            ChatReply(tool_calls=[
                _call("rename_task", task_id="ghost", new_title="Boo"),
                ToolCall(id="x", name="update_task_priority", arguments="{not json"),
                _call("launch_rockets"),
                _call("update_task_priority", task_id="book-accountant", priority="high"),
            ]),
            ChatReply(content="Partly done."),
        )
        bridge = AssistantBridge(board, completer)
        lines = bridge.send("do things")[0].content.splitlines()
        assert [line[0] for line in lines] == ["✗", "✗", "✗", "✓"]
        assert board.find_task("book-accountant").priority == "high"

    def test_malformed_item_does_not_stop_batch(self, board):
        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("create_tasks", tasks=[
                "Pay invoice",
                {"title": "Reconcile ledger", "bucket_id": "finance"},
            ])]),
            ChatReply(content="One of them worked."),
        )
        lines = AssistantBridge(board, completer).send("add tasks")[0].content.splitlines()
        assert [line[0] for line in lines] == ["✗", "✓"]
        assert "expected an object" in lines[0]
        assert [t.title for t in board.tasks_in_bucket("finance")] == ["Reconcile ledger"]

    def test_occupied_slot_is_a_failure_line(self, board):
        a = board.add_task("finance", "A")
        b = board.add_task("finance", "B")
        board.move_task_to_slot(a.id, 1)
        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("move_task_to_slot", task_id=b.id, slot_number=1)]),
            ChatReply(content="Slot 1 was taken."),
        )
        bridge = AssistantBridge(board, completer)
        line = bridge.send("put B in slot 1")[0].content
        assert line.startswith("✗")
        assert board.get_slot(1).task.id == a.id

    def test_slot_number_may_arrive_as_string(self, board):
        a = board.add_task("finance", "A")
        completer = FakeCompleter(
            ChatReply(tool_calls=[
                ToolCall(id="c", name="move_task_to_slot",
                         arguments=json.dumps({"task_id": a.id, "slot_number": "4"})),
            ]),
            ChatReply(content="ok"),
        )
        AssistantBridge(board, completer).send("stage A")
        assert board.get_slot(4).task.id == a.id

    def test_delete_reports_each_task(self, board):
        board.add_task("content", "Old post")
        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("delete_tasks", task_ids=["old-post", "ghost"])]),
            ChatReply(content="ok"),
        )
        lines = AssistantBridge(board, completer).send("clean up")[0].content.splitlines()
        assert lines[0].startswith("✓")
        assert lines[1].startswith("✗")

    def test_follow_up_failure_keeps_result_lines(self, board):
        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("create_tasks", tasks=[{"title": "X", "bucket_id": "ads"}])]),
            ChatError("upstream down", 502),
        )
        bridge = AssistantBridge(board, completer)
        entries = bridge.send("add X")
        assert len(entries) == 1
        assert entries[0].kind == "actions"
        assert not bridge.busy

    def test_error_keeps_user_entry(self, board):
        completer = FakeCompleter(RateLimitError("slow down", 429))
        bridge = AssistantBridge(board, completer)
        with pytest.raises(RateLimitError):
            bridge.send("hello")
        assert bridge.transcript[-1].role == "user"
        assert bridge.transcript[-1].content == "hello"
        assert not bridge.busy

    def test_empty_message_rejected(self, board):
        bridge = AssistantBridge(board, FakeCompleter())
        with pytest.raises(ValidationError):
            bridge.send("   ")

    def test_superseded_response_is_discarded(self, board):
        bridge = None

        def supersede():
            bridge.cancel()

        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("create_tasks", tasks=[{"title": "X", "bucket_id": "ads"}])]),
            on_complete=supersede,
        )
        bridge = AssistantBridge(board, completer)
        assert bridge.send("add X") is None
        assert board.tasks_in_bucket("ads") == []
        assert [e.role for e in bridge.transcript] == ["assistant", "user"]

    def test_close_discards_turn_and_closes_panel(self, board):
        bridge = None

        def close_panel():
            bridge.close()

        completer = FakeCompleter(
            ChatReply(tool_calls=[_call("create_tasks", tasks=[{"title": "X", "bucket_id": "ads"}])]),
            on_complete=close_panel,
        )
        bridge = AssistantBridge(board, completer)
        bridge.open()
        assert board.chat_open
        assert bridge.send("add X") is None
        assert not board.chat_open
        assert not bridge.busy
        assert board.tasks_in_bucket("ads") == []

    def test_stream_appends_to_last_entry(self, board):
        completer = FakeCompleter(deltas=["Plan ", "your ", "day."])
        bridge = AssistantBridge(board, completer)
        assert "".join(bridge.stream("help")) == "Plan your day."
        assert bridge.transcript[-1].content == "Plan your day."
        assert not bridge.busy

    def test_cancel_stops_stream(self, board):
        completer = FakeCompleter(deltas=["a", "b", "c"])
        bridge = AssistantBridge(board, completer)
        received = []
        for delta in bridge.stream("go"):
            received.append(delta)
            bridge.cancel()
        assert received == ["a"]
        assert bridge.transcript[-1].content == "a"


def _gateway(handler, api_key="sk-test"):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return Gateway("https://llm.example/v1", api_key, "test-model", http_client=http)


class TestGateway:
    def test_complete_sends_tools_and_parses_calls(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {
                "content": None,
                "tool_calls": [{"id": "c1", "type": "function", "function": {
                    "name": "rename_task", "arguments": '{"task_id": "a", "new_title": "b"}',
                }}],
            }}]})

        reply = _gateway(handler).complete([{"role": "user", "content": "hi"}], {"buckets": {}})
        assert seen["url"] == "https://llm.example/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"][0]["role"] == "system"
        assert seen["body"]["tool_choice"] == "auto"
        assert [t["function"]["name"] for t in seen["body"]["tools"]] == TOOL_NAMES
        assert reply.content == ""
        assert reply.tool_calls[0].name == "rename_task"

    def test_rate_limit(self):
        gateway = _gateway(lambda r: httpx.Response(429, json={"error": "slow down"}))
        with pytest.raises(RateLimitError) as exc:
            gateway.complete([{"role": "user", "content": "hi"}])
        assert exc.value.status_code == 429

    def test_quota(self):
        gateway = _gateway(lambda r: httpx.Response(402, text="payment required"))
        with pytest.raises(QuotaExceededError):
            gateway.complete([{"role": "user", "content": "hi"}])

    def test_server_error(self):
        gateway = _gateway(lambda r: httpx.Response(500, json={"error": {"message": "boom"}}))
        with pytest.raises(ChatError, match="boom"):
            gateway.complete([{"role": "user", "content": "hi"}])

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(ChatError, match="timed out"):
            _gateway(handler).complete([{"role": "user", "content": "hi"}])

    def test_missing_key(self):
        gateway = _gateway(lambda r: httpx.Response(200, json={}), api_key=None)
        with pytest.raises(ChatError, match="not configured"):
            gateway.complete([{"role": "user", "content": "hi"}])

    def test_stream(self):
        body = (
            'data: {"choices": [{"delta": {"content": "Hel"}}]}\n\n'
            'data: {"choices": [{"delta": {"content": "lo"}}]}\n\n'
            "data: [DONE]\n\n"
        )
        gateway = _gateway(lambda r: httpx.Response(200, text=body))
        assert "".join(gateway.stream([{"role": "user", "content": "hi"}])) == "Hello"

    def test_stream_error_status(self):
        gateway = _gateway(lambda r: httpx.Response(429, json={"error": "slow down"}))
        with pytest.raises(RateLimitError):
            list(gateway.stream([{"role": "user", "content": "hi"}]))


class TestChatClient:
    def test_posts_messages_and_context(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": {"content": "Sure."}})

        http = httpx.Client(transport=httpx.MockTransport(handler))
        client = ChatClient("https://board.example/api/chat", http_client=http)
        reply = client.complete([{"role": "user", "content": "hi"}], {"empty_slots": [1]})
        assert seen["body"] == {
            "messages": [{"role": "user", "content": "hi"}],
            "context": {"empty_slots": [1]},
        }
        assert reply.content == "Sure."
        assert reply.tool_calls == []


class TestSSE:
    def test_skips_noise_and_stops_at_done(self):
        lines = [
            ": keep-alive",
            "",
            'data: {"choices": [{"delta": {"content": "a"}}]}',
            "data: {broken",
            'data: {"choices": [{"delta": {}}]}',
            'data: {"choices": [{"delta": {"content": "b"}}]}',
            "data: [DONE]",
            'data: {"choices": [{"delta": {"content": "never"}}]}',
        ]
        assert list(iter_sse_deltas(lines)) == ["a", "b"]

    def test_error_event(self):
        with pytest.raises(ChatError):
            list(iter_sse_deltas(['data: {"error": "quota"}']))

    def test_cancelled(self):
        lines = ['data: {"choices": [{"delta": {"content": "a"}}]}']
        assert list(iter_sse_deltas(lines, cancelled=lambda: True)) == []
