"""Chat completion endpoints.

Two completers share one interface (``complete`` and ``stream``):

- ``ChatClient`` talks to a chat endpoint that takes ``{messages, context}``
  and answers ``{message: {content, tool_calls}}`` or a stream of
  ``data: {...}`` lines ending with ``[DONE]``.
- ``Gateway`` talks to an OpenAI-compatible ``/chat/completions`` API
  directly, adding the system prompt and the tool catalog. The HTTP API's
  ``/api/chat`` route is built on it.
"""

import json
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

import httpx

from daily_playbook.assistant.catalog import TOOLS, build_system_prompt

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Raised when the completion endpoint cannot answer."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ChatError):
    """The endpoint is rate limiting us (HTTP 429)."""


class QuotaExceededError(ChatError):
    """The endpoint's credits are used up (HTTP 402)."""


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatReply:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: dict, tool_calls: list | None = None) -> "ChatReply":
        raw_calls = message.get("tool_calls") or tool_calls or []
        calls = []
        for i, raw in enumerate(raw_calls):
            fn = raw.get("function") or {}
            arguments = fn.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(ToolCall(id=raw.get("id") or f"call_{i}", name=fn.get("name", ""), arguments=arguments))
        return cls(content=message.get("content") or "", tool_calls=calls)

    def to_message(self) -> dict:
        message: dict = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        return message


def raise_for_status(response: httpx.Response):
    """Map an error response to the matching ChatError."""
    if response.status_code < 400:
        return
    detail = None
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("error")
            if isinstance(detail, dict):
                detail = detail.get("message")
    except ValueError:
        pass
    if response.status_code == 429:
        raise RateLimitError(detail or "Rate limit exceeded. Please try again in a moment.", 429)
    if response.status_code == 402:
        raise QuotaExceededError(detail or "AI credits depleted. Please add credits.", 402)
    logger.error("Chat endpoint error %s: %s", response.status_code, response.text[:500])
    raise ChatError(detail or f"Chat endpoint error ({response.status_code})", response.status_code)


def iter_sse_deltas(
    lines: Iterable[str], cancelled: Callable[[], bool] | None = None
) -> Iterator[str]:
    """Yield content deltas from ``data: {...}`` lines until ``[DONE]``."""
    for line in lines:
        if cancelled and cancelled():
            return
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream line: %s", data[:200])
            continue
        if event.get("error"):
            raise ChatError(str(event["error"]))
        choices = event.get("choices") or []
        if not choices:
            continue
        delta = (choices[0].get("delta") or {}).get("content")
        if delta:
            yield delta


class _HTTPCompleter:
    def __init__(self, timeout: float = 30.0, http_client: httpx.Client | None = None):
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self):
        if self._owns_client:
            self._http.close()

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def _post(self, url: str, payload: dict) -> dict:
        try:
            response = self._http.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ChatError(f"Chat request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ChatError(f"Chat request failed: {e}") from e
        raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise ChatError("Chat endpoint returned invalid JSON") from e

    def _stream(
        self, url: str, payload: dict, cancelled: Callable[[], bool] | None
    ) -> Iterator[str]:
        try:
            with self._http.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    response.read()
                    raise_for_status(response)
                yield from iter_sse_deltas(response.iter_lines(), cancelled)
        except httpx.TimeoutException as e:
            raise ChatError(f"Chat request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ChatError(f"Chat request failed: {e}") from e


class ChatClient(_HTTPCompleter):
    """Client for a ``{messages, context}`` chat endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(timeout, http_client)
        self.url = url
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(self, messages: list[dict], context: dict | None = None) -> ChatReply:
        data = self._post(self.url, {"messages": messages, "context": context})
        return ChatReply.from_message(data.get("message") or {}, data.get("tool_calls"))

    def stream(
        self,
        messages: list[dict],
        context: dict | None = None,
        cancelled: Callable[[], bool] | None = None,
    ) -> Iterator[str]:
        payload = {"messages": messages, "context": context, "stream": True}
        return self._stream(self.url, payload, cancelled)


class Gateway(_HTTPCompleter):
    """Direct client for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(timeout, http_client)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model

    def _headers(self) -> dict:
        if not self.api_key:
            raise ChatError("Chat not configured: PB_LLM_API_KEY not set")
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _messages(self, messages: list[dict], context: dict | None) -> list[dict]:
        return [{"role": "system", "content": build_system_prompt(context)}, *messages]

    def complete(self, messages: list[dict], context: dict | None = None) -> ChatReply:
        payload = {
            "model": self.model,
            "messages": self._messages(messages, context),
            "tools": TOOLS,
            "tool_choice": "auto",
        }
        logger.info("Chat completion: model=%s, msgs=%d", self.model, len(messages))
        data = self._post(f"{self.base_url}/chat/completions", payload)
        choices = data.get("choices") or [{}]
        return ChatReply.from_message(choices[0].get("message") or {})

    def stream(
        self,
        messages: list[dict],
        context: dict | None = None,
        cancelled: Callable[[], bool] | None = None,
    ) -> Iterator[str]:
        payload = {
            "model": self.model,
            "messages": self._messages(messages, context),
            "stream": True,
        }
        return self._stream(f"{self.base_url}/chat/completions", payload, cancelled)


def get_completer(config):
    """The completer the configuration points at."""
    if config.chat_url:
        return ChatClient(config.chat_url, config.llm_api_key, config.chat_timeout)
    return Gateway(config.llm_base_url, config.llm_api_key, config.llm_model, config.chat_timeout)
