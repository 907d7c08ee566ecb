"""Streaming chat-completion client used by the agent loop."""

from __future__ import annotations

import codecs
import json
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

import httpx

from flite.agent.extractor import TOOL_PREFIX
from flite.agent.models import Message

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "openrouter/sonoma-sky-alpha"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_CONTEXT_MESSAGES = 10

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

SYSTEM_PROMPT_PARTS = [
    "You are flite, a minimal interactive AI CLI tool that helps with software engineering tasks.",
    "Current directory is `{cwd}`.",
    (
        "When you need to run shell commands, use this format with nothing but"
        " introductory text around it (keep the backticks):"
    ),
    f"`{TOOL_PREFIX}ls -la`",
    "Or, for a multi-line script that runs as one command:",
    f"```{TOOL_PREFIX}\nls -la\ncat README.md\n```",
    "Command output is returned to you as a system message. Stop requesting commands when done.",
    (
        "Be concise and direct: your output is shown in a terminal. Explain a non-trivial"
        " command before running it, especially one that changes the user's system."
    ),
    "Never guess URLs for the user.",
]

DeltaCallback = Callable[[str], None]
LOGGER = logging.getLogger(__name__)


def build_system_prompt(working_directory: str | None = None) -> str:
    cwd = working_directory or os.getcwd()
    return "\n".join(SYSTEM_PROMPT_PARTS).replace("{cwd}", cwd)


@dataclass(slots=True)
class ModelReply:
    """Fully assembled assistant reply, or the reason the request failed."""

    text: str | None
    error: str | None = None
    tokens: int = 0
    cost: Decimal | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


class SSELineBuffer:
    """Split a byte stream into lines regardless of how reads are chunked.

    A partial trailing line is held over and prefixed onto the next chunk.
    Decoding is incremental, so multi-byte characters split across reads are
    kept intact.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


def parse_data_line(line: str) -> str | None:
    """Return the payload of a ``data:`` event line, or ``None`` for other lines."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX) :]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


@dataclass(slots=True)
class _StreamState:
    parts: list[str] = field(default_factory=list)
    tokens: int = 0
    cost: Decimal | None = None
    done: bool = False


class ChatClient:
    """Small async HTTP client for streamed chat completions."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        api_url: str = DEFAULT_API_URL,
        system_prompt: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        context_messages: int = DEFAULT_CONTEXT_MESSAGES,
        connect_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.system_prompt = system_prompt or build_system_prompt()
        self.temperature = temperature
        self.context_messages = context_messages
        self.connect_timeout = connect_timeout
        self.transport = transport

    def build_payload(self, messages: Sequence[Message]) -> dict[str, object]:
        window = list(messages[-self.context_messages :]) if self.context_messages > 0 else []
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                *(message.to_dict() for message in window),
            ],
            "stream": True,
            "temperature": self.temperature,
        }

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        on_delta: DeltaCallback | None = None,
    ) -> ModelReply:
        payload = self.build_payload(messages)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "window_messages": len(payload["messages"]) - 1,  # type: ignore[arg-type]
            },
        )

        state = _StreamState()
        # Stream reads have no deadline: a stalled stream blocks until interrupted.
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                async with client.stream(
                    "POST", self.api_url, json=payload, headers=headers
                ) as response:
                    if not response.is_success:
                        return await self._http_failure(response, state)
                    await self._consume(response, state, on_delta)
        except httpx.HTTPError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc)},
            )
            return ModelReply(
                text=None,
                error=f"Model request transport error: {exc}",
                tokens=state.tokens,
                cost=state.cost,
            )

        LOGGER.debug(
            "llm_response_complete",
            extra={"model": self.model, "tokens": state.tokens, "chunks": len(state.parts)},
        )
        return ModelReply(text="".join(state.parts), tokens=state.tokens, cost=state.cost)

    async def _consume(
        self,
        response: httpx.Response,
        state: _StreamState,
        on_delta: DeltaCallback | None,
    ) -> None:
        buffer = SSELineBuffer()
        async for chunk in response.aiter_bytes():
            for line in buffer.feed(chunk):
                self._consume_line(line, state, on_delta)
                if state.done:
                    return
        for line in buffer.flush():
            self._consume_line(line, state, on_delta)

    @staticmethod
    def _consume_line(line: str, state: _StreamState, on_delta: DeltaCallback | None) -> None:
        data = parse_data_line(line)
        if data is None:
            return
        if data.strip() == DONE_SENTINEL:
            state.done = True
            return

        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            LOGGER.debug("llm_stream_parse_error", extra={"error": str(exc)})
            return
        if not isinstance(event, dict):
            return

        content = _delta_content(event)
        if content:
            state.parts.append(content)
            if on_delta is not None:
                on_delta(content)

        usage = event.get("usage")
        if isinstance(usage, dict):
            tokens = usage.get("total_tokens")
            if isinstance(tokens, int) and not isinstance(tokens, bool):
                state.tokens += tokens
            cost = _to_decimal(usage.get("total_cost", usage.get("cost")))
            if cost is not None:
                state.cost = cost if state.cost is None else state.cost + cost

    async def _http_failure(self, response: httpx.Response, state: _StreamState) -> ModelReply:
        body_excerpt = self._read_error_body_excerpt(await response.aread())
        LOGGER.error(
            "llm_request_http_error",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "http_status": response.status_code,
                "response_excerpt": body_excerpt,
            },
        )
        details = f"API error: {response.status_code}"
        if body_excerpt:
            details = f"{details} - {body_excerpt}"
        return ModelReply(text=None, error=details, tokens=state.tokens, cost=state.cost)

    @staticmethod
    def _read_error_body_excerpt(raw: bytes, *, max_chars: int = 500) -> str | None:
        if not raw:
            return None
        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt or None


def _delta_content(event: dict[str, object]) -> str | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def _to_decimal(value: object) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
