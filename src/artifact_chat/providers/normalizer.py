"""Translate provider SSE frames into one common stream dialect.

Only ``MessageDelta.content`` is meant for the artifact parser. Reasoning and
tool events are auxiliary data attached to the assistant Version.
"""

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class MessageStarted:
    kind: str = field(default="message_started", init=False)


@dataclass(frozen=True)
class MessageDelta:
    content: str
    kind: str = field(default="message_delta", init=False)


@dataclass(frozen=True)
class MessageDone:
    kind: str = field(default="message_done", init=False)


@dataclass(frozen=True)
class ReasoningStarted:
    kind: str = field(default="reasoning_started", init=False)


@dataclass(frozen=True)
class ReasoningDelta:
    content: str
    kind: str = field(default="reasoning_delta", init=False)


@dataclass(frozen=True)
class ReasoningDone:
    kind: str = field(default="reasoning_done", init=False)


@dataclass(frozen=True)
class ToolUseStart:
    tool: dict
    kind: str = field(default="tool_use_start", init=False)


@dataclass(frozen=True)
class ToolInputDelta:
    delta: str
    tool_id: str | None = None
    kind: str = field(default="tool_input_delta", init=False)


@dataclass(frozen=True)
class ToolResult:
    id: str | None
    name: str
    content: object = None
    kind: str = field(default="tool_result", init=False)


@dataclass(frozen=True)
class StreamError:
    message: str
    kind: str = field(default="error", init=False)


StreamEvent = (
    MessageStarted
    | MessageDelta
    | MessageDone
    | ReasoningStarted
    | ReasoningDelta
    | ReasoningDone
    | ToolUseStart
    | ToolInputDelta
    | ToolResult
    | StreamError
)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event.

    Multi-line ``data:`` fields are joined with newlines; a blank line ends
    an event. Comments and other fields are ignored.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[5:]
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        yield "\n".join(data_lines)


class StreamNormalizer:
    """Stateful per-stream translator. Subclasses implement ``normalize``."""

    provider = ""

    def __init__(self) -> None:
        self._started = False
        self._done = False
        self._reasoning_open = False

    def feed_data(self, data: str) -> list[StreamEvent]:
        data = data.strip()
        if not data:
            return []
        if data == DONE_SENTINEL:
            return self._message_done()
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed %s SSE frame: %r", self.provider, data[:200])
            return []
        if not isinstance(frame, dict):
            logger.warning("Skipping non-object %s SSE frame", self.provider)
            return []
        return self.normalize(frame)

    def normalize(self, frame: dict) -> list[StreamEvent]:
        raise NotImplementedError

    def finish(self) -> list[StreamEvent]:
        """Close whatever the provider left open when its stream ended."""
        events: list[StreamEvent] = []
        if self._reasoning_open:
            events.extend(self._reasoning_done())
        if not self._done:
            events.extend(self._message_done())
        return events

    # --- Shared transitions ---

    def _message_started(self) -> list[StreamEvent]:
        if self._started:
            return []
        self._started = True
        return [MessageStarted()]

    def _message_done(self) -> list[StreamEvent]:
        if self._done:
            return []
        self._done = True
        events = [] if self._started else [MessageStarted()]
        self._started = True
        return [*events, MessageDone()]

    def _reasoning_started(self) -> list[StreamEvent]:
        if self._reasoning_open:
            return []
        self._reasoning_open = True
        return [ReasoningStarted()]

    def _reasoning_done(self) -> list[StreamEvent]:
        if not self._reasoning_open:
            return []
        self._reasoning_open = False
        return [ReasoningDone()]


class OpenAIResponsesNormalizer(StreamNormalizer):
    """OpenAI Responses API: typed events named ``response.*``."""

    provider = "openai"

    def __init__(self) -> None:
        super().__init__()
        self._tool_names: dict[str, str] = {}

    def normalize(self, frame: dict) -> list[StreamEvent]:
        kind = frame.get("type", "")
        events: list[StreamEvent] = []

        if kind in ("response.created", "response.in_progress"):
            events.extend(self._message_started())
        elif kind == "response.output_text.delta":
            events.extend(self._message_started())
            if frame.get("delta"):
                events.append(MessageDelta(frame["delta"]))
        elif kind == "response.reasoning_summary_part.added":
            events.extend(self._reasoning_started())
        elif kind == "response.reasoning_summary_text.delta":
            events.extend(self._reasoning_started())
            if frame.get("delta"):
                events.append(ReasoningDelta(frame["delta"]))
        elif kind == "response.reasoning_summary_part.done":
            events.extend(self._reasoning_done())
        elif kind == "response.output_item.added":
            item = frame.get("item") or {}
            if item.get("type", "").endswith("_call"):
                name = item.get("name") or item["type"]
                self._tool_names[item.get("id", "")] = name
                events.append(ToolUseStart({"id": item.get("id"), "name": name}))
        elif kind == "response.function_call_arguments.delta":
            events.append(ToolInputDelta(frame.get("delta", ""), frame.get("item_id")))
        elif kind == "response.output_item.done":
            item = frame.get("item") or {}
            if item.get("type", "").endswith("_call"):
                item_id = item.get("id")
                name = self._tool_names.get(item_id or "", item.get("name") or item["type"])
                content = item.get("output") or item.get("results") or item.get("status")
                events.append(ToolResult(item_id, name, content))
        elif kind == "response.completed":
            events.extend(self.finish())
        elif kind == "response.failed":
            error = (frame.get("response") or {}).get("error") or {}
            events.append(StreamError(error.get("message") or "Response failed"))
        elif kind == "error":
            events.append(StreamError(frame.get("message") or "Unknown provider error"))
        return events


class AnthropicNormalizer(StreamNormalizer):
    """Anthropic Messages API: content blocks addressed by index."""

    provider = "anthropic"

    def __init__(self) -> None:
        super().__init__()
        self._blocks: dict[int, dict] = {}

    def normalize(self, frame: dict) -> list[StreamEvent]:
        kind = frame.get("type", "")
        events: list[StreamEvent] = []

        if kind == "message_start":
            events.extend(self._message_started())
        elif kind == "content_block_start":
            block = frame.get("content_block") or {}
            self._blocks[frame.get("index", 0)] = block
            block_type = block.get("type", "")
            if block_type == "thinking":
                events.extend(self._reasoning_started())
                if block.get("thinking"):
                    events.append(ReasoningDelta(block["thinking"]))
            elif block_type == "text":
                if block.get("text"):
                    events.append(MessageDelta(block["text"]))
            elif block_type in ("tool_use", "server_tool_use"):
                events.append(ToolUseStart({"id": block.get("id"), "name": block.get("name", "")}))
                if block.get("input"):
                    events.append(ToolInputDelta(json.dumps(block["input"]), block.get("id")))
            elif block_type.endswith("_tool_result"):
                events.append(ToolResult(block.get("tool_use_id"), block_type, block.get("content")))
        elif kind == "content_block_delta":
            delta = frame.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                events.append(MessageDelta(delta.get("text", "")))
            elif delta_type == "thinking_delta":
                events.extend(self._reasoning_started())
                events.append(ReasoningDelta(delta.get("thinking", "")))
            elif delta_type == "input_json_delta":
                block = self._blocks.get(frame.get("index", 0)) or {}
                events.append(ToolInputDelta(delta.get("partial_json", ""), block.get("id")))
        elif kind == "content_block_stop":
            block = self._blocks.pop(frame.get("index", 0), None) or {}
            if block.get("type") == "thinking":
                events.extend(self._reasoning_done())
        elif kind == "message_stop":
            events.extend(self.finish())
        elif kind == "error":
            error = frame.get("error") or {}
            events.append(StreamError(error.get("message") or "Unknown provider error"))
        return [e for e in events if not isinstance(e, MessageDelta) or e.content]


class GoogleNormalizer(StreamNormalizer):
    """Gemini ``streamGenerateContent?alt=sse``: candidate parts per frame."""

    provider = "google"

    def normalize(self, frame: dict) -> list[StreamEvent]:
        if "error" in frame:
            error = frame["error"] if isinstance(frame["error"], dict) else {}
            return [StreamError(error.get("message") or str(frame["error"]))]

        events: list[StreamEvent] = list(self._message_started())
        candidates = frame.get("candidates") or []
        if not candidates:
            return events
        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("thought"):
                events.extend(self._reasoning_started())
                if part.get("text"):
                    events.append(ReasoningDelta(part["text"]))
            elif "functionCall" in part:
                call = part["functionCall"]
                events.append(ToolUseStart({"id": call.get("id"), "name": call.get("name", "")}))
                events.append(ToolInputDelta(json.dumps(call.get("args") or {}), call.get("id")))
            elif "executableCode" in part:
                code = part["executableCode"]
                events.append(ToolUseStart({"id": None, "name": "code_execution"}))
                events.append(ToolInputDelta(code.get("code", "")))
            elif "codeExecutionResult" in part:
                result = part["codeExecutionResult"]
                events.append(ToolResult(None, "code_execution", result.get("output")))
            elif part.get("text"):
                events.extend(self._reasoning_done())
                events.append(MessageDelta(part["text"]))
        return events


class ChatCompletionsNormalizer(StreamNormalizer):
    """OpenAI-compatible ``/v1/chat/completions`` chunks, ended by ``[DONE]``."""

    provider = "local"

    def __init__(self) -> None:
        super().__init__()
        self._tool_ids: dict[int, str | None] = {}

    def normalize(self, frame: dict) -> list[StreamEvent]:
        if "error" in frame:
            error = frame["error"] if isinstance(frame["error"], dict) else {}
            return [StreamError(error.get("message") or str(frame["error"]))]

        events: list[StreamEvent] = list(self._message_started())
        choices = frame.get("choices") or []
        if not choices:
            return events
        delta = choices[0].get("delta") or {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            events.extend(self._reasoning_started())
            events.append(ReasoningDelta(reasoning))
        for call in delta.get("tool_calls") or []:
            index = call.get("index", 0)
            function = call.get("function") or {}
            if index not in self._tool_ids:
                self._tool_ids[index] = call.get("id")
                events.append(ToolUseStart({"id": call.get("id"), "name": function.get("name", "")}))
            if function.get("arguments"):
                events.append(ToolInputDelta(function["arguments"], self._tool_ids[index]))
        if delta.get("content"):
            events.extend(self._reasoning_done())
            events.append(MessageDelta(delta["content"]))
        return events


NORMALIZERS: dict[str, type[StreamNormalizer]] = {
    "openai": OpenAIResponsesNormalizer,
    "anthropic": AnthropicNormalizer,
    "google": GoogleNormalizer,
    "local": ChatCompletionsNormalizer,
}


def create_normalizer(provider: str) -> StreamNormalizer:
    try:
        return NORMALIZERS[provider]()
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None


async def normalize_stream(provider: str, lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """Pull raw SSE lines and yield normalized events, ending with ``MessageDone``.

    Events after a terminal ``StreamError`` are not produced.
    """
    normalizer = create_normalizer(provider)
    async for data in iter_sse_data(lines):
        for event in normalizer.feed_data(data):
            yield event
            if isinstance(event, StreamError):
                return
    for event in normalizer.finish():
        yield event
