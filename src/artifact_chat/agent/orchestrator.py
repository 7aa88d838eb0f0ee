import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import asdict, dataclass, field

from ..artifacts.parser import (
    ArtifactChunkEvent,
    ArtifactCloseEvent,
    ArtifactOpenEvent,
    ParserEvent,
    StreamingArtifactParser,
    TextEvent,
    create_parser,
)
from ..artifacts.store import ArtifactStore
from ..config import ChatSettings
from ..conversation.formatting import (
    artifact_placeholder,
    build_artifact_context,
    format_messages_for_provider,
)
from ..conversation.graph import ChainEntry, ConversationGraph
from ..conversation.models import Content, Message
from ..data.snapshot import build_snapshot
from ..providers.adapters import ChatOptions, ProviderError, ProviderResponse
from ..providers.normalizer import (
    MessageDelta,
    MessageDone,
    MessageStarted,
    ReasoningDelta,
    ReasoningDone,
    ReasoningStarted,
    StreamError,
    ToolInputDelta,
    ToolResult,
    ToolUseStart,
    normalize_stream,
)

logger = logging.getLogger(__name__)

REASONING_STEP_SEPARATOR = "\n---REASONING_STEP_SEPARATOR---\n"
CONTINUATION_REGENERATE_ERROR = (
    "Cannot regenerate a response that was itself a continuation. "
    "Edit the original message or delete the branch instead."
)

_CANCELLED = object()


async def _read_next(events: AsyncIterator):
    return await anext(events, None)


async def _unless_cancelled(cancel: asyncio.Event, awaitable):
    """Await ``awaitable``, abandoning it as soon as ``cancel`` is set.

    Returns ``_CANCELLED`` when the wait was cut short.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    interrupted = False
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            interrupted = True
            task.cancel()
            await asyncio.wait({task})
    if interrupted:
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned read raised %r", task.exception())
        return _CANCELLED
    return task.result()


@dataclass
class ChatEvent:
    """An event yielded while a turn streams."""

    # "init", "text", "artifact_open", "artifact_chunk", "artifact_close",
    # "reasoning", "tool", "error", "done"
    type: str
    data: str = ""


@dataclass
class ConversationStatus:
    is_loading: bool = False
    error: str | None = None


@dataclass
class TurnResult:
    conversation_id: str
    message_id: str | None = None
    version_id: str | None = None
    is_incomplete: bool = False
    incomplete_artifact_id: str | None = None
    error: str | None = None
    cancelled: bool = False
    artifacts: list[str] = field(default_factory=list)


@dataclass
class _Turn:
    conversation_id: str
    message_id: str
    version_id: str
    parser: StreamingArtifactParser
    provider: str
    model: str
    resume_from: tuple[str, str] | None = None
    response: ProviderResponse | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    reasoning_started_at: float | None = None
    artifacts: list[str] = field(default_factory=list)
    finalized: bool = False


class TurnOrchestrator:
    """Drives assistant turns: provider call, parsing, and commits to the stores.

    One turn is in flight per conversation at a time; turns on different
    conversations run concurrently.
    """

    def __init__(
        self,
        graph: ConversationGraph,
        artifacts: ArtifactStore,
        adapters: dict,
        settings: ChatSettings,
        store=None,
    ) -> None:
        self._graph = graph
        self._artifacts = artifacts
        self._adapters = adapters
        self._settings = settings
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._turns: dict[str, _Turn] = {}
        self._status: dict[str, ConversationStatus] = {}

    @property
    def settings(self) -> ChatSettings:
        return self._settings

    def status(self, conversation_id: str) -> ConversationStatus:
        return self._status.setdefault(conversation_id, ConversationStatus())

    def cancel(self, conversation_id: str) -> bool:
        """Ask the in-flight turn to stop after the current event."""
        turn = self._turns.get(conversation_id)
        if turn is None:
            logger.info("No turn in flight for conversation %s", conversation_id)
            return False
        turn.cancel.set()
        return True

    def forget(self, conversation_id: str) -> None:
        self._status.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)

    # --- Public turn entry points ---

    async def stream_message(
        self,
        conversation_id: str,
        content: Content,
        images: list[str] | None = None,
        attachments: list[dict] | None = None,
        artifact_ids: list[str] | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Append a user message and stream the assistant reply."""
        if self._graph.get_conversation(conversation_id) is None:
            logger.warning("stream_message: conversation %s not found", conversation_id)
            async for event in self._reject("Conversation not found"):
                yield event
            return

        async with self._lock(conversation_id):
            user = Message.create("user", content, images=images, attachments=attachments)
            self._graph.add_message_node(conversation_id, user, auto_title=self._settings.auto_title)
            continuation = self._graph.find_continuation(conversation_id, user.id)
            chain = self._graph.active_chain(conversation_id, end_message_id=user.id)

            assistant = Message.create("assistant", "")
            self._graph.add_message_node(conversation_id, assistant)
            await self.persist(conversation_id)

            conversation = self._graph.get_conversation(conversation_id)
            yield ChatEvent(
                type="init",
                data=json.dumps(
                    {
                        "conversation_id": conversation_id,
                        "title": conversation.title,
                        "user_message_id": user.id,
                        "message_id": assistant.id,
                        "version_id": assistant.active_version_id,
                    }
                ),
            )
            turn_events = self._run_turn(
                conversation_id,
                assistant.id,
                assistant.active_version_id,
                chain,
                continuation,
                artifact_ids,
                provider or self._settings.provider,
                model or self._settings.model,
            )
            async with aclosing(turn_events):
                async for event in turn_events:
                    yield event

    async def stream_regenerate(
        self,
        conversation_id: str,
        message_id: str,
        provider: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Add a new Version to an assistant message and stream it."""
        conversation = self._graph.get_conversation(conversation_id)
        message = conversation.messages.get(message_id) if conversation else None
        if message is None or message.role != "assistant":
            logger.warning(
                "stream_regenerate: %s is not an assistant message in %s", message_id, conversation_id
            )
            async for event in self._reject("Message not found or not an assistant message"):
                yield event
            return

        async with self._lock(conversation_id):
            if self._graph.is_continuation_reply(conversation_id, message_id):
                # the resumed artifact already holds this reply's content
                logger.warning(
                    "stream_regenerate: %s continues an open artifact in %s", message_id, conversation_id
                )
                async for event in self._reject(CONTINUATION_REGENERATE_ERROR):
                    yield event
                return

            predecessor = self._graph.find_predecessor(conversation_id, message_id)
            chain: list[ChainEntry] = []
            if predecessor is not None:
                chain = self._graph.active_chain(conversation_id, end_message_id=predecessor[0])

            version = self._graph.append_version(conversation_id, message_id)
            await self.persist(conversation_id)

            yield ChatEvent(
                type="init",
                data=json.dumps(
                    {
                        "conversation_id": conversation_id,
                        "title": conversation.title,
                        "message_id": message_id,
                        "version_id": version.id,
                    }
                ),
            )
            turn_events = self._run_turn(
                conversation_id,
                message_id,
                version.id,
                chain,
                None,
                None,
                provider or self._settings.provider,
                model or self._settings.model,
            )
            async with aclosing(turn_events):
                async for event in turn_events:
                    yield event

    async def send_message(self, conversation_id: str, content: Content, **kwargs) -> TurnResult | None:
        return await self._consume(self.stream_message(conversation_id, content, **kwargs))

    async def regenerate(self, conversation_id: str, message_id: str, **kwargs) -> TurnResult | None:
        return await self._consume(self.stream_regenerate(conversation_id, message_id, **kwargs))

    async def persist(self, conversation_id: str) -> None:
        """Write the whole conversation to the backing store. Failures only warn."""
        if self._store is None:
            return
        snapshot = build_snapshot(self._graph, self._artifacts, conversation_id)
        if snapshot is None:
            return
        try:
            await self._store.save_conversation(snapshot)
        except Exception as e:
            logger.warning("Failed to persist conversation %s: %s", conversation_id, e)

    async def remove_persisted(self, conversation_id: str | None = None) -> None:
        """Drop one conversation, or every conversation, from the backing store. Failures only warn."""
        if self._store is None:
            return
        try:
            if conversation_id is None:
                await self._store.clear()
            else:
                await self._store.delete_conversation(conversation_id)
        except Exception as e:
            logger.warning("Failed to remove %s from the store: %s", conversation_id or "all conversations", e)

    # --- Turn execution ---

    async def _run_turn(
        self,
        conversation_id: str,
        message_id: str,
        version_id: str,
        chain: list[ChainEntry],
        continuation: tuple[str, str, str] | None,
        artifact_ids: list[str] | None,
        provider: str,
        model: str,
    ) -> AsyncIterator[ChatEvent]:
        resume_id = continuation[2] if continuation else None
        if resume_id:
            logger.info("Continuing artifact %s in conversation %s", resume_id, conversation_id)
        turn = _Turn(
            conversation_id=conversation_id,
            message_id=message_id,
            version_id=version_id,
            parser=create_parser(
                resume_artifact_id=resume_id, threshold=self._settings.content_buffer_threshold
            ),
            provider=provider,
            model=model,
            resume_from=(continuation[0], continuation[1]) if continuation else None,
        )
        self._turns[conversation_id] = turn
        status = self.status(conversation_id)
        status.is_loading = True
        status.error = None

        artifact_context = build_artifact_context(
            self._artifacts, conversation_id, chain, artifact_ids
        )
        messages = format_messages_for_provider(
            chain,
            provider,
            system_prompt=self._settings.system_prompt,
            artifact_context=artifact_context,
            continuation=resume_id is not None,
        )

        error: str | None = None
        try:
            try:
                async with aclosing(self._pump(turn, messages)) as pumped:
                    async for event in pumped:
                        yield event
            except ProviderError as e:
                logger.warning("Provider %s failed: %s", provider, e)
                error = str(e)
            except Exception as e:
                logger.exception("Error in turn for conversation %s", conversation_id)
                error = str(e)

            if error is None:
                for event in self._complete_turn(turn):
                    yield event
            else:
                self._fail_turn(turn, error)
                status.error = error
                yield ChatEvent(type="error", data=error)
        except (asyncio.CancelledError, GeneratorExit):
            if not turn.finalized:
                logger.info("Turn for conversation %s interrupted; finalizing", conversation_id)
                self._complete_turn(turn)
            raise
        finally:
            status.is_loading = False
            self._turns.pop(conversation_id, None)
            if turn.response is not None:
                await turn.response.aclose()
            await self.persist(conversation_id)

        result = TurnResult(
            conversation_id=conversation_id,
            message_id=message_id,
            version_id=version_id,
            is_incomplete=turn.parser.is_incomplete() and error is None,
            incomplete_artifact_id=turn.parser.incomplete_artifact_id() if error is None else None,
            error=error,
            cancelled=turn.cancel.is_set(),
            artifacts=turn.artifacts,
        )
        yield ChatEvent(type="done", data=json.dumps(asdict(result)))

    async def _pump(self, turn: _Turn, messages: list[dict]) -> AsyncIterator[ChatEvent]:
        adapter = self._adapters.get(turn.provider)
        if adapter is None:
            raise ProviderError(f"Unsupported provider: {turn.provider}")

        options = ChatOptions(
            temperature=self._settings.temperature, max_tokens=self._settings.max_tokens
        )
        response = await _unless_cancelled(turn.cancel, adapter.chat(messages, turn.model, options))
        if response is _CANCELLED:
            logger.info("Turn for conversation %s cancelled before the reply started", turn.conversation_id)
            return
        turn.response = response

        if turn.response.body is None:
            # non-streaming reply: the whole text is one chunk
            for event in self._apply_parser_events(turn, turn.parser.feed(turn.response.content or "")):
                yield event
            return

        stream = normalize_stream(turn.provider, turn.response.body)
        async with aclosing(stream):
            async for event in self._stream_until_cancelled(turn, stream):
                yield event

    async def _stream_until_cancelled(self, turn: _Turn, stream: AsyncIterator) -> AsyncIterator[ChatEvent]:
        while True:
            event = await _unless_cancelled(turn.cancel, _read_next(stream))
            if event is _CANCELLED or turn.cancel.is_set():
                logger.info("Turn for conversation %s cancelled", turn.conversation_id)
                return
            if event is None:
                return
            if isinstance(event, MessageDelta):
                for chat_event in self._apply_parser_events(turn, turn.parser.feed(event.content)):
                    yield chat_event
            elif isinstance(event, ReasoningStarted):
                self._start_reasoning(turn)
            elif isinstance(event, ReasoningDelta):
                self._start_reasoning(turn)
                version = self._version(turn)
                version.reasoning = (version.reasoning or "") + event.content
                yield ChatEvent(type="reasoning", data=event.content)
            elif isinstance(event, ReasoningDone):
                self._separate_reasoning(turn)
            elif isinstance(event, ToolUseStart):
                entry = {
                    "kind": "tool_use",
                    "id": event.tool.get("id"),
                    "name": event.tool.get("name", ""),
                    "input": "",
                }
                self._version(turn).tool_trace.append(entry)
                yield ChatEvent(type="tool", data=json.dumps(entry))
            elif isinstance(event, ToolInputDelta):
                self._append_tool_input(turn, event)
            elif isinstance(event, ToolResult):
                entry = {"kind": "tool_result", "id": event.id, "name": event.name, "content": event.content}
                self._version(turn).tool_trace.append(entry)
                yield ChatEvent(type="tool", data=json.dumps(entry, default=str))
            elif isinstance(event, StreamError):
                raise ProviderError(event.message)
            elif isinstance(event, (MessageStarted, MessageDone)):
                continue

    def _apply_parser_events(self, turn: _Turn, events: list[ParserEvent]) -> list[ChatEvent]:
        cid, mid, vid = turn.conversation_id, turn.message_id, turn.version_id
        out: list[ChatEvent] = []
        for event in events:
            if isinstance(event, TextEvent):
                self._graph.append_version_text(cid, mid, vid, event.content)
                out.append(ChatEvent(type="text", data=event.content))
            elif isinstance(event, ArtifactOpenEvent):
                self._artifacts.start_artifact(cid, event.id, event.metadata)
                self._graph.append_version_text(cid, mid, vid, artifact_placeholder(event.id))
                if event.id not in turn.artifacts:
                    turn.artifacts.append(event.id)
                out.append(
                    ChatEvent(
                        type="artifact_open",
                        data=json.dumps({"id": event.id, "metadata": event.metadata}),
                    )
                )
            elif isinstance(event, ArtifactChunkEvent):
                self._artifacts.append_artifact_content(cid, event.id, event.content)
                out.append(
                    ChatEvent(
                        type="artifact_chunk",
                        data=json.dumps({"id": event.id, "content": event.content}),
                    )
                )
            elif isinstance(event, ArtifactCloseEvent):
                self._artifacts.complete_artifact(cid, event.id)
                out.append(ChatEvent(type="artifact_close", data=json.dumps({"id": event.id})))
        return out

    def _complete_turn(self, turn: _Turn) -> list[ChatEvent]:
        """Flush the parser and record whether the reply stopped mid-artifact."""
        events = self._apply_parser_events(turn, turn.parser.flush())
        is_incomplete = turn.parser.is_incomplete()
        self._graph.finalize_version(
            turn.conversation_id,
            turn.message_id,
            turn.version_id,
            is_incomplete,
            turn.parser.incomplete_artifact_id(),
        )
        if turn.resume_from is not None and not is_incomplete:
            self._graph.finalize_version(turn.conversation_id, *turn.resume_from, False, None)
        self._finish_reasoning(turn)
        turn.finalized = True
        return events

    def _fail_turn(self, turn: _Turn, error: str) -> None:
        # The placeholders go away with the error text, so no Version can resume
        # artifacts opened in this turn; close them to keep them editable.
        for artifact_id in turn.artifacts:
            active = self._artifacts.get_active_version(turn.conversation_id, artifact_id)
            if active is not None and not active.is_complete:
                self._artifacts.complete_artifact(turn.conversation_id, artifact_id)
        self._graph.update_version_content(
            turn.conversation_id, turn.message_id, turn.version_id, f"Error: {error}"
        )
        self._graph.finalize_version(turn.conversation_id, turn.message_id, turn.version_id, False)
        version = self._version(turn)
        if version is not None:
            version.error = error
        self._finish_reasoning(turn)
        turn.finalized = True

    # --- Auxiliary data ---

    def _version(self, turn: _Turn):
        return self._graph.get_version(turn.conversation_id, turn.message_id, turn.version_id)

    def _start_reasoning(self, turn: _Turn) -> None:
        if turn.reasoning_started_at is None:
            turn.reasoning_started_at = time.monotonic()

    def _separate_reasoning(self, turn: _Turn) -> None:
        version = self._version(turn)
        if version.reasoning and not version.reasoning.endswith(REASONING_STEP_SEPARATOR):
            version.reasoning += REASONING_STEP_SEPARATOR
        if turn.reasoning_started_at is not None:
            version.reasoning_duration_ms = round((time.monotonic() - turn.reasoning_started_at) * 1000)

    def _finish_reasoning(self, turn: _Turn) -> None:
        version = self._version(turn)
        if version is None or version.reasoning is None:
            return
        text = version.reasoning
        if text.endswith(REASONING_STEP_SEPARATOR):
            text = text[: -len(REASONING_STEP_SEPARATOR)]
        version.reasoning = text.strip() or None
        if version.reasoning_duration_ms is None and turn.reasoning_started_at is not None:
            version.reasoning_duration_ms = round((time.monotonic() - turn.reasoning_started_at) * 1000)

    def _append_tool_input(self, turn: _Turn, event: ToolInputDelta) -> None:
        trace = self._version(turn).tool_trace
        for entry in reversed(trace):
            if entry["kind"] != "tool_use":
                continue
            if event.tool_id is None or entry["id"] == event.tool_id:
                entry["input"] += event.delta
                return
        logger.warning("Tool input delta for unknown tool %s", event.tool_id)

    # --- Helpers ---

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def _reject(self, message: str) -> AsyncIterator[ChatEvent]:
        yield ChatEvent(type="error", data=message)
        yield ChatEvent(type="done", data=json.dumps({"error": message}))

    async def _consume(self, events: AsyncIterator[ChatEvent]) -> TurnResult | None:
        result = None
        async for event in events:
            if event.type == "done":
                data = json.loads(event.data)
                if data.get("message_id"):
                    result = TurnResult(**data)
        return result
