"""Incremental extractor for ``<artifact …>…</artifact>`` regions in streamed text.

The parser is a pure function over its buffers: ``feed`` and ``flush`` never
block and never raise. Anything that does not match the artifact grammar is
passed through as text (outside an artifact) or as content (inside one).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from ..ids import new_id

logger = logging.getLogger(__name__)

CONTENT_BUFFER_THRESHOLD = 32

_TAG_NAME = "artifact"
_CLOSE_TAG = "</artifact>"
_WHITESPACE = " \t\n\r\f\v"

_MATCH = "match"
_PARTIAL = "partial"
_NO_MATCH = "none"


@dataclass(frozen=True)
class TextEvent:
    content: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class ArtifactOpenEvent:
    id: str
    metadata: dict[str, str]
    kind: str = field(default="artifact_open", init=False)


@dataclass(frozen=True)
class ArtifactChunkEvent:
    id: str
    content: str
    kind: str = field(default="artifact_chunk", init=False)


@dataclass(frozen=True)
class ArtifactCloseEvent:
    id: str
    kind: str = field(default="artifact_close", init=False)


ParserEvent = TextEvent | ArtifactOpenEvent | ArtifactChunkEvent | ArtifactCloseEvent


@dataclass
class ParserState:
    inside_artifact: bool = False
    current_artifact_id: str | None = None
    current_metadata: dict[str, str] | None = None
    buffer: str = ""
    content_buffer: str = ""


def _is_name_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_-:."


def _match_open_tag(buf: str, start: int) -> tuple[str, int, dict[str, str]]:
    """Try to read an open tag at ``buf[start]`` (which is ``<``).

    Returns ``(status, end, attributes)``. ``_PARTIAL`` means the buffer ran
    out while the text was still a valid tag prefix.
    """
    n = len(buf)
    i = start + 1
    for expected in _TAG_NAME:
        if i >= n:
            return _PARTIAL, n, {}
        if buf[i].lower() != expected:
            return _NO_MATCH, i, {}
        i += 1

    attributes: dict[str, str] = {}
    while True:
        j = i
        while j < n and buf[j] in _WHITESPACE:
            j += 1
        if j >= n:
            return _PARTIAL, n, {}
        if buf[j] == ">":
            if not attributes:
                return _NO_MATCH, j, {}
            return _MATCH, j + 1, attributes
        if j == i:
            # attributes must be separated by whitespace
            return _NO_MATCH, j, {}

        k = j
        while k < n and _is_name_char(buf[k]):
            k += 1
        if k >= n:
            return _PARTIAL, n, {}
        if k == j or buf[k] != "=":
            return _NO_MATCH, k, {}
        k += 1
        if k >= n:
            return _PARTIAL, n, {}
        if buf[k] != '"':
            return _NO_MATCH, k, {}
        value_end = buf.find('"', k + 1)
        if value_end == -1:
            return _PARTIAL, n, {}
        # last occurrence wins
        attributes[buf[j : k - 1].lower()] = buf[k + 1 : value_end]
        i = value_end + 1


def _match_close_tag(buf: str, start: int) -> tuple[str, int]:
    candidate = buf[start : start + len(_CLOSE_TAG)].lower()
    if candidate == _CLOSE_TAG:
        return _MATCH, start + len(_CLOSE_TAG)
    if len(candidate) < len(_CLOSE_TAG) and _CLOSE_TAG.startswith(candidate):
        return _PARTIAL, len(buf)
    return _NO_MATCH, start + 1


class StreamingArtifactParser:
    """Splits a chunked character stream into text and artifact events.

    Pass ``resume_artifact_id`` to continue an artifact left open by a previous
    turn: the parser starts inside that artifact and emits no open event.
    """

    def __init__(
        self,
        resume_artifact_id: str | None = None,
        id_factory: Callable[[], str] | None = None,
        threshold: int = CONTENT_BUFFER_THRESHOLD,
    ) -> None:
        self._id_factory = id_factory or (lambda: new_id("art"))
        self._threshold = max(1, threshold)
        self._state = ParserState(
            inside_artifact=resume_artifact_id is not None,
            current_artifact_id=resume_artifact_id,
        )

    @property
    def state(self) -> ParserState:
        return self._state

    def feed(self, chunk: str) -> list[ParserEvent]:
        events: list[ParserEvent] = []
        if not chunk:
            return events
        self._state.buffer += chunk
        while True:
            if self._state.inside_artifact:
                progressed = self._scan_inside(events)
            else:
                progressed = self._scan_outside(events)
            if not progressed:
                break
        return events

    def flush(self) -> list[ParserEvent]:
        """Emit everything still buffered; no more data will arrive."""
        events: list[ParserEvent] = []
        held = self._state.buffer
        if held:
            logger.warning("Streaming parser flushed non-empty buffer: %r", held)
        self._state.buffer = ""

        if self._state.inside_artifact:
            self._state.content_buffer += held
            self._emit_content(events)
        elif held:
            events.append(TextEvent(held))
        return events

    def is_incomplete(self) -> bool:
        return self._state.inside_artifact

    def incomplete_artifact_id(self) -> str | None:
        return self._state.current_artifact_id if self._state.inside_artifact else None

    # --- Scanning ---

    def _scan_outside(self, events: list[ParserEvent]) -> bool:
        """Consume text up to the next open tag. Returns True on a state change."""
        buf = self._state.buffer
        pos = 0
        while True:
            lt = buf.find("<", pos)
            if lt == -1:
                if buf:
                    events.append(TextEvent(buf))
                self._state.buffer = ""
                return False

            status, end, attributes = _match_open_tag(buf, lt)
            if status == _NO_MATCH and _match_close_tag(buf, lt)[0] == _PARTIAL:
                status = _PARTIAL

            if status == _MATCH:
                if lt > 0:
                    events.append(TextEvent(buf[:lt]))
                self._state.buffer = buf[end:]
                self._open_artifact(attributes, events)
                return True
            if status == _PARTIAL:
                if lt > 0:
                    events.append(TextEvent(buf[:lt]))
                self._state.buffer = buf[lt:]
                return False
            pos = lt + 1

    def _scan_inside(self, events: list[ParserEvent]) -> bool:
        """Consume artifact content up to the close tag. Returns True on close."""
        buf = self._state.buffer
        pos = 0
        while True:
            lt = buf.find("<", pos)
            if lt == -1:
                self._state.content_buffer += buf
                self._state.buffer = ""
                if len(self._state.content_buffer) >= self._threshold:
                    self._emit_content(events)
                return False

            status, end = _match_close_tag(buf, lt)
            if status == _MATCH:
                self._state.content_buffer += buf[:lt]
                self._state.buffer = buf[end:]
                self._close_artifact(events)
                return True
            if status == _PARTIAL:
                self._state.content_buffer += buf[:lt]
                self._state.buffer = buf[lt:]
                if len(self._state.content_buffer) >= self._threshold:
                    self._emit_content(events)
                return False
            pos = lt + 1

    # --- Transitions ---

    def _open_artifact(self, attributes: dict[str, str], events: list[ParserEvent]) -> None:
        metadata = dict(attributes)
        artifact_id = metadata.pop("id", "") or self._id_factory()
        metadata.setdefault("type", "unknown")

        self._state.inside_artifact = True
        self._state.current_artifact_id = artifact_id
        self._state.current_metadata = metadata
        self._state.content_buffer = ""
        events.append(ArtifactOpenEvent(artifact_id, dict(metadata)))

    def _close_artifact(self, events: list[ParserEvent]) -> None:
        artifact_id = self._state.current_artifact_id
        self._emit_content(events)
        events.append(ArtifactCloseEvent(artifact_id))
        self._state.inside_artifact = False
        self._state.current_artifact_id = None
        self._state.current_metadata = None

    def _emit_content(self, events: list[ParserEvent]) -> None:
        if self._state.content_buffer:
            events.append(
                ArtifactChunkEvent(self._state.current_artifact_id, self._state.content_buffer)
            )
            self._state.content_buffer = ""


def create_parser(
    resume_artifact_id: str | None = None,
    id_factory: Callable[[], str] | None = None,
    threshold: int = CONTENT_BUFFER_THRESHOLD,
) -> StreamingArtifactParser:
    return StreamingArtifactParser(
        resume_artifact_id=resume_artifact_id, id_factory=id_factory, threshold=threshold
    )


def event_to_dict(event: ParserEvent) -> dict:
    if isinstance(event, TextEvent):
        return {"kind": event.kind, "content": event.content}
    if isinstance(event, ArtifactOpenEvent):
        return {"kind": event.kind, "id": event.id, "metadata": dict(event.metadata)}
    if isinstance(event, ArtifactChunkEvent):
        return {"kind": event.kind, "id": event.id, "content": event.content}
    return {"kind": event.kind, "id": event.id}
