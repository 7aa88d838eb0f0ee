import json

import pytest
import pytest_asyncio

from artifact_chat.agent.orchestrator import TurnOrchestrator
from artifact_chat.artifacts.store import ArtifactStore
from artifact_chat.config import ChatSettings
from artifact_chat.conversation.graph import ConversationGraph
from artifact_chat.data.sqlite_store import SQLiteStore
from artifact_chat.providers.adapters import ProviderResponse


def completion_lines(chunks: list[str]) -> list[str]:
    """Render text chunks as an OpenAI-compatible chat-completions SSE stream."""
    lines = []
    for chunk in chunks:
        lines.append("data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]}))
        lines.append("")
    lines.extend(["data: [DONE]", ""])
    return lines


async def aiter_lines(lines: list[str]):
    for line in lines:
        yield line


class FakeAdapter:
    """Stands in for a provider adapter; each call pops the next scripted reply.

    A reply is a list of raw SSE lines, a plain string (non-streaming reply)
    or an exception to raise.
    """

    def __init__(self, *replies, provider: str = "local") -> None:
        self.provider = provider
        self.replies = list(replies)
        self.calls: list[dict] = []

    async def chat(self, messages, model, options=None):
        self.calls.append({"messages": messages, "model": model, "options": options})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ProviderResponse(self.provider, content=reply)
        return ProviderResponse(self.provider, body=aiter_lines(reply))

    async def aclose(self) -> None:
        pass


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def settings():
    return ChatSettings(
        provider="local",
        model="test-model",
        system_prompt="Be brief.",
        auto_title=True,
        content_buffer_threshold=32,
    )


@pytest.fixture
def artifacts():
    return ArtifactStore()


@pytest.fixture
def graph(artifacts):
    return ConversationGraph(artifacts)


@pytest.fixture
def make_orchestrator(graph, artifacts, settings):
    def factory(*replies, store=None, provider="local"):
        adapter = FakeAdapter(*replies, provider=provider)
        orchestrator = TurnOrchestrator(graph, artifacts, {provider: adapter}, settings, store=store)
        return orchestrator, adapter

    return factory
