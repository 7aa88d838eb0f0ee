import json

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sse_starlette.sse import AppStatus

from artifact_chat.agent.orchestrator import TurnOrchestrator
from artifact_chat.api.routes import router
from conftest import FakeAdapter, completion_lines


def parse_sse(body: str) -> list[tuple[str, str]]:
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        name, data = None, []
        for line in block.split("\n"):
            if line.startswith("event:"):
                name = line[6:].strip()
            elif line.startswith("data:"):
                data.append(line[5:].removeprefix(" "))
        if name:
            events.append((name, "\n".join(data)))
    return events


@pytest.fixture(autouse=True)
def reset_sse_exit_event(monkeypatch):
    # sse-starlette caches its shutdown event on the first loop that streams
    monkeypatch.setattr(AppStatus, "should_exit_event", None, raising=False)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest_asyncio.fixture
async def client(graph, artifacts, settings, sqlite_store, adapter):
    app = FastAPI()
    app.include_router(router)
    app.state.graph = graph
    app.state.artifacts = artifacts
    app.state.sqlite_store = sqlite_store
    app.state.orchestrator = TurnOrchestrator(
        graph, artifacts, {"local": adapter}, settings, store=sqlite_store
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def chat(client, message, conversation_id=None):
    body = {"message": message}
    if conversation_id:
        body["conversation_id"] = conversation_id
    response = await client.post("/api/chat", json=body)
    assert response.status_code == 200
    return parse_sse(response.text)


@pytest.mark.asyncio
async def test_chat_streams_turn_events(client, adapter, sqlite_store):
    adapter.replies.append(completion_lines(['Sure <artifact type="code">print(1)</artifact>']))
    events = await chat(client, "Write code")

    assert [name for name, _ in events] == [
        "init",
        "text",
        "artifact_open",
        "artifact_chunk",
        "artifact_close",
        "done",
    ]
    init = json.loads(events[0][1])
    done = json.loads(events[-1][1])
    assert init["title"] == "Write code"
    assert done["conversation_id"] == init["conversation_id"]
    assert (await sqlite_store.get_conversation(init["conversation_id"])) is not None


@pytest.mark.asyncio
async def test_chat_unknown_conversation_404(client):
    response = await client.post("/api/chat", json={"message": "hi", "conversation_id": "missing"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_conversation_crud(client, sqlite_store):
    created = (await client.post("/api/conversations", json={"title": "Mine"})).json()
    assert created["title"] == "Mine"
    cid = created["id"]

    listed = (await client.get("/api/conversations")).json()
    assert [c["id"] for c in listed] == [cid]

    renamed = (await client.patch(f"/api/conversations/{cid}", json={"title": "Renamed"})).json()
    assert renamed["title"] == "Renamed"

    detail = (await client.get(f"/api/conversations/{cid}")).json()
    assert detail["conversation"]["title"] == "Renamed"
    assert detail["chain"] == []
    assert detail["status"] == {"is_loading": False, "error": None}

    assert (await client.delete(f"/api/conversations/{cid}")).status_code == 200
    assert (await client.get(f"/api/conversations/{cid}")).status_code == 404
    assert await sqlite_store.get_conversation(cid) is None


@pytest.mark.asyncio
async def test_regenerate_and_switch_version(client, adapter):
    adapter.replies.extend([completion_lines(["first"]), completion_lines(["second"])])
    events = await chat(client, "Hello")
    done = json.loads(events[-1][1])
    cid, mid, original = done["conversation_id"], done["message_id"], done["version_id"]

    response = await client.post(f"/api/conversations/{cid}/messages/{mid}/regenerate")
    assert [name for name, _ in parse_sse(response.text)][-1] == "done"
    chain = (await client.get(f"/api/conversations/{cid}")).json()["chain"]
    assert chain[-1]["content"] == "second"

    switched = await client.post(f"/api/conversations/{cid}/messages/{mid}/versions/{original}/activate")
    assert switched.json()["chain"][-1]["content"] == "first"
    missing = await client.post(f"/api/conversations/{cid}/messages/{mid}/versions/nope/activate")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_delete_branch(client, adapter):
    adapter.replies.append(completion_lines(["reply"]))
    done = json.loads((await chat(client, "Hello"))[-1][1])
    cid, mid = done["conversation_id"], done["message_id"]

    assert (await client.delete(f"/api/conversations/{cid}/messages/{mid}")).status_code == 200
    chain = (await client.get(f"/api/conversations/{cid}")).json()["chain"]
    assert [e["content"] for e in chain] == ["Hello"]
    assert (await client.delete(f"/api/conversations/{cid}/messages/{mid}")).status_code == 404


@pytest.mark.asyncio
async def test_artifact_edit_and_switch(client, adapter):
    adapter.replies.append(completion_lines(['<artifact id="X" type="code">v1</artifact>']))
    done = json.loads((await chat(client, "code"))[-1][1])
    cid = done["conversation_id"]

    edited = await client.put(f"/api/conversations/{cid}/artifacts/X", json={"content": "v2"})
    container = edited.json()
    assert [v["content"] for v in container["versions"]] == ["v1", "v2"]

    first = container["versions"][0]["id"]
    switched = await client.post(f"/api/conversations/{cid}/artifacts/X/versions/{first}/activate")
    assert switched.json()["activeVersionId"] == first
    assert (await client.get(f"/api/conversations/{cid}/artifacts/missing")).status_code == 404


@pytest.mark.asyncio
async def test_export_then_import(client, adapter):
    adapter.replies.append(completion_lines(["reply"]))
    done = json.loads((await chat(client, "Hello"))[-1][1])
    cid = done["conversation_id"]

    exported = (await client.get(f"/api/conversations/{cid}/export")).json()
    assert "exportedAt" in exported

    imported = (await client.post("/api/import", json=exported)).json()
    assert len(imported) == 1
    assert imported[0]["id"] != cid
    assert len((await client.get("/api/conversations")).json()) == 2

    bad = await client.post("/api/import", json={"nothing": True})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_cancel_without_turn(client):
    cid = (await client.post("/api/conversations")).json()["id"]
    response = await client.post(f"/api/conversations/{cid}/cancel")
    assert response.json() == {"cancelled": False}


@pytest.mark.asyncio
async def test_regenerate_continuation_reply_conflicts(client, adapter):
    adapter.replies.extend(
        [completion_lines(['<artifact type="code">part1']), completion_lines(["part2"])]
    )
    cid = json.loads((await chat(client, "write"))[-1][1])["conversation_id"]
    done = json.loads((await chat(client, "continue", cid))[-1][1])
    assert done["is_incomplete"]

    response = await client.post(f"/api/conversations/{cid}/messages/{done['message_id']}/regenerate")
    assert response.status_code == 409
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_clear_all_conversations(client, sqlite_store):
    for title in ("one", "two"):
        await client.post("/api/conversations", json={"title": title})

    response = await client.delete("/api/conversations")
    assert len(response.json()["deleted"]) == 2
    assert (await client.get("/api/conversations")).json() == []
    assert await sqlite_store.load_all() == []


@pytest.mark.asyncio
async def test_delete_survives_store_failure(client, sqlite_store, monkeypatch, caplog):
    cid = (await client.post("/api/conversations")).json()["id"]

    async def broken_delete(conversation_id):
        raise RuntimeError("disk is gone")

    monkeypatch.setattr(sqlite_store, "delete_conversation", broken_delete)
    response = await client.delete(f"/api/conversations/{cid}")

    assert response.status_code == 200
    assert (await client.get(f"/api/conversations/{cid}")).status_code == 404
    assert "disk is gone" in caplog.text
