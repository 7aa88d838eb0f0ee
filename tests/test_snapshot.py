import pytest

from artifact_chat.artifacts.store import ArtifactStore
from artifact_chat.conversation.graph import ConversationGraph
from artifact_chat.conversation.models import Message
from artifact_chat.data.snapshot import (
    build_snapshot,
    export_conversation,
    import_payload,
    load_snapshot,
)


def populated(graph, artifacts):
    conversation = graph.create_conversation(title="Saved")
    user = Message.create("user", "hi")
    assistant = Message.create("assistant", 'x <artifactrenderer id="X"></artifactrenderer>')
    graph.add_message_node(conversation.id, user)
    graph.add_message_node(conversation.id, assistant)
    artifacts.start_artifact(conversation.id, "X", {"type": "code"})
    artifacts.append_artifact_content(conversation.id, "X", "print(1)")
    artifacts.complete_artifact(conversation.id, "X")
    return conversation


def test_build_snapshot_shape(graph, artifacts):
    conversation = populated(graph, artifacts)
    snapshot = build_snapshot(graph, artifacts, conversation.id)

    assert snapshot["id"] == conversation.id
    assert snapshot["firstMessageId"] == conversation.first_message_id
    message = snapshot["messages"][conversation.first_message_id]
    assert set(message) == {"id", "role", "versions", "activeVersionId"}
    assert message["versions"][0]["isIncomplete"] is False
    assert snapshot["artifacts"]["X"]["versions"][0]["content"] == "print(1)"
    assert build_snapshot(graph, artifacts, "missing") is None


def test_load_into_fresh_stores_keeps_id(graph, artifacts):
    conversation = populated(graph, artifacts)
    snapshot = build_snapshot(graph, artifacts, conversation.id)

    fresh_artifacts = ArtifactStore()
    fresh_graph = ConversationGraph(fresh_artifacts)
    loaded = load_snapshot(fresh_graph, fresh_artifacts, snapshot)
    assert loaded.id == conversation.id
    assert [e.content for e in fresh_graph.active_chain(loaded.id)] == [
        e.content for e in graph.active_chain(conversation.id)
    ]
    assert fresh_artifacts.get_active_version(loaded.id, "X").content == "print(1)"


def test_import_native_with_taken_id_gets_fresh_id(graph, artifacts):
    conversation = populated(graph, artifacts)
    exported = export_conversation(graph, artifacts, conversation.id)
    assert "exportedAt" in exported

    imported = import_payload(graph, artifacts, exported)
    assert len(imported) == 1
    assert imported[0].id != conversation.id
    assert artifacts.get_artifact(imported[0].id, "X").conversation_id == imported[0].id
    assert len(graph.list_conversations()) == 2


def test_migration_defaults_for_old_snapshots(graph, artifacts):
    old = {
        "id": "old",
        "title": "Old",
        "firstMessageId": "m1",
        "messages": {
            "m1": {
                "id": "m1",
                "role": "assistant",
                "activeVersionId": "v1",
                "versions": [{"id": "v1", "content": "hello"}],
            }
        },
    }
    [conversation] = import_payload(graph, artifacts, {"conversations": [old]})
    version = conversation.messages["m1"].active_version
    assert version.is_incomplete is False
    assert version.incomplete_artifact_id is None
    assert conversation.created_at


def test_invalid_first_message_is_dropped(graph, artifacts):
    [conversation] = import_payload(graph, artifacts, [{"id": "c", "firstMessageId": "gone", "messages": {}}])
    assert conversation.first_message_id is None
    assert graph.active_chain(conversation.id) == []


def test_unrecognized_payload(graph, artifacts):
    with pytest.raises(ValueError):
        import_payload(graph, artifacts, {"hello": "world"})
