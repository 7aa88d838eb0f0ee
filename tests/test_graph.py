import random

from artifact_chat.conversation.graph import ConversationGraph, generate_title
from artifact_chat.conversation.models import DEFAULT_TITLE, Conversation, Message


def add(graph, cid, role, content, **kwargs):
    message = Message.create(role, content)
    graph.add_message_node(cid, message, **kwargs)
    return message


def contents(graph, cid):
    return [e.content for e in graph.active_chain(cid)]


def build_chain(graph):
    cid = graph.create_conversation().id
    u1 = add(graph, cid, "user", "U1")
    a1 = add(graph, cid, "assistant", "A1")
    u2 = add(graph, cid, "user", "U2")
    a2 = add(graph, cid, "assistant", "A2")
    return cid, u1, a1, u2, a2


def test_add_message_node_links_from_tail(graph):
    cid, u1, a1, u2, a2 = build_chain(graph)
    conversation = graph.get_conversation(cid)

    assert conversation.first_message_id == u1.id
    assert u1.active_version.next_message_id == a1.id
    assert u1.active_version.next_message_version_id == a1.active_version_id
    assert contents(graph, cid) == ["U1", "A1", "U2", "A2"]
    assert graph.find_tail(cid) == (a2.id, a2.active_version_id)


def test_regenerate_creates_sibling_version(graph):
    cid = graph.create_conversation().id
    u1 = add(graph, cid, "user", "U1")
    a1 = add(graph, cid, "assistant", "A1")

    version = graph.append_version(cid, a1.id)
    graph.update_version_content(cid, a1.id, version.id, "A1'")

    assert len(a1.versions) == 2
    assert a1.active_version_id == version.id
    assert u1.active_version.next_message_version_id == version.id
    assert contents(graph, cid) == ["U1", "A1'"]


def test_delete_mid_branch_truncates_chain(graph):
    cid, u1, a1, u2, a2 = build_chain(graph)
    assert graph.delete_branch(cid, u2.id)

    assert contents(graph, cid) == ["U1", "A1"]
    assert a1.active_version.next_message_id is None
    assert graph.find_tail(cid) == (a1.id, a1.active_version_id)


def test_delete_first_message_empties_chain(graph):
    cid, u1, *_ = build_chain(graph)
    assert graph.delete_branch(cid, u1.id)
    assert graph.active_chain(cid) == []
    assert graph.get_conversation(cid).first_message_id is None


def test_switch_active_version_restores_branch(graph):
    cid, u1, a1, u2, a2 = build_chain(graph)
    original = a1.active_version_id
    graph.append_version(cid, a1.id)
    graph.update_version_content(cid, a1.id, a1.active_version_id, "A1 again")
    add(graph, cid, "user", "U2b")
    assert contents(graph, cid) == ["U1", "A1 again", "U2b"]

    assert graph.switch_active_version(cid, a1.id, original)
    assert u1.active_version.next_message_version_id == original
    assert contents(graph, cid) == ["U1", "A1", "U2", "A2"]


def test_invalid_targets_are_noops(graph):
    cid, u1, *_ = build_chain(graph)
    assert not graph.switch_active_version(cid, u1.id, "missing")
    assert not graph.switch_active_version(cid, "missing", "v")
    assert graph.append_version(cid, "missing") is None
    assert not graph.delete_branch(cid, "missing")
    assert not graph.delete_branch("missing", u1.id)
    assert graph.add_message_node("missing", Message.create("user", "x")) is None
    assert not graph.finalize_version(cid, u1.id, "missing", True)
    assert graph.active_chain("missing") == []
    assert len(contents(graph, cid)) == 4


def test_active_chain_is_well_formed_after_random_edits(graph):
    rng = random.Random(7)
    cid = graph.create_conversation().id
    for step in range(200):
        conversation = graph.get_conversation(cid)
        op = rng.choice(["add", "add", "version", "switch"])
        if op == "add" or not conversation.messages:
            role = "user" if step % 2 else "assistant"
            add(graph, cid, role, f"m{step}")
        elif op == "version":
            graph.append_version(cid, rng.choice(list(conversation.messages)))
        else:
            message = rng.choice(list(conversation.messages.values()))
            graph.switch_active_version(cid, message.id, rng.choice(message.versions).id)

        chain = graph.active_chain(cid)
        if conversation.first_message_id:
            assert chain[0].message_id == conversation.first_message_id
        ids = [e.message_id for e in chain]
        assert len(ids) == len(set(ids))
        for entry in chain:
            assert entry.version_id == conversation.messages[entry.message_id].active_version_id


def test_active_chain_stops_at_end_message(graph):
    cid, u1, a1, u2, a2 = build_chain(graph)
    chain = graph.active_chain(cid, end_message_id=a1.id)
    assert [e.message_id for e in chain] == [u1.id, a1.id]


def test_active_chain_survives_cycle(graph):
    cid, u1, a1, *_ = build_chain(graph)
    a1.active_version.next_message_id = u1.id
    assert [e.message_id for e in graph.active_chain(cid)] == [u1.id, a1.id]


def test_find_predecessor(graph):
    cid, u1, a1, u2, a2 = build_chain(graph)
    assert graph.find_predecessor(cid, u1.id) is None
    assert graph.find_predecessor(cid, u2.id) == (a1.id, a1.active_version_id)


def test_finalize_version_records_incompleteness(graph):
    cid, u1, a1, *_ = build_chain(graph)
    graph.finalize_version(cid, a1.id, a1.active_version_id, True, "art-1")
    assert a1.active_version.is_incomplete
    assert a1.active_version.incomplete_artifact_id == "art-1"

    graph.finalize_version(cid, a1.id, a1.active_version_id, False, "art-1")
    assert not a1.active_version.is_incomplete
    assert a1.active_version.incomplete_artifact_id is None


def test_find_continuation(graph):
    cid = graph.create_conversation().id
    add(graph, cid, "user", "write it")
    a1 = add(graph, cid, "assistant", "")
    graph.finalize_version(cid, a1.id, a1.active_version_id, True, "art-1")
    u2 = add(graph, cid, "user", "  Continue ")
    assert graph.find_continuation(cid, u2.id) == (a1.id, a1.active_version_id, "art-1")


def test_no_continuation_for_other_text_or_complete_reply(graph):
    cid = graph.create_conversation().id
    add(graph, cid, "user", "write it")
    a1 = add(graph, cid, "assistant", "")
    graph.finalize_version(cid, a1.id, a1.active_version_id, True, "art-1")
    u2 = add(graph, cid, "user", "continue please")
    assert graph.find_continuation(cid, u2.id) is None

    graph.finalize_version(cid, a1.id, a1.active_version_id, False)
    graph.update_version_content(cid, u2.id, u2.active_version_id, "continue")
    assert graph.find_continuation(cid, u2.id) is None


def test_append_version_text_extends_text_part(graph):
    cid = graph.create_conversation().id
    message = Message.create("assistant", "", images=["data:image/png;base64,AAA"])
    graph.add_message_node(cid, message)
    graph.append_version_text(cid, message.id, message.active_version_id, "hi")
    assert message.active_version.content[0] == {"type": "text", "text": "hi"}


def test_auto_title_from_first_user_message(graph):
    cid = graph.create_conversation().id
    add(graph, cid, "user", "  Explain the difference between threads and processes  ", auto_title=True)
    assert graph.get_conversation(cid).title == "Explain the difference between thre..."
    add(graph, cid, "assistant", "...")
    add(graph, cid, "user", "Another question", auto_title=True)
    assert graph.get_conversation(cid).title == "Explain the difference between thre..."


def test_auto_title_keeps_custom_title(graph):
    cid = graph.create_conversation(title="Mine").id
    add(graph, cid, "user", "hello", auto_title=True)
    assert graph.get_conversation(cid).title == "Mine"


def test_generate_title_short_text():
    graph = ConversationGraph()
    cid = graph.create_conversation().id
    add(graph, cid, "user", "Hi there")
    assert generate_title(graph.active_chain(cid)) == "Hi there"
    assert generate_title([]) == DEFAULT_TITLE


def test_conversation_management(graph, artifacts):
    first = graph.create_conversation()
    second = graph.create_conversation()
    artifacts.start_artifact(first.id, "X", {"type": "code"})

    assert graph.rename_conversation(first.id, "  Renamed  ")
    assert graph.get_conversation(first.id).title == "Renamed"
    assert graph.list_conversations()[0].id == first.id

    assert graph.delete_conversation(first.id)
    assert artifacts.get_artifact(first.id, "X") is None
    assert not graph.delete_conversation(first.id)
    assert graph.clear_all() == [second.id]
    assert graph.list_conversations() == []


def test_add_conversation_rekeys_taken_id(graph):
    existing = graph.create_conversation()
    incoming = Conversation.create(conversation_id=existing.id)
    added = graph.add_conversation(incoming)
    assert added.id != existing.id
    assert graph.get_conversation(existing.id) is existing
