from itertools import count

import pytest

from artifact_chat.artifacts.parser import (
    ArtifactChunkEvent,
    ArtifactCloseEvent,
    ArtifactOpenEvent,
    TextEvent,
    create_parser,
    event_to_dict,
)


def ids():
    n = count(1)
    return lambda: f"art-{next(n)}"


def run(chunks, **kwargs):
    parser = create_parser(id_factory=ids(), **kwargs)
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.flush())
    return parser, events


def coalesce(events):
    """Merge adjacent text events and adjacent chunks of the same artifact."""
    out = []
    for event in events:
        if out and isinstance(event, TextEvent) and isinstance(out[-1], TextEvent):
            out[-1] = TextEvent(out[-1].content + event.content)
        elif (
            out
            and isinstance(event, ArtifactChunkEvent)
            and isinstance(out[-1], ArtifactChunkEvent)
            and out[-1].id == event.id
        ):
            out[-1] = ArtifactChunkEvent(event.id, out[-1].content + event.content)
        else:
            out.append(event)
    return out


def test_whole_artifact_in_one_chunk():
    text = 'hello <artifact type="code" language="python" filename="a.py">print(1)</artifact> bye'
    parser, events = run([text])
    assert events == [
        TextEvent("hello "),
        ArtifactOpenEvent("art-1", {"type": "code", "language": "python", "filename": "a.py"}),
        ArtifactChunkEvent("art-1", "print(1)"),
        ArtifactCloseEvent("art-1"),
        TextEvent(" bye"),
    ]
    assert not parser.is_incomplete()


def test_tag_split_across_chunks():
    _, events = run(["a<arti", 'fact type="t', 'ext">BODY</artifact>'])
    assert events == [
        TextEvent("a"),
        ArtifactOpenEvent("art-1", {"type": "text"}),
        ArtifactChunkEvent("art-1", "BODY"),
        ArtifactCloseEvent("art-1"),
    ]


def test_incomplete_artifact_at_stream_end():
    parser, events = run(['<artifact type="code">part1'])
    assert events == [
        ArtifactOpenEvent("art-1", {"type": "code"}),
        ArtifactChunkEvent("art-1", "part1"),
    ]
    assert parser.is_incomplete()
    assert parser.incomplete_artifact_id() == "art-1"


def test_resumed_parser_continues_artifact_without_open_event():
    parser = create_parser(resume_artifact_id="art-9")
    events = parser.feed("part2</artifact>") + parser.flush()
    assert events == [ArtifactChunkEvent("art-9", "part2"), ArtifactCloseEvent("art-9")]
    assert not parser.is_incomplete()
    assert parser.incomplete_artifact_id() is None


def test_id_attribute_selects_container_and_is_not_metadata():
    _, events = run(['<artifact id="X" type="code">v1</artifact>'])
    assert events[0] == ArtifactOpenEvent("X", {"type": "code"})


def test_missing_type_defaults_to_unknown():
    _, events = run(['<artifact title="Notes">x</artifact>'])
    assert events[0].metadata == {"title": "Notes", "type": "unknown"}


def test_attribute_names_are_lowercased_values_verbatim():
    _, events = run(['<ARTIFACT Type="Code" FileName="A.PY">x</Artifact>'])
    assert events[0].metadata == {"type": "Code", "filename": "A.PY"}
    assert events[-1] == ArtifactCloseEvent("art-1")


@pytest.mark.parametrize(
    "text",
    [
        "a < b and c > d",
        "<artifact>no attributes</artifact>",
        "<artifactx type='code'>",
        "<b>bold</b>",
    ],
)
def test_non_matching_markup_is_text(text):
    parser, events = run([text])
    assert coalesce(events) == [TextEvent(text)]
    assert not parser.is_incomplete()


def test_lone_close_tag_outside_artifact_is_text():
    _, events = run(["done</artifact>"])
    assert coalesce(events) == [TextEvent("done</artifact>")]


def test_markup_inside_artifact_is_content():
    body = '<div class="x">hi</div> if a < b: pass'
    _, events = run([f'<artifact type="html">{body}</artifact>'])
    chunks = "".join(e.content for e in events if isinstance(e, ArtifactChunkEvent))
    assert chunks == body


def test_content_is_coalesced_until_threshold():
    parser = create_parser(id_factory=ids(), threshold=10)
    assert parser.feed('<artifact type="t">') == [ArtifactOpenEvent("art-1", {"type": "t"})]
    assert parser.feed("abc") == []
    assert parser.feed("defghij") == [ArtifactChunkEvent("art-1", "abcdefghij")]
    assert parser.feed("k</artifact>") == [
        ArtifactChunkEvent("art-1", "k"),
        ArtifactCloseEvent("art-1"),
    ]


def test_flush_emits_held_partial_tag_as_text():
    parser, events = run(["see <artif"])
    assert coalesce(events) == [TextEvent("see <artif")]
    assert not parser.is_incomplete()


def test_flush_inside_artifact_keeps_partial_close_as_content():
    parser, events = run(['<artifact type="t">body</artif'])
    chunks = "".join(e.content for e in events if isinstance(e, ArtifactChunkEvent))
    assert chunks == "body</artif"
    assert parser.is_incomplete()


def test_two_artifacts_in_one_stream():
    _, events = run(['<artifact type="a">1</artifact> mid <artifact type="b">2</artifact>'])
    assert [event_to_dict(e)["kind"] for e in events] == [
        "artifact_open",
        "artifact_chunk",
        "artifact_close",
        "text",
        "artifact_open",
        "artifact_chunk",
        "artifact_close",
    ]
    assert events[4].id == "art-2"


STREAM = (
    'Intro <artifact type="code" language="python" filename="a.py">def f(x):\n'
    "    return x < 3 and x > 1\n</artifact> middle <b>bold</b> "
    '<artifact id="doc" type="markdown"># Title\nbody text that is long enough to pass '
    "the coalescing threshold</artifact> tail <artifact type=\"t\">open"
)


@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 11, 64])
def test_chunking_does_not_change_events(size):
    _, whole = run([STREAM])
    chunks = [STREAM[i : i + size] for i in range(0, len(STREAM), size)]
    _, split = run(chunks)
    assert coalesce(split) == coalesce(whole)


def test_chunks_reassemble_the_tagged_region():
    _, events = run([STREAM[i : i + 4] for i in range(0, len(STREAM), 4)])
    content: dict[str, str] = {}
    for event in events:
        if isinstance(event, ArtifactChunkEvent):
            content[event.id] = content.get(event.id, "") + event.content
    assert content["art-1"] == "def f(x):\n    return x < 3 and x > 1\n"
    assert content["doc"].startswith("# Title\nbody text")
    assert content["art-2"] == "open"


def test_event_to_dict():
    assert event_to_dict(ArtifactOpenEvent("X", {"type": "code"})) == {
        "kind": "artifact_open",
        "id": "X",
        "metadata": {"type": "code"},
    }
    assert event_to_dict(TextEvent("hi")) == {"kind": "text", "content": "hi"}
