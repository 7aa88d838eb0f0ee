"""Import conversations from a ChatGPT data export (``conversations.json``).

Each exported conversation is a tree of nodes keyed by id in ``mapping``.
The path from ``current_node`` back to the root is the main branch; sibling
replies become alternate Versions of the same Message.
"""

import json
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..artifacts.store import ArtifactContainer, ArtifactVersion
from ..ids import new_id
from .formatting import artifact_placeholder
from .models import Content, Conversation, Message, Version

logger = logging.getLogger(__name__)

SKIPPED_ROLES = ("system", "tool")
SKIPPED_CONTENT_TYPES = (
    "user_context_message",
    "system_context",
    "thought",
    "reasoning_recap",
    "model_editable_context",
)
CANVAS_TOOL = "canmore.create_textdoc"
ROOT_SENTINEL = "client-created-root"

_JSON_FENCE_RE = re.compile(r"^```json\s*|\s*```$")


@dataclass
class ImportedConversation:
    conversation: Conversation
    artifacts: list[ArtifactContainer] = field(default_factory=list)


@dataclass
class _Kept:
    source_id: str
    role: str
    content: Content
    created_at: str
    children: list["_Kept"] = field(default_factory=list)


def _timestamp(value) -> str:
    if value is None:
        return datetime.now(UTC).isoformat()
    return datetime.fromtimestamp(float(value), UTC).isoformat()


def is_legacy_export(payload) -> bool:
    return (
        isinstance(payload, list)
        and bool(payload)
        and all(isinstance(c, dict) and "mapping" in c for c in payload)
    )


def _message(node: dict | None) -> dict:
    return (node or {}).get("message") or {}


def _role(node: dict | None) -> str | None:
    return (_message(node).get("author") or {}).get("role")


def _content_type(node: dict | None) -> str | None:
    return (_message(node).get("content") or {}).get("content_type")


def _parts(node: dict | None) -> list:
    return (_message(node).get("content") or {}).get("parts") or []


def _joined_text(node: dict | None) -> str:
    return "\n".join(p for p in _parts(node) if isinstance(p, str)).strip()


def _convert_content(node: dict) -> Content | None:
    """Content of a plain user/assistant node, or None when it has nothing to show."""
    message = _message(node)
    role = _role(node)
    if (
        not role
        or role in SKIPPED_ROLES
        or _content_type(node) in SKIPPED_CONTENT_TYPES
        or (message.get("metadata") or {}).get("is_visually_hidden_from_conversation")
        or not message.get("content")
    ):
        return None
    if role not in ("user", "assistant"):
        return None

    content_type = _content_type(node)
    if content_type == "text":
        return _joined_text(node) or None
    if content_type == "multimodal_text":
        attachments = (message.get("metadata") or {}).get("attachments") or []
        parts: list[dict] = []
        for index, part in enumerate(_parts(node)):
            if isinstance(part, str):
                if part.strip():
                    parts.append({"type": "text", "text": part.strip()})
            elif part.get("content_type") == "image_asset_pointer" and part.get("asset_pointer"):
                attachment = attachments[index] if index < len(attachments) else {}
                parts.append(
                    {
                        "type": "image",
                        "imageUrl": part["asset_pointer"],
                        "title": attachment.get("name") or f"Uploaded Image {index + 1}",
                    }
                )
        return parts or None
    return None


class _LegacyConversion:
    def __init__(self, source: dict, index: int) -> None:
        self.source = source
        self.mapping: dict = source["mapping"]
        self.index = index
        self.artifacts: list[ArtifactContainer] = []
        self.main_path = self._main_path()
        self.main_set = set(self.main_path)
        # pattern start node -> (compressed content, node whose children continue the branch)
        self.patterns: dict[str, tuple[Content, str]] = {}
        self.consumed: set[str] = set()

    def _main_path(self) -> list[str]:
        path = []
        seen = set()
        node_id = self.source.get("current_node")
        while node_id and node_id in self.mapping and node_id not in seen:
            seen.add(node_id)
            path.append(node_id)
            parent = self.mapping[node_id].get("parent")
            if not parent or parent == ROOT_SENTINEL:
                break
            node_id = parent
        path.reverse()
        return path

    # --- Tool patterns on the main branch ---

    def detect_patterns(self) -> None:
        path = self.main_path
        i = 0
        while i < len(path):
            consumed = self._image_generation(i) or self._canvas(i)
            i += consumed or 1

    def _image_generation(self, i: int) -> int:
        """Assistant prompt, tool image node(s), final assistant reply."""
        path, mapping = self.main_path, self.mapping
        prompt = mapping.get(path[i])
        if _role(prompt) != "assistant" or _content_type(prompt) != "text" or i + 1 >= len(path):
            return 0
        tool = mapping.get(path[i + 1])
        parts = _parts(tool)
        if (
            _role(tool) != "tool"
            or _content_type(tool) != "multimodal_text"
            or not parts
            or not isinstance(parts[0], dict)
            or parts[0].get("content_type") != "image_asset_pointer"
        ):
            return 0

        last_parent = path[i + 1]
        j = i + 2
        final_index = None
        while j < len(path):
            node = mapping.get(path[j])
            if node is None or node.get("parent") != last_parent:
                break
            if _role(node) == "assistant":
                final_index = j
                break
            if _role(node) != "tool":
                break
            last_parent = path[j]
            j += 1
        if final_index is None:
            logger.warning("No final assistant reply for image pattern at %s", path[i])
            return 0

        final = mapping[path[final_index]]
        content: list[dict] = []
        prompt_text = _joined_text(prompt)
        if prompt_text:
            content.append({"type": "text", "text": prompt_text})
        content.extend(
            {"type": "text", "text": p.strip()} for p in _parts(final) if isinstance(p, str) and p.strip()
        )
        image = parts[0]
        content.append(
            {
                "type": "image",
                "imageUrl": image["asset_pointer"],
                "title": (_message(tool).get("metadata") or {}).get("image_gen_title")
                or "Generated Image",
            }
        )
        self.patterns[path[i]] = (content, path[final_index])
        self.consumed.update(path[i + 1 : final_index + 1])
        return final_index - i + 1

    def _canvas(self, i: int) -> int:
        """Assistant document call, canvas tool node, final assistant reply."""
        path, mapping = self.main_path, self.mapping
        call = mapping.get(path[i])
        if (
            _role(call) != "assistant"
            or _message(call).get("recipient") != CANVAS_TOOL
            or i + 2 >= len(path)
        ):
            return 0
        tool = mapping.get(path[i + 1])
        final = mapping.get(path[i + 2])
        if (
            _role(tool) != "tool"
            or (_message(tool).get("author") or {}).get("name") != CANVAS_TOOL
            or _role(final) != "assistant"
            or tool.get("parent") != path[i]
            or final.get("parent") != path[i + 1]
        ):
            return 0

        raw = _parts(call)[0] if _parts(call) else None
        if not isinstance(raw, str):
            return 0
        try:
            document = json.loads(_JSON_FENCE_RE.sub("", raw))
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse canvas document in node %s: %s", path[i], e)
            return 0
        if not isinstance(document, dict) or not document.get("content"):
            return 0

        doc_type = document.get("type") or "text"
        metadata = {"type": "text"}
        if doc_type.startswith("code/"):
            metadata = {"type": "code", "language": doc_type.split("/", 1)[1] or "text"}
        artifact_id = new_id("art")
        metadata["title"] = (
            document.get("name")
            or ((_message(tool).get("metadata") or {}).get("canvas") or {}).get("title")
            or f"Artifact {artifact_id}"
        )
        version = ArtifactVersion(
            id=new_id("aver"),
            content=document["content"],
            metadata=metadata,
            is_complete=True,
            created_at=_timestamp(_message(call).get("create_time")),
        )
        self.artifacts.append(
            ArtifactContainer(
                id=artifact_id, conversation_id="", versions=[version], active_version_id=version.id
            )
        )

        text = "\n".join(p for p in _parts(final) if isinstance(p, str))
        self.patterns[path[i]] = (f"{text}\n{artifact_placeholder(artifact_id)}", path[i + 2])
        self.consumed.update(path[i + 1 : i + 3])
        return 3

    # --- Tree folding ---

    def kept_roots(self) -> list[_Kept]:
        """Fold the export tree into kept nodes, lifting children of skipped ones."""
        roots = [
            node_id
            for node_id, node in self.mapping.items()
            if not node.get("parent") or node.get("parent") not in self.mapping
        ]
        order: list[str] = []
        visited: set[str] = set()
        stack = list(roots)
        while stack:
            node_id = stack.pop()
            if node_id in visited or node_id not in self.mapping:
                continue
            visited.add(node_id)
            order.append(node_id)
            stack.extend(self.mapping[node_id].get("children") or [])

        lifted: dict[str, list[_Kept]] = {}

        def contributions(node_id: str) -> list[_Kept]:
            out: list[_Kept] = []
            for child in self.mapping[node_id].get("children") or []:
                out.extend(lifted.get(child, []))
            return out

        for node_id in reversed(order):
            node = self.mapping[node_id]
            if node_id in self.patterns:
                content, tail_id = self.patterns[node_id]
                created = _timestamp(_message(self.mapping[tail_id]).get("create_time"))
                lifted[node_id] = [
                    _Kept(node_id, "assistant", content, created, contributions(tail_id))
                ]
            elif node_id in self.consumed:
                lifted[node_id] = []
            else:
                content = _convert_content(node)
                if content is None:
                    lifted[node_id] = contributions(node_id)
                else:
                    created = _timestamp(_message(node).get("create_time"))
                    lifted[node_id] = [
                        _Kept(node_id, _role(node), content, created, contributions(node_id))
                    ]

        kept: list[_Kept] = []
        for root in roots:
            kept.extend(lifted.get(root, []))
        return kept

    # --- Graph construction ---

    def _preferred(self, group: list[_Kept]) -> _Kept:
        for kept in group:
            if kept.source_id in self.main_set:
                return kept
        return group[-1]

    def build(self) -> Conversation | None:
        self.detect_patterns()
        roots = self.kept_roots()
        if not roots:
            return None

        title = self.source.get("title") or f"Imported Conversation {self.index + 1}"
        conversation = Conversation.create(title=title)
        conversation.created_at = _timestamp(self.source.get("create_time"))
        conversation.updated_at = _timestamp(self.source.get("update_time"))

        queue: deque[tuple[list[_Kept], Version | None]] = deque([(roots, None)])
        while queue:
            group, parent_version = queue.popleft()
            preferred = self._preferred(group)
            message = Message(id=new_id("msg"), role=preferred.role, versions=[], active_version_id="")
            for kept in group:
                if kept.role != preferred.role:
                    logger.warning(
                        "Skipping %s branch at node %s under a %s reply",
                        kept.role,
                        kept.source_id,
                        preferred.role,
                    )
                    continue
                version = Version(id=new_id("ver"), content=kept.content, created_at=kept.created_at)
                message.versions.append(version)
                if kept is preferred:
                    message.active_version_id = version.id
                if kept.children:
                    queue.append((kept.children, version))

            conversation.messages[message.id] = message
            if parent_version is None:
                conversation.first_message_id = message.id
            else:
                parent_version.next_message_id = message.id
                parent_version.next_message_version_id = message.active_version_id
        return conversation


def convert_legacy_conversation(source: dict, index: int = 0) -> ImportedConversation | None:
    if not source.get("mapping") or not source.get("current_node"):
        logger.warning(
            "Skipping conversation %s: missing 'mapping' or 'current_node'",
            source.get("title") or index + 1,
        )
        return None
    conversion = _LegacyConversion(source, index)
    conversation = conversion.build()
    if conversation is None:
        logger.warning("Skipping conversation %r: no importable messages", source.get("title"))
        return None
    for container in conversion.artifacts:
        container.conversation_id = conversation.id
    return ImportedConversation(conversation, conversion.artifacts)


def convert_legacy_export(payload: list[dict]) -> list[ImportedConversation]:
    imported = []
    for index, source in enumerate(payload):
        try:
            result = convert_legacy_conversation(source, index)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Error importing conversation %r: %s", source.get("title") or index + 1, e)
            continue
        if result is not None:
            imported.append(result)
    logger.info("Imported %d of %d legacy conversations", len(imported), len(payload))
    return imported
