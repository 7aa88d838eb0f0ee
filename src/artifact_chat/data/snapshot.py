"""Whole-conversation snapshots: the persisted and exported JSON shape.

A snapshot is ``Conversation.to_dict()`` plus an ``artifacts`` map keyed by
artifact id. Loading applies the migration defaults of the model classes.
"""

import logging
from datetime import UTC, datetime

from ..artifacts.store import ArtifactStore
from ..conversation.graph import ConversationGraph
from ..conversation.importer import convert_legacy_export, is_legacy_export
from ..conversation.models import Conversation

logger = logging.getLogger(__name__)


def build_snapshot(graph: ConversationGraph, artifacts: ArtifactStore, conversation_id: str) -> dict | None:
    conversation = graph.get_conversation(conversation_id)
    if conversation is None:
        return None
    snapshot = conversation.to_dict()
    snapshot["artifacts"] = artifacts.to_dict(conversation_id)
    return snapshot


def load_snapshot(graph: ConversationGraph, artifacts: ArtifactStore, data: dict) -> Conversation:
    """Register a snapshot with the stores. A taken id is replaced with a fresh one."""
    conversation = graph.add_conversation(Conversation.from_dict(data))
    artifacts.load(conversation.id, data.get("artifacts"))
    return conversation


def export_conversation(graph: ConversationGraph, artifacts: ArtifactStore, conversation_id: str) -> dict | None:
    snapshot = build_snapshot(graph, artifacts, conversation_id)
    if snapshot is not None:
        snapshot["exportedAt"] = datetime.now(UTC).isoformat()
    return snapshot


def _native_snapshots(payload) -> list[dict] | None:
    if isinstance(payload, dict):
        if isinstance(payload.get("conversations"), list):
            return [c for c in payload["conversations"] if isinstance(c, dict)]
        if "messages" in payload or "firstMessageId" in payload:
            return [payload]
        return None
    if isinstance(payload, list) and all(
        isinstance(c, dict) and ("messages" in c or "firstMessageId" in c) for c in payload
    ):
        return payload
    return None


def import_payload(graph: ConversationGraph, artifacts: ArtifactStore, payload) -> list[Conversation]:
    """Import a native export (one snapshot or many) or a legacy ChatGPT export.

    Raises ``ValueError`` when the payload is neither.
    """
    if is_legacy_export(payload):
        imported = []
        for item in convert_legacy_export(payload):
            conversation = graph.add_conversation(item.conversation)
            for container in item.artifacts:
                container.conversation_id = conversation.id
                artifacts.add_container(container)
            imported.append(conversation)
        return imported

    snapshots = _native_snapshots(payload)
    if snapshots is None:
        raise ValueError("Unrecognized import format")
    imported = [load_snapshot(graph, artifacts, s) for s in snapshots]
    logger.info("Imported %d conversations", len(imported))
    return imported
