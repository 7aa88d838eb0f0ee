import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..ids import new_id

logger = logging.getLogger(__name__)

METADATA_MERGE = "merge"
METADATA_REPLACE = "replace"


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ArtifactVersion:
    id: str
    content: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    is_complete: bool = False
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "isComplete": self.is_complete,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ArtifactVersion":
        metadata = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
        metadata.setdefault("type", "unknown")
        return cls(
            id=data.get("id") or new_id("aver"),
            content=data.get("content") or "",
            metadata=metadata,
            is_complete=bool(data.get("isComplete", True)),
            created_at=data.get("createdAt") or _now(),
        )


@dataclass
class ArtifactContainer:
    id: str
    conversation_id: str
    versions: list[ArtifactVersion]
    active_version_id: str

    @property
    def active_version(self) -> ArtifactVersion:
        for version in self.versions:
            if version.id == self.active_version_id:
                return version
        # activeVersionId always names a present version; fall back to the newest
        return self.versions[-1]

    def find_version(self, version_id: str) -> ArtifactVersion | None:
        for version in self.versions:
            if version.id == version_id:
                return version
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "activeVersionId": self.active_version_id,
            "versions": [v.to_dict() for v in self.versions],
        }

    @classmethod
    def from_dict(cls, data: dict, conversation_id: str) -> "ArtifactContainer | None":
        versions = [ArtifactVersion.from_dict(v) for v in data.get("versions") or []]
        if not versions or not data.get("id"):
            return None
        active_id = data.get("activeVersionId")
        if not any(v.id == active_id for v in versions):
            active_id = versions[-1].id
        return cls(
            id=data["id"],
            conversation_id=conversation_id,
            versions=versions,
            active_version_id=active_id,
        )


class ArtifactStore:
    """Per-conversation artifact containers and their ordered versions.

    Versions are append-only. Content is only ever appended to an active
    version that is still incomplete; completing a version freezes it.
    """

    def __init__(self, metadata_merge: str = METADATA_MERGE) -> None:
        self._by_conversation: dict[str, dict[str, ArtifactContainer]] = {}
        self._metadata_merge = metadata_merge

    # --- Streaming operations ---

    def start_artifact(
        self, conversation_id: str, artifact_id: str, metadata: dict[str, str] | None
    ) -> ArtifactContainer | None:
        if not conversation_id or not artifact_id:
            logger.error("Artifact id or conversation id missing for start_artifact")
            return None
        metadata = dict(metadata or {})
        artifacts = self._by_conversation.setdefault(conversation_id, {})
        container = artifacts.get(artifact_id)

        if container is None:
            metadata.setdefault("type", "unknown")
            version = ArtifactVersion(id=new_id("aver"), metadata=metadata)
            container = ArtifactContainer(
                id=artifact_id,
                conversation_id=conversation_id,
                versions=[version],
                active_version_id=version.id,
            )
            artifacts[artifact_id] = container
            return container

        active = container.active_version
        new_type = metadata.get("type")
        if new_type and new_type != "unknown" and new_type != active.metadata.get("type"):
            logger.info(
                "Artifact %s changes type %s -> %s; id is authoritative",
                artifact_id,
                active.metadata.get("type"),
                new_type,
            )

        if active.is_complete:
            logger.info("Rewriting completed artifact %s as a new version", artifact_id)
            version = ArtifactVersion(
                id=new_id("aver"), metadata=self._merge_metadata(active.metadata, metadata)
            )
            container.versions.append(version)
            container.active_version_id = version.id
        else:
            logger.warning(
                "Artifact %s already started and incomplete; merging metadata only", artifact_id
            )
            active.metadata = {**active.metadata, **metadata}
        return container

    def append_artifact_content(self, conversation_id: str, artifact_id: str, chunk: str) -> bool:
        container = self.get_artifact(conversation_id, artifact_id)
        if container is None:
            logger.warning(
                "Append to unknown artifact %s in conversation %s", artifact_id, conversation_id
            )
            return False
        active = container.active_version
        if active.is_complete:
            logger.warning("Append to completed artifact %s ignored", artifact_id)
            return False
        active.content += chunk
        return True

    def complete_artifact(self, conversation_id: str, artifact_id: str) -> bool:
        container = self.get_artifact(conversation_id, artifact_id)
        if container is None:
            logger.warning(
                "Complete of unknown artifact %s in conversation %s", artifact_id, conversation_id
            )
            return False
        container.active_version.is_complete = True
        return True

    # --- Navigation / edits ---

    def switch_active_artifact_version(
        self, conversation_id: str, artifact_id: str, version_id: str
    ) -> bool:
        container = self.get_artifact(conversation_id, artifact_id)
        if container is None or container.find_version(version_id) is None:
            logger.warning(
                "Cannot switch artifact %s to version %s: not found", artifact_id, version_id
            )
            return False
        container.active_version_id = version_id
        return True

    def update_artifact_content_by_user(
        self, conversation_id: str, artifact_id: str, content: str
    ) -> ArtifactVersion | None:
        """Record a user edit as a new, already complete version."""
        container = self.get_artifact(conversation_id, artifact_id)
        if container is None:
            logger.warning("User edit of unknown artifact %s", artifact_id)
            return None
        active = container.active_version
        if not active.is_complete:
            logger.warning("Artifact %s is still streaming; user edit refused", artifact_id)
            return None
        version = ArtifactVersion(
            id=new_id("aver"), content=content, metadata=dict(active.metadata), is_complete=True
        )
        container.versions.append(version)
        container.active_version_id = version.id
        return version

    # --- Queries ---

    def get_artifact(self, conversation_id: str, artifact_id: str) -> ArtifactContainer | None:
        return self._by_conversation.get(conversation_id, {}).get(artifact_id)

    def get_active_version(self, conversation_id: str, artifact_id: str) -> ArtifactVersion | None:
        container = self.get_artifact(conversation_id, artifact_id)
        return container.active_version if container else None

    def list_artifacts(self, conversation_id: str) -> list[ArtifactContainer]:
        return list(self._by_conversation.get(conversation_id, {}).values())

    def remove_conversation(self, conversation_id: str) -> None:
        if self._by_conversation.pop(conversation_id, None) is not None:
            logger.info("Removed artifacts for conversation %s", conversation_id)

    # --- Serialization ---

    def to_dict(self, conversation_id: str) -> dict:
        return {a.id: a.to_dict() for a in self.list_artifacts(conversation_id)}

    def load(self, conversation_id: str, data: dict | None) -> None:
        artifacts: dict[str, ArtifactContainer] = {}
        for raw in (data or {}).values():
            container = ArtifactContainer.from_dict(raw, conversation_id)
            if container is not None:
                artifacts[container.id] = container
        self._by_conversation[conversation_id] = artifacts

    def add_container(self, container: ArtifactContainer) -> None:
        self._by_conversation.setdefault(container.conversation_id, {})[container.id] = container

    def _merge_metadata(self, old: dict[str, str], new: dict[str, str]) -> dict[str, str]:
        if self._metadata_merge == METADATA_REPLACE:
            merged = dict(new)
            merged.setdefault("type", old.get("type", "unknown"))
            return merged
        return {**old, **new}
