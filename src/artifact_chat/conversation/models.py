from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..ids import new_id

DEFAULT_TITLE = "New chat"
ROLES = ("user", "assistant", "system")

# Content is either a plain string or an ordered list of parts:
#   {"type": "text", "text": ...}
#   {"type": "image", "imageUrl": "data:..."}
#   {"type": "attachment", "fileName": ..., "fileType": ..., "fileData": "data:..."}
Content = str | list[dict]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def content_text(content: Content | None) -> str:
    """Return the textual portion of a Version's content."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return " ".join(p.get("text", "") for p in content if p.get("type") == "text")


@dataclass
class Version:
    id: str
    content: Content = ""
    created_at: str = field(default_factory=_now)
    next_message_id: str | None = None
    next_message_version_id: str | None = None
    is_incomplete: bool = False
    incomplete_artifact_id: str | None = None
    reasoning: str | None = None
    reasoning_duration_ms: int | None = None
    tool_trace: list[dict] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "content": self.content,
            "createdAt": self.created_at,
            "nextMessageId": self.next_message_id,
            "nextMessageVersionId": self.next_message_version_id,
            "isIncomplete": self.is_incomplete,
            "incompleteArtifactId": self.incomplete_artifact_id,
        }
        if self.reasoning is not None:
            data["reasoning"] = self.reasoning
            data["reasoningDurationMs"] = self.reasoning_duration_ms
        if self.tool_trace:
            data["toolTrace"] = [dict(t) for t in self.tool_trace]
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Version":
        # Snapshots written before continuation support lack the incompleteness fields
        return cls(
            id=data.get("id") or new_id("ver"),
            content=data.get("content") if data.get("content") is not None else "",
            created_at=data.get("createdAt") or _now(),
            next_message_id=data.get("nextMessageId"),
            next_message_version_id=data.get("nextMessageVersionId"),
            is_incomplete=bool(data.get("isIncomplete", False)),
            incomplete_artifact_id=data.get("incompleteArtifactId"),
            reasoning=data.get("reasoning"),
            reasoning_duration_ms=data.get("reasoningDurationMs"),
            tool_trace=list(data.get("toolTrace") or []),
            error=data.get("error"),
        )


@dataclass
class Message:
    id: str
    role: str
    versions: list[Version]
    active_version_id: str

    @classmethod
    def create(
        cls,
        role: str,
        content: Content = "",
        images: list[str] | None = None,
        attachments: list[dict] | None = None,
    ) -> "Message":
        """Build a Message holding one initial Version.

        Images and attachments turn string content into a parts list with the
        text part first.
        """
        if (images or attachments) and isinstance(content, str):
            parts: list[dict] = [{"type": "text", "text": content}]
            parts.extend({"type": "image", "imageUrl": url} for url in images or [])
            parts.extend({"type": "attachment", **a} for a in attachments or [])
            content = parts
        version = Version(id=new_id("ver"), content=content)
        return cls(id=new_id("msg"), role=role, versions=[version], active_version_id=version.id)

    @property
    def active_version(self) -> Version | None:
        return self.find_version(self.active_version_id)

    def find_version(self, version_id: str | None) -> Version | None:
        for version in self.versions:
            if version.id == version_id:
                return version
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "versions": [v.to_dict() for v in self.versions],
            "activeVersionId": self.active_version_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        versions = [Version.from_dict(v) for v in data.get("versions") or []]
        if not versions:
            versions = [Version(id=new_id("ver"))]
        active_id = data.get("activeVersionId")
        if not any(v.id == active_id for v in versions):
            active_id = versions[-1].id
        return cls(
            id=data["id"],
            role=data.get("role", "user"),
            versions=versions,
            active_version_id=active_id,
        )


@dataclass
class Conversation:
    id: str
    title: str = DEFAULT_TITLE
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    first_message_id: str | None = None
    messages: dict[str, Message] = field(default_factory=dict)

    @classmethod
    def create(cls, title: str = DEFAULT_TITLE, conversation_id: str | None = None) -> "Conversation":
        return cls(id=conversation_id or new_id("conv"), title=title)

    def touch(self) -> None:
        now = _now()
        # keep updatedAt monotonic even if the wall clock steps back
        if now > self.updated_at:
            self.updated_at = now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "firstMessageId": self.first_message_id,
            "messages": {mid: m.to_dict() for mid, m in self.messages.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        messages = {}
        for raw in (data.get("messages") or {}).values():
            if raw.get("id"):
                message = Message.from_dict(raw)
                messages[message.id] = message
        first = data.get("firstMessageId")
        if first not in messages:
            first = None
        now = _now()
        return cls(
            id=data.get("id") or new_id("conv"),
            title=data.get("title") or DEFAULT_TITLE,
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
            first_message_id=first,
            messages=messages,
        )
