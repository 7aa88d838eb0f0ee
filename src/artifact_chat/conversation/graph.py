"""Branching message graph with per-message versions and an active chain.

Only forward edges are stored: each Version may point at the next Message
and the specific Version of it that follows on the active chain. Predecessors
are found by walking from ``first_message_id``.
"""

import logging
from dataclasses import dataclass

from ..ids import new_id
from .models import DEFAULT_TITLE, Content, Conversation, Message, Version, content_text

logger = logging.getLogger(__name__)

CONTINUE_COMMAND = "continue"
TITLE_MAX_LENGTH = 35


@dataclass(frozen=True)
class ChainEntry:
    message_id: str
    version_id: str
    role: str
    content: Content
    created_at: str


def generate_title(chain: list[ChainEntry]) -> str:
    """Title from the first user message on the chain, truncated with an ellipsis."""
    first_user = next((e for e in chain if e.role == "user"), None)
    if first_user is None:
        return DEFAULT_TITLE
    text = content_text(first_user.content).strip()
    if not text:
        return DEFAULT_TITLE
    title = text[:TITLE_MAX_LENGTH]
    return f"{title}..." if len(title) < len(text) else title


class ConversationGraph:
    """In-memory owner of all conversations and their message trees.

    Operations against unknown ids are no-ops that log a warning and return
    ``None`` or ``False``.
    """

    def __init__(self, artifacts=None) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._artifacts = artifacts

    # --- Conversations ---

    def create_conversation(
        self, title: str = DEFAULT_TITLE, conversation_id: str | None = None
    ) -> Conversation:
        if conversation_id and conversation_id in self._conversations:
            conversation_id = None
        conversation = Conversation.create(title=title, conversation_id=conversation_id)
        self._conversations[conversation.id] = conversation
        logger.info("Created conversation %s", conversation.id)
        return conversation

    def add_conversation(self, conversation: Conversation) -> Conversation:
        """Register a loaded or imported conversation, re-keying it if the id is taken."""
        if conversation.id in self._conversations:
            old_id = conversation.id
            conversation.id = new_id("conv")
            logger.info("Conversation id %s in use; stored as %s", old_id, conversation.id)
        self._conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def list_conversations(self) -> list[Conversation]:
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        conversation = self._require(conversation_id, "rename_conversation")
        if conversation is None:
            return False
        conversation.title = title.strip() or DEFAULT_TITLE
        conversation.touch()
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            logger.warning("delete_conversation: conversation %s not found", conversation_id)
            return False
        if self._artifacts is not None:
            self._artifacts.remove_conversation(conversation_id)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    def clear_all(self) -> list[str]:
        removed = list(self._conversations)
        for conversation_id in removed:
            self.delete_conversation(conversation_id)
        return removed

    # --- Message nodes ---

    def add_message_node(
        self, conversation_id: str, message: Message, auto_title: bool = False
    ) -> Message | None:
        """Append ``message`` after the current active tail."""
        conversation = self._require(conversation_id, "add_message_node")
        if conversation is None:
            return None

        tail = self.find_tail(conversation_id)
        conversation.messages[message.id] = message
        if tail is None:
            conversation.first_message_id = message.id
        else:
            tail_version = conversation.messages[tail[0]].find_version(tail[1])
            tail_version.next_message_id = message.id
            tail_version.next_message_version_id = message.active_version_id

        if (
            auto_title
            and tail is None
            and message.role == "user"
            and conversation.title == DEFAULT_TITLE
        ):
            conversation.title = generate_title(self.active_chain(conversation_id))

        conversation.touch()
        return message

    def append_version(self, conversation_id: str, message_id: str) -> Version | None:
        """Add an empty Version to a Message, make it active and retarget its predecessor."""
        conversation, message = self._require_message(conversation_id, message_id, "append_version")
        if message is None:
            return None
        predecessor = self.find_predecessor(conversation_id, message_id)

        version = Version(id=new_id("ver"))
        message.versions.append(version)
        message.active_version_id = version.id
        if predecessor is not None:
            pred_version = conversation.messages[predecessor[0]].find_version(predecessor[1])
            pred_version.next_message_version_id = version.id
        conversation.touch()
        return version

    def get_version(self, conversation_id: str, message_id: str, version_id: str) -> Version | None:
        conversation = self._conversations.get(conversation_id)
        message = conversation.messages.get(message_id) if conversation else None
        return message.find_version(version_id) if message else None

    def update_version_content(
        self, conversation_id: str, message_id: str, version_id: str, content: Content
    ) -> bool:
        version = self._require_version(conversation_id, message_id, version_id, "update_version_content")
        if version is None:
            return False
        version.content = content
        return True

    def append_version_text(
        self, conversation_id: str, message_id: str, version_id: str, text: str
    ) -> bool:
        """Append to the textual content, extending the text part of a parts list."""
        version = self._require_version(conversation_id, message_id, version_id, "append_version_text")
        if version is None:
            return False
        if isinstance(version.content, str):
            version.content += text
            return True
        for part in version.content:
            if part.get("type") == "text":
                part["text"] = part.get("text", "") + text
                return True
        version.content.insert(0, {"type": "text", "text": text})
        return True

    def finalize_version(
        self,
        conversation_id: str,
        message_id: str,
        version_id: str,
        is_incomplete: bool,
        incomplete_artifact_id: str | None = None,
    ) -> bool:
        version = self._require_version(conversation_id, message_id, version_id, "finalize_version")
        if version is None:
            return False
        version.is_incomplete = bool(is_incomplete)
        version.incomplete_artifact_id = incomplete_artifact_id if is_incomplete else None
        self._conversations[conversation_id].touch()
        return True

    def delete_branch(self, conversation_id: str, message_id: str) -> bool:
        """Remove a Message and cut the active chain just before it.

        Messages after it on the branch stay in the map but become unreachable.
        """
        conversation, message = self._require_message(conversation_id, message_id, "delete_branch")
        if message is None:
            return False
        predecessor = self.find_predecessor(conversation_id, message_id)
        del conversation.messages[message_id]

        if predecessor is not None:
            pred_version = conversation.messages[predecessor[0]].find_version(predecessor[1])
            pred_version.next_message_id = None
            pred_version.next_message_version_id = None
        elif conversation.first_message_id == message_id:
            conversation.first_message_id = None
        conversation.touch()
        return True

    def switch_active_version(
        self, conversation_id: str, message_id: str, version_id: str
    ) -> bool:
        conversation, message = self._require_message(
            conversation_id, message_id, "switch_active_version"
        )
        if message is None:
            return False
        if message.find_version(version_id) is None:
            logger.warning(
                "switch_active_version: version %s not in message %s", version_id, message_id
            )
            return False
        if message.active_version_id == version_id:
            return True

        predecessor = self.find_predecessor(conversation_id, message_id)
        if predecessor is not None:
            pred_version = conversation.messages[predecessor[0]].find_version(predecessor[1])
            pred_version.next_message_version_id = version_id
        message.active_version_id = version_id
        conversation.touch()
        return True

    # --- Traversal ---

    def _walk(self, conversation: Conversation):
        """Yield ``(message, version)`` pairs along the active chain."""
        visited: set[str] = set()
        message_id = conversation.first_message_id
        while message_id:
            if message_id in visited:
                logger.warning("Cycle at message %s in conversation %s", message_id, conversation.id)
                return
            message = conversation.messages.get(message_id)
            if message is None:
                return
            version = message.active_version
            if version is None:
                logger.warning("Message %s has no active version", message_id)
                return
            visited.add(message_id)
            yield message, version
            message_id = version.next_message_id

    def active_chain(
        self, conversation_id: str, end_message_id: str | None = None
    ) -> list[ChainEntry]:
        """Return the active chain, stopping after ``end_message_id`` when given."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        chain = []
        for message, version in self._walk(conversation):
            chain.append(
                ChainEntry(message.id, version.id, message.role, version.content, version.created_at)
            )
            if message.id == end_message_id:
                break
        return chain

    def find_tail(self, conversation_id: str) -> tuple[str, str] | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        tail = None
        for message, version in self._walk(conversation):
            tail = (message.id, version.id)
        return tail

    def find_predecessor(self, conversation_id: str, message_id: str) -> tuple[str, str] | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.first_message_id == message_id:
            return None
        for message, version in self._walk(conversation):
            if version.next_message_id == message_id:
                return message.id, version.id
        return None

    def find_continuation(
        self, conversation_id: str, user_message_id: str
    ) -> tuple[str, str, str] | None:
        """Detect a "continue" request for an artifact left open by the previous reply.

        Returns ``(assistant_message_id, version_id, artifact_id)`` when the user
        message reads "continue" and the assistant Version before it stopped
        mid-artifact.
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        user_message = conversation.messages.get(user_message_id)
        if user_message is None or user_message.role != "user":
            return None
        user_version = user_message.active_version
        if user_version is None:
            return None
        if content_text(user_version.content).strip().lower() != CONTINUE_COMMAND:
            return None

        predecessor = self.find_predecessor(conversation_id, user_message_id)
        if predecessor is None:
            return None
        assistant = conversation.messages[predecessor[0]]
        version = assistant.find_version(predecessor[1])
        if assistant.role != "assistant" or not version.is_incomplete:
            return None
        if not version.incomplete_artifact_id:
            return None
        return assistant.id, version.id, version.incomplete_artifact_id

    def is_continuation_reply(self, conversation_id: str, message_id: str) -> bool:
        """True when ``message_id`` answers a "continue" that resumes an open artifact."""
        predecessor = self.find_predecessor(conversation_id, message_id)
        if predecessor is None:
            return False
        return self.find_continuation(conversation_id, predecessor[0]) is not None

    # --- Lookup helpers ---

    def _require(self, conversation_id: str, op: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning("%s: conversation %s not found", op, conversation_id)
        return conversation

    def _require_message(
        self, conversation_id: str, message_id: str, op: str
    ) -> tuple[Conversation | None, Message | None]:
        conversation = self._require(conversation_id, op)
        if conversation is None:
            return None, None
        message = conversation.messages.get(message_id)
        if message is None:
            logger.warning("%s: message %s not found in %s", op, message_id, conversation_id)
        return conversation, message

    def _require_version(
        self, conversation_id: str, message_id: str, version_id: str, op: str
    ) -> Version | None:
        _, message = self._require_message(conversation_id, message_id, op)
        if message is None:
            return None
        version = message.find_version(version_id)
        if version is None:
            logger.warning("%s: version %s not found in message %s", op, version_id, message_id)
        return version
