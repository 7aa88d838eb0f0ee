import logging
import re

from ..agent.prompts import CONTINUATION_INSTRUCTION, build_system_content
from .graph import ChainEntry
from .models import Content, content_text

logger = logging.getLogger(__name__)

PLACEHOLDER_TEMPLATE = '<artifactrenderer id="{id}"></artifactrenderer>'
PLACEHOLDER_RE = re.compile(r'<artifactrenderer id="([^"]+)"></artifactrenderer>')
DATA_URI_RE = re.compile(r"^data:(.+?);base64,(.*)$", re.DOTALL)

_CONTEXT_ATTRS = ("type", "title", "language", "filename")


def artifact_placeholder(artifact_id: str) -> str:
    return PLACEHOLDER_TEMPLATE.format(id=artifact_id)


def referenced_artifact_ids(chain: list[ChainEntry]) -> list[str]:
    """Artifact ids named by placeholders on the chain, in first-seen order."""
    seen: dict[str, None] = {}
    for entry in chain:
        for artifact_id in PLACEHOLDER_RE.findall(content_text(entry.content)):
            seen.setdefault(artifact_id, None)
    return list(seen)


def build_artifact_context(
    artifacts, conversation_id: str, chain: list[ChainEntry], extra_ids: list[str] | None = None
) -> str:
    """Render the active version of every referenced artifact as ``<artifacts_context>``."""
    ids = referenced_artifact_ids(chain)
    for artifact_id in extra_ids or []:
        if artifact_id not in ids:
            ids.append(artifact_id)

    lines = []
    for artifact_id in ids:
        version = artifacts.get_active_version(conversation_id, artifact_id)
        if version is None:
            logger.warning("Referenced artifact %s not found", artifact_id)
            continue
        attrs = "".join(
            f' {name}="{version.metadata[name]}"' for name in _CONTEXT_ATTRS if version.metadata.get(name)
        )
        if not version.is_complete:
            attrs += ' status="incomplete"'
        lines.append(f'<artifact id="{artifact_id}"{attrs}>{version.content}</artifact>')

    if not lines:
        return ""
    return "<artifacts_context>\n" + "\n".join(lines) + "\n</artifacts_context>\n\n"


def _prefix_content(content: Content, prefix: str) -> Content:
    if not prefix:
        return content
    if isinstance(content, str):
        return prefix + content
    parts = [dict(p) for p in content]
    for part in parts:
        if part.get("type") == "text":
            part["text"] = prefix + part.get("text", "")
            return parts
    return [{"type": "text", "text": prefix}, *parts]


def parse_data_uri(uri: str) -> tuple[str, str]:
    match = DATA_URI_RE.match(uri or "")
    if not match:
        return "application/octet-stream", ""
    return match.group(1), match.group(2)


def _openai_part(part: dict) -> dict | None:
    kind = part.get("type")
    if kind == "text":
        return {"type": "input_text", "text": part.get("text", "")}
    if kind == "image" and part.get("imageUrl"):
        return {"type": "input_image", "image_url": part["imageUrl"]}
    if kind == "attachment":
        return {"type": "input_file", "filename": part.get("fileName"), "file_data": part.get("fileData")}
    return None


def _chat_completions_part(part: dict) -> dict | None:
    kind = part.get("type")
    if kind == "text":
        return {"type": "text", "text": part.get("text", "")}
    if kind == "image" and part.get("imageUrl"):
        return {"type": "image_url", "image_url": {"url": part["imageUrl"]}}
    return None


def _anthropic_part(part: dict) -> dict | None:
    kind = part.get("type")
    if kind == "text":
        return {"type": "text", "text": part.get("text", "")}
    if kind == "image" and part.get("imageUrl"):
        mime_type, data = parse_data_uri(part["imageUrl"])
        return {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}
    if kind == "attachment" and part.get("fileType") == "application/pdf":
        _, data = parse_data_uri(part.get("fileData", ""))
        return {
            "type": "document",
            "source": {"type": "base64", "media_type": "application/pdf", "data": data},
        }
    return None


def _google_part(part: dict) -> dict | None:
    kind = part.get("type")
    if kind == "text":
        return {"text": part.get("text", "")}
    if kind == "image" and part.get("imageUrl"):
        mime_type, data = parse_data_uri(part["imageUrl"])
        return {"inline_data": {"mime_type": mime_type, "data": data}}
    return None


def _format_openai(messages: list[dict], part_fn) -> list[dict]:
    formatted = []
    for message in messages:
        content = message["content"]
        if not isinstance(content, str):
            content = [p for p in map(part_fn, content) if p is not None] or ""
        formatted.append({"role": message["role"], "content": content})
    return formatted


def _format_anthropic(messages: list[dict]) -> list[dict]:
    formatted = []
    for message in messages:
        role, content = message["role"], message["content"]
        if not isinstance(content, str):
            if role == "user":
                content = [p for p in map(_anthropic_part, content) if p is not None] or ""
            else:
                # assistant turns must be plain text
                content = content_text(content)
        formatted.append({"role": role, "content": content})
    return formatted


def _format_google(messages: list[dict]) -> list[dict]:
    formatted = []
    for message in messages:
        role = "model" if message["role"] == "assistant" else message["role"]
        content = message["content"]
        if isinstance(content, str):
            parts = [{"text": content}]
        else:
            parts = [p for p in map(_google_part, content) if p is not None]
        if not parts:
            if role != "system":
                continue
            parts = [{"text": ""}]
        formatted.append({"role": role, "parts": parts})
    return formatted


def format_messages_for_provider(
    chain: list[ChainEntry],
    provider: str,
    system_prompt: str | None = None,
    artifact_context: str = "",
    continuation: bool = False,
) -> list[dict]:
    """Translate the active chain into the provider's message shape.

    The last entry of ``chain`` is the user message that triggers the turn;
    artifact context and the continuation instruction are prepended to it.
    The combined system message is always first.
    """
    messages: list[dict] = [{"role": "system", "content": build_system_content(system_prompt)}]
    messages.extend({"role": e.role, "content": e.content} for e in chain)

    prefix = artifact_context or ""
    if continuation:
        prefix += CONTINUATION_INSTRUCTION
    if prefix:
        last_user = next(
            (i for i in range(len(messages) - 1, 0, -1) if messages[i]["role"] == "user"), None
        )
        if last_user is None:
            logger.warning("No user message to carry artifact context")
        else:
            messages[last_user]["content"] = _prefix_content(messages[last_user]["content"], prefix)

    if provider == "openai":
        return _format_openai(messages, _openai_part)
    if provider == "anthropic":
        return _format_anthropic(messages)
    if provider == "google":
        return _format_google(messages)
    if provider == "local":
        return _format_openai(messages, _chat_completions_part)
    logger.warning("Unknown provider %s; returning basic format", provider)
    return messages
