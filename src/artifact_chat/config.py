import os
from dataclasses import dataclass, field
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_DIR / "data")))
SQLITE_PATH = DATA_DIR / "conversations.db"

PORT = int(os.environ.get("PORT", "19877"))
ROOT_PATH = os.environ.get("ROOT_PATH", "")

DEFAULT_PROVIDER = os.environ.get("DEFAULT_PROVIDER", "openai")
DEFAULT_MODEL = os.environ.get("DEFAULT_MODEL", "chatgpt-4o-latest")
SYSTEM_PROMPT = os.environ.get("SYSTEM_PROMPT", "You are a helpful assistant.")
TEMPERATURE = float(os.environ.get("TEMPERATURE", "0.7"))
MAX_TOKENS = int(os.environ.get("MAX_TOKENS", "16384"))
AUTO_TITLE_CONVERSATIONS = os.environ.get("AUTO_TITLE_CONVERSATIONS", "1") not in ("0", "false")
ARTIFACT_METADATA_MERGE = os.environ.get("ARTIFACT_METADATA_MERGE", "merge")
CONTENT_BUFFER_THRESHOLD = int(os.environ.get("CONTENT_BUFFER_THRESHOLD", "32"))

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "")
LOCAL_BASE_URL = os.environ.get("LOCAL_BASE_URL", "http://localhost:11434")
LOCAL_API_KEY = os.environ.get("LOCAL_API_KEY", "")

PROVIDER_TIMEOUT_SECS = 60.0


@dataclass(frozen=True)
class ChatSettings:
    """Settings threaded into the turn orchestrator."""

    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    system_prompt: str = SYSTEM_PROMPT
    temperature: float = TEMPERATURE
    max_tokens: int = MAX_TOKENS
    auto_title: bool = AUTO_TITLE_CONVERSATIONS
    metadata_merge: str = ARTIFACT_METADATA_MERGE
    content_buffer_threshold: int = CONTENT_BUFFER_THRESHOLD
    api_keys: dict[str, str] = field(default_factory=dict)
    local_base_url: str = LOCAL_BASE_URL


def load_settings() -> ChatSettings:
    return ChatSettings(
        api_keys={
            "openai": OPENAI_API_KEY,
            "anthropic": ANTHROPIC_API_KEY,
            "google": GOOGLE_API_KEY,
            "local": LOCAL_API_KEY,
        },
    )
