"""HTTP adapters that open a chat stream against each provider.

An adapter returns a ``ProviderResponse`` whose ``body`` yields the raw SSE
lines of the provider's native dialect; normalization happens elsewhere.
"""

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from ..config import PROVIDER_TIMEOUT_SECS, ChatSettings

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/responses"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GOOGLE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

ANTHROPIC_THINKING_MODELS = (
    "claude-opus-4-20250514",
    "claude-sonnet-4-20250514",
    "claude-3-7-sonnet-20250219",
)
THINKING_BUDGET_TOKENS = 16000
ANTHROPIC_DEFAULT_MAX_TOKENS = 8192


class ProviderError(Exception):
    """Terminal failure talking to a provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ChatOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = True


@dataclass
class ProviderResponse:
    provider: str
    body: AsyncIterator[str] | None = None
    content: str | None = None
    response: httpx.Response | None = None

    async def aclose(self) -> None:
        if self.response is not None:
            await self.response.aclose()


def split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    """Pull the system message out of a formatted message list."""
    system = ""
    rest = []
    for message in messages:
        if message.get("role") == "system":
            content = message.get("content")
            if content is None and message.get("parts"):
                content = message["parts"][0].get("text", "")
            system = content if isinstance(content, str) else ""
        else:
            rest.append(message)
    return system, rest


def _error_message(body: bytes, status_code: int) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str):
            return error
        if data.get("message"):
            return data["message"]
    return f"HTTP error! status: {status_code}"


class ProviderAdapter:
    provider = ""
    requires_api_key = True

    def __init__(
        self,
        api_key: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = PROVIDER_TIMEOUT_SECS,
    ) -> None:
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=None))

    def build_request(self, messages: list[dict], model: str, options: ChatOptions) -> httpx.Request:
        raise NotImplementedError

    def parse_content(self, data: dict) -> str:
        raise NotImplementedError

    async def chat(
        self, messages: list[dict], model: str, options: ChatOptions | None = None
    ) -> ProviderResponse:
        options = options or ChatOptions()
        if self.requires_api_key and not self._api_key:
            raise ProviderError(f"API key is not set for {self.provider}")

        request = self.build_request(messages, model, options)
        logger.info(
            "POST %s%s model=%s stream=%s", request.url.host, request.url.path, model, options.stream
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider} request failed: {e}") from e

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise ProviderError(_error_message(body, response.status_code), response.status_code)

        if options.stream:
            return ProviderResponse(self.provider, body=response.aiter_lines(), response=response)

        try:
            await response.aread()
            data = response.json()
        finally:
            await response.aclose()
        return ProviderResponse(self.provider, content=self.parse_content(data))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAIAdapter(ProviderAdapter):
    provider = "openai"

    @staticmethod
    def is_reasoning_model(model: str) -> bool:
        return model.lower().startswith("o")

    def build_request(self, messages, model, options):
        instructions, rest = split_system(messages)
        payload: dict = {
            "model": model,
            "input": rest,
            "instructions": instructions,
            "stream": options.stream,
            "store": False,
        }
        if self.is_reasoning_model(model):
            payload["reasoning"] = {"effort": "high", "summary": "auto"}
        else:
            payload["temperature"] = options.temperature if options.temperature is not None else 0.7
            if options.max_tokens:
                payload["max_output_tokens"] = options.max_tokens
        return self._client.build_request(
            "POST",
            OPENAI_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json=payload,
        )

    def parse_content(self, data):
        for item in data.get("output") or []:
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    return part.get("text", "")
        return data.get("output_text") or ""


class AnthropicAdapter(ProviderAdapter):
    provider = "anthropic"

    @staticmethod
    def is_thinking_model(model: str) -> bool:
        return model in ANTHROPIC_THINKING_MODELS

    def build_request(self, messages, model, options):
        system, rest = split_system(messages)
        max_tokens = options.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS
        payload: dict = {
            "model": model,
            "messages": rest,
            "system": system,
            "max_tokens": max_tokens,
            "stream": options.stream,
        }
        if self.is_thinking_model(model):
            # thinking requires temperature 1 and a budget below max_tokens
            payload["temperature"] = 1
            payload["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
            payload["max_tokens"] = max(max_tokens, THINKING_BUDGET_TOKENS + ANTHROPIC_DEFAULT_MAX_TOKENS)
        else:
            payload["temperature"] = options.temperature if options.temperature is not None else 0.7
        return self._client.build_request(
            "POST",
            ANTHROPIC_URL,
            headers={"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_VERSION},
            json=payload,
        )

    def parse_content(self, data):
        for block in data.get("content") or []:
            if block.get("type") == "text":
                return block.get("text", "")
        return ""


class GoogleAdapter(ProviderAdapter):
    provider = "google"

    def build_request(self, messages, model, options):
        system, contents = split_system(messages)
        payload: dict = {
            "contents": [m for m in contents if m.get("role") in ("user", "model")],
            "generationConfig": {
                "temperature": options.temperature if options.temperature is not None else 0.7,
            },
        }
        if options.max_tokens:
            payload["generationConfig"]["maxOutputTokens"] = options.max_tokens
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if options.stream:
            url = f"{GOOGLE_URL}/{model}:streamGenerateContent"
            params = {"alt": "sse"}
        else:
            url = f"{GOOGLE_URL}/{model}:generateContent"
            params = {}
        return self._client.build_request(
            "POST", url, params=params, headers={"x-goog-api-key": self._api_key}, json=payload
        )

    def parse_content(self, data):
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if not p.get("thought"))


class LocalAdapter(ProviderAdapter):
    """Any OpenAI-compatible ``/v1/chat/completions`` server."""

    provider = "local"
    requires_api_key = False

    def __init__(self, base_url: str, api_key: str = "", **kwargs) -> None:
        super().__init__(api_key=api_key, **kwargs)
        self._base_url = base_url.rstrip("/")

    def build_request(self, messages, model, options):
        payload: dict = {"model": model, "messages": messages, "stream": options.stream}
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens:
            payload["max_tokens"] = options.max_tokens
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        return self._client.build_request(
            "POST", f"{self._base_url}/v1/chat/completions", headers=headers, json=payload
        )

    def parse_content(self, data):
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""


def create_adapter(
    provider: str, settings: ChatSettings, client: httpx.AsyncClient | None = None
) -> ProviderAdapter:
    api_key = settings.api_keys.get(provider, "")
    if provider == "openai":
        return OpenAIAdapter(api_key, client=client)
    if provider == "anthropic":
        return AnthropicAdapter(api_key, client=client)
    if provider == "google":
        return GoogleAdapter(api_key, client=client)
    if provider == "local":
        return LocalAdapter(settings.local_base_url, api_key, client=client)
    raise ProviderError(f"Unsupported provider: {provider}")


def build_adapters(
    settings: ChatSettings, client: httpx.AsyncClient | None = None
) -> dict[str, ProviderAdapter]:
    return {p: create_adapter(p, settings, client) for p in ("openai", "anthropic", "google", "local")}
