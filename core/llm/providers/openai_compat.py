"""OpenAI-compatible LLM provider."""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from core.contracts.errors import ConfigError, OracleError

from ..client_base import CompletionResult, LLMClient, post_json

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TIMEOUT_SECONDS = 60


def _get_env_value(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


class OpenAICompatibleClient(LLMClient):
    """OpenAI-compatible client using Chat Completions."""

    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key or _get_env_value("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigError("OPENAI_API_KEY is required for OpenAI provider.")
        self.base_url = base_url or _get_env_value("OPENAI_BASE_URL", DEFAULT_BASE_URL)
        self.model = model or _get_env_value("OPENAI_MODEL", DEFAULT_MODEL)
        self.timeout_seconds = timeout_seconds

    def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": m.get("role", "user"), "content": m.get("content", "")}
                for m in messages
            ],
        }
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)
        if temperature is not None:
            payload["temperature"] = float(temperature)

        response_json = post_json(
            "OpenAI-compatible",
            f"{self.base_url.rstrip('/')}/v1/chat/completions",
            payload,
            {"Authorization": f"Bearer {self.api_key}"},
            timeout or self.timeout_seconds,
        )

        try:
            choice = response_json["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleError("OpenAI-compatible response missing message content.") from exc

        if not isinstance(content, str):
            raise OracleError("OpenAI-compatible message content is not a string.")

        return CompletionResult(
            message=content,
            finish_reason=choice.get("finish_reason"),
            model=response_json.get("model"),
        )
