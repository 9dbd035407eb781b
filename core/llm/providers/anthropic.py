"""Anthropic Messages API provider."""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from core.contracts.errors import ConfigError, OracleError

from ..client_base import CompletionResult, LLMClient, post_json

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-3-5-sonnet-latest"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT_SECONDS = 60
API_VERSION = "2023-06-01"


class AnthropicClient(LLMClient):
    """Anthropic client using the Messages API."""

    provider = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ConfigError("ANTHROPIC_API_KEY is required for Anthropic provider.")
        self.base_url = base_url or os.getenv("ANTHROPIC_BASE_URL") or DEFAULT_BASE_URL
        self.model = model or DEFAULT_MODEL
        self.timeout_seconds = timeout_seconds

    def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        # Messages API 的 system 提示是顶层字段
        system_parts = [m.get("content", "") for m in messages if m.get("role") == "system"]
        chat = [
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in messages
            if m.get("role") != "system"
        ]

        payload = {
            "model": model or self.model,
            "max_tokens": int(max_tokens or DEFAULT_MAX_TOKENS),
            "messages": chat,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            payload["temperature"] = float(temperature)

        response_json = post_json(
            "Anthropic",
            f"{self.base_url.rstrip('/')}/v1/messages",
            payload,
            {"x-api-key": self.api_key, "anthropic-version": API_VERSION},
            timeout or self.timeout_seconds,
        )

        content = response_json.get("content") if isinstance(response_json, dict) else None
        if not isinstance(content, list):
            raise OracleError("Anthropic response missing content blocks.")
        text = "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )

        return CompletionResult(
            message=text,
            finish_reason=response_json.get("stop_reason"),
            model=response_json.get("model"),
        )
