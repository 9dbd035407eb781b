"""Factory for pluggable LLM clients."""

from __future__ import annotations

import os
from typing import Optional

from core.contracts.errors import ConfigError
from core.platform.config import Config
from core.platform.secrets import SecretsManager

from .client_base import LLMClient
from .providers.anthropic import AnthropicClient
from .providers.openai_compat import OpenAICompatibleClient


def build_llm_client(config: Optional[Config] = None) -> LLMClient:
    """根据配置（llm.provider，或环境变量 LLM_PROVIDER）创建补全客户端。

    Raises:
        ConfigError: provider 未知或缺少 API key
    """
    if config is not None:
        provider = config.get("llm.provider", "anthropic")
        model = config.get("llm.model")
        timeout = float(config.get("llm.timeout_seconds", 60))
    else:
        provider = os.getenv("LLM_PROVIDER", "anthropic")
        model = None
        timeout = float(os.getenv("LLM_TIMEOUT_SECONDS") or 60)

    provider = str(provider).strip().lower()
    api_key = SecretsManager.api_key_for(provider)
    if provider == "anthropic":
        return AnthropicClient(api_key=api_key, model=model, timeout_seconds=timeout)
    if provider == "openai":
        return OpenAICompatibleClient(api_key=api_key, model=model, timeout_seconds=timeout)

    raise ConfigError(f"Unsupported LLM_PROVIDER: {provider}")
