"""Secrets management."""
import os
from typing import Optional

# 各 provider 的 API key 环境变量
PROVIDER_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


class SecretsManager:
    """从环境变量读取密钥；.env 由入口处的 python-dotenv 预先加载。"""

    @staticmethod
    def get_secret(key: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(key, default)

    @classmethod
    def api_key_for(cls, provider: str) -> Optional[str]:
        """返回 provider 对应的 API key，未知 provider 或未设置时为 None。"""
        var = PROVIDER_KEY_VARS.get(provider.lower())
        return cls.get_secret(var) if var else None
