"""Base LLM client interface."""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.contracts.errors import OracleError


@dataclass(frozen=True)
class CompletionResult:
    """一次补全调用的结果。"""

    message: str
    finish_reason: Optional[str] = None
    model: Optional[str] = None


class LLMClient(ABC):
    """Abstract LLM client."""

    provider = "abstract"

    @abstractmethod
    def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        """Return the completion text for a chat-style message list.

        Args:
            messages: 消息列表，格式为 [{"role": "system|user|assistant", "content": "..."}]
            model: 模型名称（None 使用客户端默认值）
            max_tokens: 最大输出 token 数
            temperature: 采样温度
            timeout: 请求超时时间（秒）

        Returns:
            CompletionResult

        Raises:
            OracleError: 传输失败、超时、鉴权失败或响应格式不正确
        """
        raise NotImplementedError


def post_json(
    provider: str,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
) -> Dict[str, Any]:
    """发送 JSON POST 请求并解析 JSON 响应，所有失败都转换为 OracleError。"""
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )

    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            response_text = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        raise OracleError(f"{provider} request failed with status {exc.code}. {detail}".strip()) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise OracleError(f"{provider} request timed out after {timeout}s.") from exc
        raise OracleError(f"{provider} request failed to reach server: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise OracleError(f"{provider} request timed out after {timeout}s.") from exc

    try:
        return json.loads(response_text)
    except json.JSONDecodeError as exc:
        raise OracleError(f"{provider} response is not valid JSON.") from exc
