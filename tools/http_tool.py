"""HTTP request tool."""
import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Dict

from core.contracts.errors import ERROR_CODE_TIMEOUT, ExecutionError
from core.contracts.tool import Tool

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
MAX_BODY_CHARS = 100_000


class HttpTool(Tool):
    """HTTP 请求工具（urllib）。"""

    tool_id = "http"
    name = "HTTP Request"
    description = "发送 HTTP 请求并返回状态码和响应体"

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    def execute(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """发送请求。

        非 2xx 响应同样返回结果（ok 为 False），只有网络层失败才抛出异常。

        Returns:
            {"status", "ok", "body", "headers"}

        Raises:
            ExecutionError: 无法连接、超时或 URL 非法
        """
        url = params.get("url")
        if not url:
            raise ValueError("url parameter is required")
        method = str(params.get("method") or "GET").upper()
        headers = dict(params.get("headers") or {})
        body = params.get("body")

        data = None
        if body is not None:
            if isinstance(body, (dict, list)):
                data = json.dumps(body).encode("utf-8")
                headers.setdefault("Content-Type", "application/json")
            else:
                data = str(body).encode("utf-8")

        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("HTTP %s %s", method, url)

        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                return self._result(response.status, response.read(), response.headers)
        except urllib.error.HTTPError as exc:
            return self._result(exc.code, exc.read(), exc.headers)
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise ExecutionError(f"HTTP {method} {url} timed out", code=ERROR_CODE_TIMEOUT) from exc
            raise ExecutionError(f"HTTP {method} {url} failed: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ExecutionError(f"HTTP {method} {url} timed out", code=ERROR_CODE_TIMEOUT) from exc
        except ValueError as exc:
            raise ExecutionError(f"Invalid HTTP request: {exc}") from exc

    @staticmethod
    def _result(status: int, raw: bytes, headers) -> Dict[str, Any]:
        text = (raw or b"").decode("utf-8", errors="replace")
        return {
            "status": status,
            "ok": 200 <= status < 300,
            "body": text[:MAX_BODY_CHARS],
            "headers": dict(headers.items()) if headers is not None else {},
        }
