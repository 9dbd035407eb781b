"""JSON utilities for LLM outputs."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_FENCED_BLOCK = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)```", re.DOTALL)


def _extract_outer_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    if end == -1 or end <= start:
        return None
    return text[start : end + 1]


def _load_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def extract_json_block(text: str) -> Dict[str, Any]:
    """提取回复中第一个 JSON 对象。

    优先取第一个内容为 JSON 对象的 markdown 代码块，
    找不到时退回到最外层的 {...}。

    Raises:
        ValueError: 没有可解析的 JSON 对象
    """
    for match in _FENCED_BLOCK.finditer(text):
        body = match.group(1).strip()
        if not body.startswith("{"):
            continue
        value = _load_object(body)
        if value is not None:
            return value

    candidate = _extract_outer_object(text)
    if candidate:
        value = _load_object(candidate)
        if value is not None:
            return value

    raise ValueError(f"No JSON object found in response. First 200 chars: {text[:200]}")
