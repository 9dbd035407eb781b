"""Parsing of ``File path:`` blocks in LLM replies.

The oracle supplies complete file contents as::

    File path: src/app.py
    ```python
    ...
    ```
"""

from __future__ import annotations

import re
from typing import List, Tuple

from core.contracts.task import FileContent

_FILE_BLOCK = re.compile(
    r"^[ \t]*\**File path:\**[ \t]*`?([^\s`]+)`?[ \t]*\n"
    r"```[^\n]*\n"
    r"(.*?)"
    r"^```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


def split_file_blocks(text: str) -> Tuple[List[FileContent], str]:
    """拆分文件块。

    Args:
        text: oracle 原始回复

    Returns:
        (文件列表, 去掉文件块后的剩余文本)；文件内容原样保留
    """
    files: List[FileContent] = []
    for match in _FILE_BLOCK.finditer(text):
        path = match.group(1).strip()
        if path:
            files.append(FileContent(path=path, content=match.group(2)))
    remainder = _FILE_BLOCK.sub("", text)
    return files, remainder
