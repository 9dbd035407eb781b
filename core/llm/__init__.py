"""Pluggable LLM layer with unified interfaces."""

from .client_base import CompletionResult, LLMClient
from .factory import build_llm_client
from .file_blocks import split_file_blocks
from .json_utils import extract_json_block

__all__ = [
    "CompletionResult",
    "LLMClient",
    "build_llm_client",
    "extract_json_block",
    "split_file_blocks",
]
