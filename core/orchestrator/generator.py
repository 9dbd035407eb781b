"""Action generator: the oracle adapter.

Renders the task (with its whole attempt history) into a prompt, asks the
completion client for the next action and parses the reply into a typed
Action plus any complete file contents.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from core.contracts.errors import EngineError, InvalidOracleResponse
from core.contracts.task import Action, ActionError, FileContent, TaskNode
from core.llm.client_base import CompletionResult, LLMClient
from core.llm.file_blocks import split_file_blocks
from core.llm.json_utils import extract_json_block
from core.platform.config import Config
from core.prompts.loader import PromptLoader

logger = logging.getLogger(__name__)

PROMPT_NEXT_ACTION = "generator/next_action.md"
PROMPT_AFTER_FAILURE = "generator/after_failure.md"
PROMPT_CONTINUATION = "generator/continuation.md"


@dataclass(frozen=True)
class GeneratedAction:
    """oracle 给出的下一个动作，以及随附的完整文件内容。"""

    action: Action
    files: List[FileContent] = field(default_factory=list)


@dataclass(frozen=True)
class Continuation:
    """后续步骤摘要与目标是否已达成。"""

    summary: str
    goal_satisfied: bool = True


def parse_action_response(text: str) -> GeneratedAction:
    """解析 oracle 的动作回复。

    先取出 File path 文件块，再在剩余文本中找第一个 JSON 对象。

    Raises:
        InvalidOracleResponse: 没有 JSON、JSON 中没有 action 或动作类型未知
    """
    files, remainder = split_file_blocks(text)
    try:
        payload = extract_json_block(remainder)
    except ValueError as e:
        raise InvalidOracleResponse(f"No JSON block found in response: {e}", raw_text=text) from e

    action_data = payload.get("action")
    if not isinstance(action_data, dict):
        raise InvalidOracleResponse("Invalid LLM response - missing action in JSON block", raw_text=text)

    try:
        action = Action.from_dict(action_data)
    except ValueError as e:
        raise InvalidOracleResponse(f"Invalid action in LLM response: {e}", raw_text=text) from e

    return GeneratedAction(action=action, files=files)


def parse_continuation(text: str) -> Continuation:
    """解析 continuation 回复（缺少 goalSatisfied 时视为已达成）。

    Raises:
        InvalidOracleResponse: 没有 JSON 或缺少 continuationSummary
    """
    _, remainder = split_file_blocks(text)
    try:
        payload = extract_json_block(remainder)
    except ValueError as e:
        raise InvalidOracleResponse(f"No JSON block found in response: {e}", raw_text=text) from e

    summary = payload.get("continuationSummary")
    if not isinstance(summary, str) or not summary.strip():
        raise InvalidOracleResponse(
            "Invalid LLM response - missing continuationSummary in JSON block", raw_text=text
        )
    return Continuation(summary=summary.strip(), goal_satisfied=_as_bool(payload.get("goalSatisfied", True)))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "no", "0", "")
    return bool(value)


class ActionGenerator:
    """动作生成器（oracle 适配器）。"""

    def __init__(
        self,
        client: LLMClient,
        system_context: str = "",
        loader: Optional[PromptLoader] = None,
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature_execution: float = 0.5,
        temperature_error: float = 0.3,
        timeout_seconds: float = 60,
    ):
        """初始化动作生成器。

        Args:
            client: 补全客户端
            system_context: 环境说明（放入每个 prompt）
            loader: prompt 加载器
            model: 模型名称
            max_tokens: 最大输出 token 数
            temperature_execution: 正常推进时的温度
            temperature_error: 失败分析时的温度
            timeout_seconds: 每次调用的超时时间
        """
        self.client = client
        self.system_context = system_context
        self.loader = loader or PromptLoader()
        self.model = model
        self.max_tokens = max_tokens
        self.temperature_execution = temperature_execution
        self.temperature_error = temperature_error
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: Config, client: LLMClient, system_context: str = "") -> "ActionGenerator":
        return cls(
            client=client,
            system_context=system_context,
            model=config.get("llm.model"),
            max_tokens=int(config.get("llm.max_tokens", 4096)),
            temperature_execution=float(config.get("llm.temperature.execution", 0.5)),
            temperature_error=float(config.get("llm.temperature.error", 0.3)),
            timeout_seconds=float(config.get("llm.timeout_seconds", 60)),
        )

    def next_action(self, task: TaskNode) -> GeneratedAction:
        """为任务生成下一个动作。

        Raises:
            OracleError: 调用失败或超时
            InvalidOracleResponse: 回复无法解析
        """
        text = self._call(
            PROMPT_NEXT_ACTION,
            {"task_json": _task_json(task)},
            self.temperature_execution,
        )
        generated = parse_action_response(text)
        logger.debug("Oracle proposed %s action for task %s", generated.action.type, task.task_id)
        return generated

    def next_action_after_failure(
        self, task: TaskNode, error: Union[ActionError, EngineError, Dict[str, Any]]
    ) -> GeneratedAction:
        """在失败之后生成下一个动作（prompt 中包含错误详情）。"""
        text = self._call(
            PROMPT_AFTER_FAILURE,
            {"task_json": _task_json(task), "error_json": _error_json(error)},
            self.temperature_error,
        )
        generated = parse_action_response(text)
        logger.debug("Oracle proposed %s action after failure for task %s", generated.action.type, task.task_id)
        return generated

    def summarize(self, task: TaskNode) -> Continuation:
        """生成后续步骤摘要并判断目标是否达成。"""
        text = self._call(
            PROMPT_CONTINUATION,
            {"task_json": _task_json(task)},
            self.temperature_execution,
        )
        return parse_continuation(text)

    def continuation_summary(self, task: TaskNode) -> str:
        """只返回后续步骤摘要。"""
        return self.summarize(task).summary

    def complete(self, messages: List[Dict[str, Any]], options: Optional[Dict[str, Any]] = None) -> CompletionResult:
        """直接转发补全请求（llm_call 动作使用）。"""
        options = options or {}
        return self.client.complete(
            messages,
            model=options.get("model") or self.model,
            max_tokens=options.get("max_tokens") or options.get("maxTokens") or self.max_tokens,
            temperature=options.get("temperature"),
            timeout=options.get("timeout_seconds") or self.timeout_seconds,
        )

    def _call(self, prompt_id: str, vars: Dict[str, str], temperature: float) -> str:
        messages = self.loader.render_messages(
            prompt_id, {"system_context": self.system_context, **vars}
        )
        result = self.client.complete(
            messages,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=temperature,
            timeout=self.timeout_seconds,
        )
        return result.message


def _task_json(task: TaskNode) -> str:
    return json.dumps({"currentTask": task.to_dict()}, indent=2, ensure_ascii=False, default=str)


def _error_json(error: Union[ActionError, EngineError, Dict[str, Any]]) -> str:
    if isinstance(error, ActionError):
        data = error.to_dict()
    elif isinstance(error, Exception):
        data = ActionError.from_exception(error).to_dict()
    else:
        data = dict(error)
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)
