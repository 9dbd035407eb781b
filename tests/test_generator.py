"""Tests for oracle reply parsing and the action generator."""
import json

import pytest

from core.contracts.errors import InvalidOracleResponse, OracleError
from core.contracts.task import ActionError, FilesParams, ShellParams
from core.llm.file_blocks import split_file_blocks
from core.llm.json_utils import extract_json_block
from core.orchestrator.generator import ActionGenerator, parse_action_response, parse_continuation

from conftest import FakeLLMClient


class TestParseActionResponse:
    """测试动作回复解析。"""

    def test_fenced_json(self, replies):
        generated = parse_action_response(replies.shell("pip install x"))
        assert generated.action.type == "shell"
        assert generated.action.params == ShellParams(command="pip install x")
        assert generated.files == []

    def test_bare_json_object(self):
        """没有代码块时退回到最外层 JSON 对象。"""
        text = 'Sure: {"action": {"type": "http", "params": {"url": "http://example.com"}}} done'
        generated = parse_action_response(text)
        assert generated.action.type == "http"
        assert generated.action.params.method == "GET"

    def test_type_aliases_are_normalized(self, replies):
        text = replies.action("environment-op", {"command": "ls"})
        assert parse_action_response(text).action.type == "docker"
        text = replies.action("reasoning-call", {"messages": [{"role": "user", "content": "hi"}]})
        assert parse_action_response(text).action.type == "llm_call"

    def test_file_blocks_are_split_before_json(self):
        """文件块先被取出，文件内容里的 JSON 不会被当作动作。"""
        text = (
            "File path: config/settings.json\n"
            "```json\n"
            '{"debug": true}\n'
            "```\n\n"
            "```json\n"
            '{"action": {"type": "shell", "params": {"command": "cat config/settings.json"}}}\n'
            "```\n"
        )
        generated = parse_action_response(text)
        assert generated.action.params.command == "cat config/settings.json"
        assert len(generated.files) == 1
        assert generated.files[0].path == "config/settings.json"
        assert generated.files[0].content == '{"debug": true}\n'

    def test_files_action_params(self, replies):
        text = replies.action("files", {"files": [{"path": "a.txt", "content": "A"}]})
        action = parse_action_response(text).action
        assert isinstance(action.params, FilesParams)
        assert action.params.files[0].content == "A"
        assert action.is_state_mutating

    @pytest.mark.parametrize(
        "text",
        [
            "I am not sure what to do next.",
            '```json\n{"thought": "no action here"}\n```',
            '```json\n{"action": {"type": "teleport", "params": {}}}\n```',
            '```json\n{"action": {"type": "shell", "params": {}}}\n```',
        ],
    )
    def test_invalid_replies_raise(self, text):
        """没有 JSON、缺少 action、未知类型或参数不全都视为无效回复。"""
        with pytest.raises(InvalidOracleResponse) as excinfo:
            parse_action_response(text)
        assert excinfo.value.raw_text == text
        assert excinfo.value.code == "INVALID_ORACLE_RESPONSE"


class TestParseContinuation:
    """测试 continuation 解析。"""

    def test_goal_satisfied_defaults_to_true(self):
        result = parse_continuation('```json\n{"continuationSummary": "All done"}\n```')
        assert result.summary == "All done"
        assert result.goal_satisfied is True

    def test_goal_not_satisfied(self, replies):
        result = parse_continuation(replies.not_done("Run the tests next"))
        assert result.goal_satisfied is False

    def test_string_booleans(self):
        result = parse_continuation('{"continuationSummary": "x", "goalSatisfied": "false"}')
        assert result.goal_satisfied is False

    def test_missing_summary_raises(self):
        with pytest.raises(InvalidOracleResponse):
            parse_continuation('{"goalSatisfied": true}')


class TestJsonAndFileBlocks:
    """测试底层解析工具。"""

    def test_first_object_block_wins(self):
        text = '```\nnot json\n```\n```json\n{"a": 1}\n```\n```json\n{"a": 2}\n```'
        assert extract_json_block(text) == {"a": 1}

    def test_no_json_raises_value_error(self):
        with pytest.raises(ValueError):
            extract_json_block("nothing here")

    def test_remainder_excludes_file_blocks(self):
        files, remainder = split_file_blocks("File path: a.py\n```python\nprint(1)\n```\nrest")
        assert files[0].content == "print(1)\n"
        assert "print(1)" not in remainder
        assert "rest" in remainder


class TestActionGenerator:
    """测试生成器与补全客户端之间的交互。"""

    def test_next_action_sends_task_json(self, store, replies):
        client = FakeLLMClient([replies.shell("ls")])
        generator = ActionGenerator(client, system_context="Environment: test", temperature_execution=0.5)
        task = store.create("list files")

        generated = generator.next_action(task)

        assert generated.action.params.command == "ls"
        call = client.calls[0]
        assert call["temperature"] == 0.5
        assert call["messages"][0]["role"] == "system"
        assert "Environment: test" in call["messages"][0]["content"]
        prompt = client.user_prompts[0]
        assert '"currentTask"' in prompt
        assert "list files" in prompt

    def test_after_failure_includes_error(self, store, replies):
        client = FakeLLMClient([replies.shell("ls -la")])
        generator = ActionGenerator(client, temperature_error=0.3)
        task = store.create("list files")
        error = ActionError(code="EXECUTION_ERROR", message="ls: cannot access")

        generator.next_action_after_failure(task, error)

        assert client.calls[0]["temperature"] == 0.3
        assert "ls: cannot access" in client.user_prompts[0]

    def test_summarize(self, store, replies):
        client = FakeLLMClient([replies.done("Package installed")])
        generator = ActionGenerator(client)
        assert generator.continuation_summary(store.create("goal")) == "Package installed"

    def test_oracle_error_propagates(self, store):
        client = FakeLLMClient([OracleError("connection refused")])
        generator = ActionGenerator(client)
        with pytest.raises(OracleError):
            generator.next_action(store.create("goal"))

    def test_complete_forwards_options(self):
        client = FakeLLMClient(["pong"])
        generator = ActionGenerator(client, model="m1", max_tokens=100)
        result = generator.complete([{"role": "user", "content": "ping"}], {"temperature": 0.1})
        assert result.message == "pong"
        assert client.calls[0]["model"] == "m1"
        assert client.calls[0]["max_tokens"] == 100
        assert client.calls[0]["temperature"] == 0.1

    def test_task_json_is_valid_json(self, store, replies):
        """渲染进 prompt 的任务 JSON 可以被解析。"""
        client = FakeLLMClient([replies.shell("ls")])
        generator = ActionGenerator(client)
        generator.next_action(store.create('say "hi"'))
        prompt = client.user_prompts[0]
        block = prompt[prompt.index("```json") + len("```json"):]
        block = block[: block.index("```")]
        assert json.loads(block)["currentTask"]["description"] == 'say "hi"'
