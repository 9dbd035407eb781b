"""Shared fixtures: scripted completion client, temp store and workspace."""
import json
from typing import Any, Dict, List, Optional

import pytest

from core.contracts.errors import OracleError
from core.env.runtime import LocalEnvironment
from core.env.snapshot import SnapshotManager
from core.llm.client_base import CompletionResult, LLMClient
from core.orchestrator.backtrack import RetrySelector
from core.orchestrator.engine import Orchestrator
from core.orchestrator.executor import ActionExecutor
from core.orchestrator.generator import ActionGenerator
from core.platform.audit import AuditLogger
from core.store.task_store import TaskStore


class FakeLLMClient(LLMClient):
    """按顺序返回预设回复的补全客户端；预设项为异常时直接抛出。"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def complete(self, messages, model=None, max_tokens=None, temperature=None, timeout=None):
        self.calls.append(
            {
                "messages": messages,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "timeout": timeout,
            }
        )
        if not self.responses:
            raise OracleError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return CompletionResult(message=response, finish_reason="stop", model=model)

    @property
    def user_prompts(self) -> List[str]:
        return [m["content"] for call in self.calls for m in call["messages"] if m["role"] == "user"]


class Replies:
    """构造 oracle 回复文本。"""

    @staticmethod
    def action(action_type: str, params: Dict[str, Any], description: str = "step") -> str:
        payload = {"action": {"type": action_type, "description": description, "params": params}}
        return "Here is the next step.\n\n```json\n" + json.dumps(payload) + "\n```\n"

    def shell(self, command: str, description: str = "run command") -> str:
        return self.action("shell", {"command": command}, description)

    @staticmethod
    def continuation(summary: str, goal_satisfied: bool = True) -> str:
        payload = {"continuationSummary": summary, "goalSatisfied": goal_satisfied}
        return "```json\n" + json.dumps(payload) + "\n```"

    def done(self, summary: str = "Goal reached.") -> str:
        return self.continuation(summary, True)

    def not_done(self, summary: str = "More work needed.") -> str:
        return self.continuation(summary, False)


@pytest.fixture
def replies() -> Replies:
    return Replies()


@pytest.fixture
def store(tmp_path):
    task_store = TaskStore(tmp_path / "tof.sqlite")
    yield task_store
    task_store.close()


@pytest.fixture
def environment(tmp_path) -> LocalEnvironment:
    return LocalEnvironment(tmp_path / "workspace", snapshots_dir=tmp_path / "snapshots")


@pytest.fixture
def audit(tmp_path) -> AuditLogger:
    return AuditLogger(tmp_path / "logs" / "audit.log.jsonl")


@pytest.fixture
def make_orchestrator(store, environment, audit):
    """创建使用预设回复的引擎。

    返回 (orchestrator, client)。
    """

    def _make(
        responses: Optional[List[Any]] = None,
        snapshot_frequency: str = "action",
        max_attempts: int = 10,
        max_seconds: float = 1800,
        selector=None,
        clock=None,
    ):
        client = FakeLLMClient(responses)
        generator = ActionGenerator(client, system_context=environment.describe())
        executor = ActionExecutor(environment, generator=generator, default_timeout=10)
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        orchestrator = Orchestrator(
            store=store,
            generator=generator,
            executor=executor,
            snapshots=SnapshotManager(environment, store),
            selector=selector or RetrySelector(max_attempts=max_attempts),
            audit=audit,
            snapshot_frequency=snapshot_frequency,
            max_attempts=max_attempts,
            max_seconds=max_seconds,
            **kwargs,
        )
        return orchestrator, client

    return _make
