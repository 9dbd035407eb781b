"""Backtrack selection.

After a recoverable failure the selector decides where exploration resumes:
retry from a snapshot, or give up on the node.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from core.contracts.errors import ERROR_CODE_CEILING_EXCEEDED, ConfigError
from core.contracts.task import ActionError, TaskNode
from core.platform.config import Config
from core.store.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Retry:
    """从快照（可能为 None，表示不恢复环境）继续尝试。"""

    from_snapshot_id: Optional[str]
    task_id: str


@dataclass(frozen=True)
class GiveUp:
    reason: str
    code: Optional[str] = None


Decision = Union[Retry, GiveUp]


def attempts_exhausted(used: int, max_attempts: Optional[int]) -> bool:
    """已用尝试数（含 oracle 失败）达到上限时，不再为节点请求新动作。"""
    return max_attempts is not None and used >= max_attempts


class BacktrackSelector(ABC):
    """回溯策略基类。"""

    @abstractmethod
    def select(self, node: TaskNode, error: ActionError) -> Decision:
        """根据失败的节点和错误决定下一步。"""


class RetrySelector(BacktrackSelector):
    """基线策略：可恢复错误从节点最近的快照重试，致命错误或超出上限时放弃。"""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts

    def select(self, node: TaskNode, error: ActionError) -> Decision:
        if error.is_fatal:
            return GiveUp(f"Fatal error {error.code}: {error.message}")
        if attempts_exhausted(len(node.attempts), self.max_attempts):
            return GiveUp(f"attempt ceiling of {self.max_attempts} reached", code=ERROR_CODE_CEILING_EXCEEDED)
        return Retry(from_snapshot_id=node.environment_snapshot_id, task_id=node.task_id)


class AncestorSelector(RetrySelector):
    """沿父任务链回溯的策略。

    同一节点连续 escalate_after 次可恢复失败后，向上寻找最近的
    非终态且带快照的祖先，从该祖先的快照重试；找不到时退化为基线策略。
    """

    def __init__(
        self,
        store: TaskStore,
        escalate_after: int = 3,
        max_attempts: Optional[int] = None,
        max_depth: int = 5,
    ):
        super().__init__(max_attempts=max_attempts)
        self.store = store
        self.escalate_after = max(1, int(escalate_after))
        self.max_depth = max_depth

    def select(self, node: TaskNode, error: ActionError) -> Decision:
        decision = super().select(node, error)
        if isinstance(decision, GiveUp):
            return decision
        if consecutive_failures(node) < self.escalate_after:
            return decision

        ancestor = self._find_ancestor(node)
        if ancestor is None:
            return decision
        logger.info(
            "Escalating task %s to ancestor %s after %d consecutive failures",
            node.task_id,
            ancestor.task_id,
            consecutive_failures(node),
        )
        return Retry(from_snapshot_id=ancestor.environment_snapshot_id, task_id=ancestor.task_id)

    def _find_ancestor(self, node: TaskNode) -> Optional[TaskNode]:
        parent_id = node.parent_id
        depth = 0
        while parent_id and depth < self.max_depth:
            ancestor = self.store.get(parent_id)
            if ancestor is None:
                return None
            if not ancestor.is_terminal and ancestor.environment_snapshot_id:
                return ancestor
            parent_id = ancestor.parent_id
            depth += 1
        return None


def consecutive_failures(node: TaskNode) -> int:
    """统计节点末尾连续失败的尝试数。"""
    count = 0
    for attempt in reversed(node.attempts):
        if attempt.succeeded:
            break
        count += 1
    return count


def build_selector(config: Config, store: TaskStore) -> BacktrackSelector:
    """根据 backtrack.policy 创建回溯策略。"""
    policy = config.get("backtrack.policy", "retry")
    max_attempts = int(config.get("task.max_attempts", 10))
    if policy == "retry":
        return RetrySelector(max_attempts=max_attempts)
    if policy == "ancestor":
        return AncestorSelector(
            store,
            escalate_after=int(config.get("backtrack.escalate_after", 3)),
            max_attempts=max_attempts,
            max_depth=int(config.get("task.max_depth", 5)),
        )
    raise ConfigError(f"Unknown backtrack.policy: {policy}")
