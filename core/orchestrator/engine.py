"""Orchestrator: the task execution and backtracking loop.

One ``run`` drives one task node until it reaches a terminal status,
the attempt/time ceiling is hit, or the run is cancelled. Every state
change is persisted before the next oracle call, so an interrupted run
can be resumed from the store.
"""
import logging
import threading
import time
from dataclasses import asdict
from typing import Callable, Optional

from core.contracts.errors import (
    ERROR_CODE_CEILING_EXCEEDED,
    CeilingExceeded,
    InvalidOracleResponse,
    InvalidTransitionError,
    OracleError,
    RunCancelled,
    SnapshotError,
    TerminalTaskError,
)
from core.contracts.task import (
    TASK_STATUS_FAILED,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PENDING,
    TASK_STATUS_SUCCESS,
    Action,
    ActionError,
    TaskNode,
)
from core.env.factory import build_environment
from core.env.runtime import EnvironmentRuntime
from core.env.snapshot import SnapshotManager
from core.llm.client_base import LLMClient
from core.llm.factory import build_llm_client
from core.orchestrator.backtrack import BacktrackSelector, GiveUp, attempts_exhausted, build_selector
from core.orchestrator.executor import ActionExecutor
from core.orchestrator.generator import ActionGenerator
from core.platform import audit as audit_events
from core.platform.audit import AuditLogger
from core.platform.config import Config
from core.store.task_store import TaskStore
from tools.http_tool import HttpTool

logger = logging.getLogger(__name__)

SNAPSHOT_NEVER = "never"
SNAPSHOT_PER_ACTION = "action"
SNAPSHOT_PER_TASK = "task"


class CancellationToken:
    """运行取消标记（线程安全）。"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, task_id: str) -> None:
        if self._event.is_set():
            raise RunCancelled(task_id)


class Orchestrator:
    """任务执行与回溯引擎。"""

    def __init__(
        self,
        store: TaskStore,
        generator: ActionGenerator,
        executor: ActionExecutor,
        snapshots: SnapshotManager,
        selector: BacktrackSelector,
        audit: Optional[AuditLogger] = None,
        snapshot_frequency: str = SNAPSHOT_PER_ACTION,
        max_attempts: int = 10,
        max_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        """初始化引擎。

        Args:
            store: 任务存储
            generator: 动作生成器
            executor: 动作执行器
            snapshots: 快照管理器
            selector: 回溯策略
            audit: 审计日志（None 表示不记录）
            snapshot_frequency: 检查点策略 never | action | task
            max_attempts: 尝试次数上限（已持久化的尝试 + 本次运行中的 oracle 失败）
            max_seconds: 单次运行的时间预算（秒）
            clock: 单调时钟
        """
        self.store = store
        self.generator = generator
        self.executor = executor
        self.snapshots = snapshots
        self.selector = selector
        self.audit = audit
        self.snapshot_frequency = snapshot_frequency
        self.max_attempts = max_attempts
        self.max_seconds = max_seconds
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: TaskStore,
        environment: EnvironmentRuntime,
        client: LLMClient,
        audit: Optional[AuditLogger] = None,
    ) -> "Orchestrator":
        """按配置组装引擎的各个组件。"""
        generator = ActionGenerator.from_config(config, client, system_context=environment.describe())
        executor = ActionExecutor(
            environment,
            generator=generator,
            default_timeout=float(config.get("task.default_timeout_seconds", 30)),
            http_tool=HttpTool(timeout_seconds=float(config.get("system.http.timeout_seconds", 30))),
        )
        return cls(
            store=store,
            generator=generator,
            executor=executor,
            snapshots=SnapshotManager(environment, store),
            selector=build_selector(config, store),
            audit=audit,
            snapshot_frequency=config.get("docker.snapshot_frequency", SNAPSHOT_PER_ACTION),
            max_attempts=int(config.get("task.max_attempts", 10)),
            max_seconds=float(config.get("task.max_seconds", 1800)),
        )

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def create_task(
        self,
        description: str,
        goal: Optional[str] = None,
        parent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> TaskNode:
        """创建任务并记录审计事件。"""
        task = self.store.create(description, goal=goal, parent_id=parent_id, task_id=task_id)
        self._audit(
            audit_events.EVENT_TASK_CREATED,
            task_id=task.task_id,
            parent_id=parent_id,
            description=description,
        )
        logger.info("Created task %s", task.task_id)
        return task

    def prepare_resume(self, task_id: str) -> TaskNode:
        """确定恢复时要运行的节点。

        - pending / in_progress：该节点本身
        - failed：新建目标相同的子任务（失败节点保持不变）
        - success：原样返回，不需要运行
        """
        task = self.store.require(task_id)
        if task.status == TASK_STATUS_SUCCESS:
            logger.info("Task %s already succeeded; nothing to resume", task_id)
            return task
        if task.status == TASK_STATUS_FAILED:
            child = self.create_task(task.description, goal=task.goal, parent_id=task.task_id)
            logger.info("Task %s failed; retrying as child task %s", task_id, child.task_id)
            return child
        return task

    def resume(self, task_id: str, cancel_token: Optional[CancellationToken] = None) -> TaskNode:
        """恢复任务并运行。

        Returns:
            实际运行（或原样返回）的任务节点
        """
        return self.run(self.prepare_resume(task_id), cancel_token)

    def run(self, task: TaskNode, cancel_token: Optional[CancellationToken] = None) -> TaskNode:
        """驱动任务直到终态。

        终态任务原样返回，不写存储也不调用 oracle。

        Raises:
            RunCancelled: 运行被取消（任务保持 in_progress，可恢复）
        """
        if task.is_terminal:
            return task
        node = self.store.require(task.task_id)
        if node.is_terminal:
            return node

        token = cancel_token or CancellationToken()
        try:
            return self._loop(node, token)
        except RunCancelled:
            self._audit(audit_events.EVENT_TASK_CANCELLED, task_id=node.task_id)
            logger.warning("Run cancelled for task %s", node.task_id)
            raise
        except Exception:
            logger.exception("Run aborted for task %s", node.task_id)
            self._fail_after_crash(node.task_id)
            raise

    # ------------------------------------------------------------------
    # 主循环
    # ------------------------------------------------------------------

    def _loop(self, node: TaskNode, token: CancellationToken) -> TaskNode:
        started = self.clock()
        oracle_failures = 0
        awaiting_summary = False

        if node.status == TASK_STATUS_PENDING:
            node.update_status(TASK_STATUS_IN_PROGRESS)
            self.store.update(node)
        self._audit(audit_events.EVENT_TASK_STARTED, task_id=node.task_id, attempts=len(node.attempts))

        # 恢复运行时，最后一次尝试失败则从失败分析开始，成功则先判断目标是否达成
        pending_error: Optional[ActionError] = None
        last = node.last_attempt
        if last is not None:
            if last.succeeded:
                awaiting_summary = True
            else:
                pending_error = last.error

        while True:
            if self.clock() - started >= self.max_seconds:
                return self._ceiling(node, f"time budget of {self.max_seconds}s exhausted")

            token.raise_if_cancelled(node.task_id)

            if awaiting_summary:
                try:
                    continuation = self.generator.summarize(node)
                except (OracleError, InvalidOracleResponse) as e:
                    oracle_failures += 1
                    self._oracle_failed(node, e)
                    if len(node.attempts) + oracle_failures > self.max_attempts:
                        return self._ceiling(node, f"attempt ceiling of {self.max_attempts} exceeded")
                    continue
                awaiting_summary = False
                node.continuation_summary = continuation.summary
                if continuation.goal_satisfied:
                    return self._finish(node, TASK_STATUS_SUCCESS, "goal satisfied")
                node.touch()
                self.store.update(node)
                continue

            # 达到上限后不再请求新动作
            if attempts_exhausted(len(node.attempts) + oracle_failures, self.max_attempts):
                return self._ceiling(node, f"attempt ceiling of {self.max_attempts} reached")

            try:
                if pending_error is not None:
                    generated = self.generator.next_action_after_failure(node, pending_error)
                else:
                    generated = self.generator.next_action(node)
            except (OracleError, InvalidOracleResponse) as e:
                oracle_failures += 1
                self._oracle_failed(node, e)
                continue

            action = generated.action
            if self._should_checkpoint(node, action):
                try:
                    snapshot_id = self.snapshots.checkpoint(node)
                except SnapshotError as e:
                    logger.error("Checkpoint failed for task %s: %s", node.task_id, e)
                    return self._finish(node, TASK_STATUS_FAILED, str(e))
                node.environment_snapshot_id = snapshot_id
                node.touch()
                self.store.update(node)
                self._audit(audit_events.EVENT_SNAPSHOT_CREATED, task_id=node.task_id, snapshot_id=snapshot_id)

            result = self.executor.execute(action, generated.files)
            node = self.store.append_attempt(node.task_id, result)
            self._audit(
                audit_events.EVENT_ATTEMPT_RECORDED,
                task_id=node.task_id,
                attempt=len(node.attempts),
                action_type=action.type,
                status=result.status,
                error=result.error.to_dict() if result.error else None,
            )

            if result.succeeded:
                logger.info("Task %s: %s action succeeded", node.task_id, action.type)
                pending_error = None
                awaiting_summary = True
                continue

            error = result.error
            logger.info("Task %s: %s action failed (%s)", node.task_id, action.type, error.code)
            if error.is_fatal:
                return self._finish(node, TASK_STATUS_FAILED, f"{error.code}: {error.message}")

            decision = self.selector.select(node, error)
            self._audit(
                audit_events.EVENT_BACKTRACK_SELECTED,
                task_id=node.task_id,
                decision=type(decision).__name__,
                details=asdict(decision),
            )
            if isinstance(decision, GiveUp):
                if decision.code == ERROR_CODE_CEILING_EXCEEDED:
                    return self._ceiling(node, decision.reason)
                return self._finish(node, TASK_STATUS_FAILED, decision.reason)

            if decision.from_snapshot_id:
                try:
                    self.snapshots.restore(decision.from_snapshot_id)
                except SnapshotError as e:
                    logger.error("Restore failed for task %s: %s", node.task_id, e)
                    return self._finish(node, TASK_STATUS_FAILED, str(e))
                self._audit(
                    audit_events.EVENT_SNAPSHOT_RESTORED,
                    task_id=node.task_id,
                    snapshot_id=decision.from_snapshot_id,
                    from_task_id=decision.task_id,
                )
            pending_error = error

    # ------------------------------------------------------------------
    # 辅助
    # ------------------------------------------------------------------

    def _should_checkpoint(self, node: TaskNode, action: Action) -> bool:
        if self.snapshot_frequency == SNAPSHOT_PER_ACTION:
            return action.is_state_mutating
        if self.snapshot_frequency == SNAPSHOT_PER_TASK:
            return action.is_state_mutating and node.environment_snapshot_id is None
        return False

    def _oracle_failed(self, node: TaskNode, error: Exception) -> None:
        logger.warning("Oracle failed for task %s: %s", node.task_id, error)
        self._audit(
            audit_events.EVENT_ORACLE_FAILED,
            task_id=node.task_id,
            code=getattr(error, "code", None),
            message=str(error),
        )

    def _ceiling(self, node: TaskNode, reason: str) -> TaskNode:
        error = CeilingExceeded(reason)
        logger.warning("Task %s: %s (%s)", node.task_id, reason, error.code)
        self._audit(
            audit_events.EVENT_CEILING_EXCEEDED,
            task_id=node.task_id,
            code=error.code,
            severity=error.severity,
            reason=reason,
        )
        return self._finish(node, TASK_STATUS_FAILED, f"{error.code}: {reason}")

    def _finish(self, node: TaskNode, status: str, reason: str) -> TaskNode:
        node.update_status(status)
        self.store.update(node)
        self._audit(
            audit_events.EVENT_TASK_FINISHED,
            task_id=node.task_id,
            status=status,
            reason=reason,
            attempts=len(node.attempts),
        )
        logger.info("Task %s finished: %s (%s)", node.task_id, status, reason)
        return node

    def _fail_after_crash(self, task_id: str) -> None:
        stored = self.store.get(task_id)
        if stored is None or stored.is_terminal:
            return
        try:
            if stored.status == TASK_STATUS_PENDING:
                stored.update_status(TASK_STATUS_IN_PROGRESS)
                self.store.update(stored)
            stored.update_status(TASK_STATUS_FAILED)
            self.store.update(stored)
        except (TerminalTaskError, InvalidTransitionError) as e:
            logger.error("Could not mark task %s failed: %s", task_id, e)

    def _audit(self, event_type: str, **details) -> None:
        if self.audit is not None:
            self.audit.log(event_type, details)


def build_orchestrator(
    config: Config,
    store: TaskStore,
    client: Optional[LLMClient] = None,
    audit: Optional[AuditLogger] = None,
    scope: Optional[str] = None,
) -> Orchestrator:
    """按配置创建环境、补全客户端和审计日志，并组装引擎。

    Args:
        scope: 环境隔离范围（通常是任务树的根任务ID）；None 表示使用配置中的共享环境
    """
    environment = build_environment(config, config.working_dir, scope=scope)
    if client is None:
        client = build_llm_client(config)
    if audit is None:
        audit = AuditLogger(config.resolve_path("storage.audit_log"))
    return Orchestrator.from_config(config, store, environment, client, audit=audit)
