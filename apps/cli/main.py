"""CLI main entry point."""
import argparse
import os
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from core.contracts.errors import (
    ConfigError,
    EngineError,
    InvalidTransitionError,
    TaskNotFoundError,
    TerminalTaskError,
)
from core.contracts.task import TASK_STATUS_SUCCESS, TASK_STATUSES, TaskNode
from core.env.factory import build_environment
from core.env.snapshot import SnapshotManager
from core.orchestrator.engine import Orchestrator, build_orchestrator
from core.platform import audit as audit_events
from core.platform.audit import AuditLogger
from core.platform.config import CONFIG_DIR_NAME, SNAPSHOT_FREQUENCIES, Config, write_default_config
from core.platform.logs import setup_logging
from core.store.task_store import TaskStore
from core.utils.time import format_timestamp

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "in_progress": "cyan",
    "success": "green",
    "failed": "red",
}


def load_env_files(working_dir: Optional[str] = None) -> None:
    """加载项目根目录和工作目录下的 .env 文件。"""
    project_root = Path(__file__).parent.parent.parent
    for env_path in (project_root / ".env", Path(working_dir or ".") / ".env"):
        if env_path.exists():
            load_dotenv(env_path)


# ----------------------------------------------------------------------
# 组件装配
# ----------------------------------------------------------------------


def load_config(args: argparse.Namespace) -> Config:
    """加载配置并应用命令行覆盖项。"""
    config = Config(
        config_dir=getattr(args, "config", None),
        working_dir=getattr(args, "working_dir", None) or ".",
    )
    config.apply_overrides(
        {
            "llm.model": getattr(args, "model", None),
            "task.max_attempts": getattr(args, "max_attempts", None),
            "llm.max_tokens": getattr(args, "max_tokens", None),
            "task.default_timeout_seconds": getattr(args, "timeout", None),
            "docker.snapshot_frequency": getattr(args, "snapshot_frequency", None),
        }
    )
    return config


def open_store(config: Config) -> TaskStore:
    """打开已初始化的任务存储。

    Raises:
        ConfigError: 数据库不存在或尚未初始化
    """
    db_path = config.resolve_path("storage.db_path")
    if not db_path.exists():
        raise ConfigError(f"Task database not found at {db_path}. Run `tof init` first.")
    store = TaskStore(db_path, bootstrap=False)
    if not store.has_schema():
        store.close()
        raise ConfigError(f"Task database at {db_path} is not initialized. Run `tof init` first.")
    return store


def configure_logging(config: Config, debug: bool) -> None:
    level = "debug" if debug else config.get("system.logging.level", "info")
    log_file = None
    tof_dir = config.working_dir / CONFIG_DIR_NAME
    if config.get("system.logging.file", True) and tof_dir.is_dir():
        log_file = tof_dir / "logs" / "tof.log"
    setup_logging(level, log_file)


# ----------------------------------------------------------------------
# 输出
# ----------------------------------------------------------------------


def _status_text(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_task_result(task: TaskNode) -> None:
    """打印运行结束后的任务摘要。"""
    marker = "✓" if task.status == TASK_STATUS_SUCCESS else "✗"
    console.print(f"\n{marker} 任务 {task.task_id}: {_status_text(task.status)}")
    console.print(f"  尝试次数: {len(task.attempts)}")
    if task.continuation_summary:
        console.print(f"  后续步骤: {escape(task.continuation_summary)}")
    error = task.last_error
    if task.status != TASK_STATUS_SUCCESS and error is not None:
        console.print(f"  最后错误: {escape(f'[{error.code}] {error.message}')}")


def render_task_list(tasks: List[TaskNode]) -> Table:
    table = Table(title="Tasks", show_header=True, header_style="bold")
    table.add_column("ID", no_wrap=True)
    table.add_column("Status")
    table.add_column("Description")
    table.add_column("Attempts", justify="right")
    table.add_column("Parent", no_wrap=True)
    table.add_column("Updated")
    for task in tasks:
        table.add_row(
            task.task_id,
            _status_text(task.status),
            escape(task.description),
            str(len(task.attempts)),
            task.parent_id or "-",
            format_timestamp(task.updated_at),
        )
    return table


def render_task_detail(task: TaskNode) -> List[Table]:
    """任务详情表 + 每个尝试一张表。"""
    detail = Table(title=f"Task {task.task_id}", show_header=False)
    detail.add_column("Field", style="bold")
    detail.add_column("Value")
    detail.add_row("Description", escape(task.description))
    detail.add_row("Goal", escape(task.goal))
    detail.add_row("Status", _status_text(task.status))
    detail.add_row("Parent", task.parent_id or "-")
    detail.add_row("Snapshot", task.environment_snapshot_id or "-")
    detail.add_row("Continuation", escape(task.continuation_summary or "-"))
    detail.add_row("Created", format_timestamp(task.created_at))
    detail.add_row("Updated", format_timestamp(task.updated_at))

    tables = [detail]
    for index, attempt in enumerate(task.attempts, start=1):
        table = Table(title=f"Attempt {index}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Action", escape(f"{attempt.action.type}: {attempt.action.description}"))
        table.add_row("Params", escape(str(attempt.action.params.to_dict())))
        table.add_row("Status", attempt.status)
        if attempt.error is not None:
            table.add_row("Error", escape(f"[{attempt.error.code}/{attempt.error.severity}] {attempt.error.message}"))
        if attempt.outputs:
            result = attempt.outputs.get("result")
            if result:
                table.add_row("Result", escape(str(result)[:2000]))
            if attempt.outputs.get("stderr"):
                table.add_row("Stderr", escape(str(attempt.outputs["stderr"])[:2000]))
        tables.append(table)
    return tables


# ----------------------------------------------------------------------
# 子命令
# ----------------------------------------------------------------------


def cmd_init(args: argparse.Namespace) -> int:
    target = Path(args.dirname)
    config_path = write_default_config(target, force=args.force)
    config = Config(config_dir=config_path.parent, working_dir=target)
    with TaskStore(config.resolve_path("storage.db_path")) as store:
        db_path = store.db_path
    print(f"✓ 已初始化: {config_path}")
    print(f"  数据库: {db_path}")
    return 0


def _run_engine(orchestrator: Orchestrator, task: TaskNode, resume: bool = False) -> int:
    # Ctrl-C 中断时任务保持 in_progress，已记录的尝试都已持久化
    try:
        if resume:
            result = orchestrator.resume(task.task_id)
        else:
            result = orchestrator.run(task)
    except KeyboardInterrupt:
        print(f"\n用户中断，任务 {task.task_id} 可通过 `tof resume {task.task_id}` 继续")
        return 130
    if resume and result.task_id != task.task_id:
        print(f"任务 {task.task_id} 已失败，已创建子任务 {result.task_id} 重新尝试")
    print_task_result(result)
    return 0 if result.status == TASK_STATUS_SUCCESS else 1


def cmd_prompt(args: argparse.Namespace, config: Config) -> int:
    with open_store(config) as store:
        orchestrator = build_orchestrator(config, store)
        task = orchestrator.create_task(args.text)
        print(f"任务已创建: {task.task_id}")
        return _run_engine(orchestrator, task)


def cmd_resume(args: argparse.Namespace, config: Config) -> int:
    with open_store(config) as store:
        task = store.require(args.task_id)
        if task.status == TASK_STATUS_SUCCESS:
            print(f"任务 {task.task_id} 已成功完成，无需恢复")
            return 0
        orchestrator = build_orchestrator(config, store)
        print(f"恢复任务: {task.task_id} ({task.status})")
        return _run_engine(orchestrator, task, resume=True)


def cmd_rollback(args: argparse.Namespace, config: Config) -> int:
    with open_store(config) as store:
        task = store.require(args.task_id)
        snapshot = store.get_snapshot(args.snapshot) if args.snapshot else store.latest_snapshot(task.task_id)
        if snapshot is None:
            print(f"错误: 任务 {task.task_id} 没有可用的快照", file=sys.stderr)
            return 1
        if snapshot.task_id != task.task_id:
            print(f"错误: 快照 {snapshot.snapshot_id} 不属于任务 {task.task_id}", file=sys.stderr)
            return 1

        if not args.force:
            answer = input(f"将环境回滚到快照 {snapshot.snapshot_id}？当前环境的改动会丢失 [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("已取消")
                return 1

        environment = build_environment(config, config.working_dir)
        handle = SnapshotManager(environment, store).restore(snapshot.snapshot_id)
        AuditLogger(config.resolve_path("storage.audit_log")).log(
            audit_events.EVENT_ROLLBACK,
            {"task_id": task.task_id, "snapshot_id": snapshot.snapshot_id, "env_handle": handle},
        )
        print(f"✓ 已回滚到快照 {snapshot.snapshot_id}")
        return 0


def cmd_list(args: argparse.Namespace, config: Config) -> int:
    with open_store(config) as store:
        tasks = store.list(status=args.status, limit=args.limit)
    if not tasks:
        print("暂无任务")
        return 0
    console.print(render_task_list(tasks))
    return 0


def cmd_view(args: argparse.Namespace, config: Config) -> int:
    with open_store(config) as store:
        task = store.require(args.task_id)
        children = store.children(task.task_id)
    for table in render_task_detail(task):
        console.print(table)
    if children:
        console.print(render_task_list(children))
    return 0


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    import uvicorn

    from apps.web.api_server import create_app

    app = create_app(config=config)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


# ----------------------------------------------------------------------
# 参数解析
# ----------------------------------------------------------------------


def _add_config_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-w", "--working-dir", default=".", help="工作目录（包含 .tof）")
    parser.add_argument("-c", "--config", default=None, help="配置目录（包含 config.yaml）")


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    _add_config_options(parser)
    parser.add_argument("--model", default=None, help="模型名称")
    parser.add_argument("--max-attempts", type=int, default=None, help="最大尝试次数")
    parser.add_argument("--max-tokens", type=int, default=None, help="最大输出 token 数")
    parser.add_argument("--timeout", type=float, default=None, help="单个动作的超时时间（秒）")
    parser.add_argument(
        "--snapshot-frequency",
        choices=SNAPSHOT_FREQUENCIES,
        default=None,
        help="检查点策略",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tof", description="Tree of Failures task engine")
    parser.add_argument("--debug", action="store_true", help="输出调试日志和异常堆栈")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="初始化项目目录")
    init_parser.add_argument("dirname", help="项目目录")
    init_parser.add_argument("--force", action="store_true", help="覆盖已存在的 .tof")

    prompt_parser = subparsers.add_parser("prompt", help="创建根任务并运行")
    prompt_parser.add_argument("text", help="任务描述")
    _add_run_options(prompt_parser)

    resume_parser = subparsers.add_parser("resume", help="恢复任务")
    resume_parser.add_argument("task_id")
    _add_run_options(resume_parser)

    rollback_parser = subparsers.add_parser("rollback", help="把环境回滚到任务的快照")
    rollback_parser.add_argument("task_id")
    rollback_parser.add_argument("--snapshot", default=None, help="快照ID（默认最新快照）")
    rollback_parser.add_argument("--force", action="store_true", help="不确认直接回滚")
    _add_config_options(rollback_parser)

    list_parser = subparsers.add_parser("list", help="列出任务")
    list_parser.add_argument("--limit", type=int, default=20)
    list_parser.add_argument("--status", choices=TASK_STATUSES, default=None)
    _add_config_options(list_parser)

    view_parser = subparsers.add_parser("view", help="查看任务详情")
    view_parser.add_argument("task_id")
    _add_config_options(view_parser)

    serve_parser = subparsers.add_parser("serve", help="启动 Web API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    _add_config_options(serve_parser)

    return parser


COMMANDS = {
    "prompt": cmd_prompt,
    "resume": cmd_resume,
    "rollback": cmd_rollback,
    "list": cmd_list,
    "view": cmd_view,
    "serve": cmd_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """命令行入口，返回退出码。"""
    args = build_parser().parse_args(argv)
    debug = args.debug or os.getenv("DEBUG") == "1"
    load_env_files(getattr(args, "working_dir", None))

    try:
        if args.command == "init":
            setup_logging("debug" if debug else "info")
            return cmd_init(args)
        config = load_config(args)
        configure_logging(config, debug)
        return COMMANDS[args.command](args, config)
    except (
        EngineError,
        ConfigError,
        TaskNotFoundError,
        TerminalTaskError,
        InvalidTransitionError,
    ) as e:
        print(f"错误: {e}", file=sys.stderr)
        if debug:
            traceback.print_exc()
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
