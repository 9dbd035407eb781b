"""Tree of Failures Web API Server"""
import logging
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional, Set

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from core.contracts.errors import ConfigError, RunCancelled, TaskNotFoundError
from core.contracts.task import TaskNode
from core.orchestrator.engine import Orchestrator, build_orchestrator
from core.platform.config import Config
from core.store.task_store import TaskStore
from core.utils.ids import new_task_id

logger = logging.getLogger(__name__)

project_root = Path(__file__).parent.parent.parent

# factory(config, store, scope=根任务ID)；每棵任务树使用独占的执行环境
OrchestratorFactory = Callable[..., Orchestrator]


class TaskRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


class RunRegistry:
    """进程内正在运行的任务树；同一棵任务树同时只允许一个运行。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._running: Set[str] = set()

    def claim(self, root_id: str) -> bool:
        """占用任务树，已被占用时返回 False。"""
        with self._lock:
            if root_id in self._running:
                return False
            self._running.add(root_id)
            return True

    def release(self, root_id: str) -> None:
        with self._lock:
            self._running.discard(root_id)

    def __contains__(self, root_id: str) -> bool:
        with self._lock:
            return root_id in self._running


def _run_in_background(orchestrator: Orchestrator, task: TaskNode, runs: RunRegistry, root_id: str) -> None:
    """后台运行任务；引擎已把失败持久化，这里只负责记录日志并释放任务树。"""
    try:
        result = orchestrator.run(task)
        logger.info("Background run of task %s finished: %s", task.task_id, result.status)
    except RunCancelled:
        logger.warning("Background run of task %s cancelled", task.task_id)
    except Exception:
        logger.exception("Background run of task %s crashed", task.task_id)
    finally:
        runs.release(root_id)


def create_app(
    config: Optional[Config] = None,
    store: Optional[TaskStore] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> FastAPI:
    """创建 FastAPI 应用。

    Args:
        config: 配置（默认从当前目录查找）
        store: 任务存储（默认按配置打开，不存在时创建表结构）
        orchestrator_factory: 按任务树创建引擎的工厂，以 scope=根任务ID 调用（默认 build_orchestrator）

    Returns:
        FastAPI 应用
    """
    env_path = project_root / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config = config or Config()
    owns_store = store is None
    if store is None:
        store = TaskStore(config.resolve_path("storage.db_path"))
    factory = orchestrator_factory or build_orchestrator
    runs = RunRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_store:
            store.close()

    app = FastAPI(title="Tree of Failures API", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.runs = runs

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _require(task_id: str) -> TaskNode:
        try:
            return store.require(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail="Task not found")

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/tasks")
    def list_tasks(
        status: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=1),
    ):
        """列出任务（最新的在前）"""
        try:
            tasks = store.list(status=status, limit=limit)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"tasks": [task.to_dict(include_attempts=False) for task in tasks]}

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str):
        return _require(task_id).to_dict()

    @app.get("/api/tasks/{task_id}/children")
    def list_children(task_id: str):
        _require(task_id)
        return {"tasks": [task.to_dict(include_attempts=False) for task in store.children(task_id)]}

    @app.get("/api/tasks/{task_id}/snapshots")
    def list_snapshots(task_id: str):
        _require(task_id)
        return {"snapshots": [snapshot.to_dict() for snapshot in store.list_snapshots(task_id)]}

    def _orchestrator_for(root_id: str) -> Orchestrator:
        try:
            return factory(config, store, scope=root_id)
        except ConfigError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/tasks", status_code=202)
    def create_task(request: TaskRequest, background_tasks: BackgroundTasks):
        """创建根任务并在后台运行"""
        task_id = new_task_id()
        runs.claim(task_id)
        try:
            orchestrator = _orchestrator_for(task_id)
            task = orchestrator.create_task(request.prompt, task_id=task_id)
        except Exception:
            runs.release(task_id)
            raise
        background_tasks.add_task(_run_in_background, orchestrator, task, runs, task_id)
        return task.to_dict()

    @app.post("/api/tasks/{task_id}/resume", status_code=202)
    def resume_task(task_id: str, background_tasks: BackgroundTasks):
        """恢复任务（失败的任务会创建子任务重新尝试）"""
        _require(task_id)
        root_id = store.root_of(task_id)
        if not runs.claim(root_id):
            raise HTTPException(status_code=409, detail=f"Task tree {root_id} is already running")
        try:
            orchestrator = _orchestrator_for(root_id)
            task = orchestrator.prepare_resume(task_id)
        except Exception:
            runs.release(root_id)
            raise
        if task.is_terminal:
            runs.release(root_id)
        else:
            background_tasks.add_task(_run_in_background, orchestrator, task, runs, root_id)
        return task.to_dict()

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
