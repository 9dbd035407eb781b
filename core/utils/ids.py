"""ID generation utilities."""
import uuid
from typing import Optional

TASK_ID_PREFIX = "task"
ACTION_ID_PREFIX = "action"
ATTEMPT_ID_PREFIX = "attempt"
SNAPSHOT_ID_PREFIX = "snapshot"


def generate_id(prefix: Optional[str] = None) -> str:
    """生成唯一ID。
    
    Args:
        prefix: ID前缀（如 "task"、"snapshot"）
        
    Returns:
        唯一ID字符串，格式为 "<prefix>_<uuid4>"
    """
    id_str = str(uuid.uuid4())
    if prefix:
        return f"{prefix}_{id_str}"
    return id_str


def new_task_id() -> str:
    return generate_id(TASK_ID_PREFIX)


def new_action_id() -> str:
    return generate_id(ACTION_ID_PREFIX)


def new_attempt_id() -> str:
    return generate_id(ATTEMPT_ID_PREFIX)


def new_snapshot_id() -> str:
    return generate_id(SNAPSHOT_ID_PREFIX)
