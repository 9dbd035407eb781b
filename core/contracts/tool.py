"""Tool contract definition."""
from abc import ABC, abstractmethod
from typing import Any, Dict


class Tool(ABC):
    """工具契约定义：执行器通过工具与环境或外部系统交互。"""

    tool_id: str = ""
    name: str = ""
    description: str = ""

    @abstractmethod
    def execute(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """执行工具并返回结果字典。

        Raises:
            ExecutionError: 工具执行失败
        """
        raise NotImplementedError
