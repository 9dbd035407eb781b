"""File system utilities."""
from pathlib import Path
from typing import Union


def ensure_dir(path: Union[str, Path]) -> Path:
    """确保目录存在。

    Args:
        path: 目录路径

    Returns:
        Path对象
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def safe_path(base: Union[str, Path], *parts: str) -> Path:
    """安全地构建路径（防止路径遍历）。

    绝对路径会被视为相对于 base 的路径。

    Args:
        base: 基础路径
        *parts: 路径部分

    Returns:
        解析后的绝对路径

    Raises:
        ValueError: 如果结果路径超出 base
    """
    base_path = Path(base).resolve()
    relative = [str(part).lstrip("/") for part in parts]
    full_path = base_path.joinpath(*relative).resolve()
    try:
        full_path.relative_to(base_path)
    except ValueError:
        raise ValueError(f"路径 {'/'.join(parts)} 超出范围: {base_path}")
    return full_path
