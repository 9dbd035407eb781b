"""Prompt file validation."""
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from core.prompts.loader import find_variables, split_frontmatter

REQUIRED_FIELDS = ("id", "name", "version", "used_by", "inputs", "output")
OUTPUT_TYPES = ("json", "text")


def declared_inputs(frontmatter: Dict[str, Any]) -> Set[str]:
    """读取 frontmatter.inputs 声明的变量名。

    每一项可以是 "name: 说明" 字符串，也可以是 {name: 说明} 映射。
    """
    inputs = frontmatter.get("inputs")
    if not isinstance(inputs, list):
        return set()
    names: Set[str] = set()
    for item in inputs:
        if isinstance(item, str):
            names.add(item.split(":", 1)[0].strip())
        elif isinstance(item, dict):
            names.update(str(key) for key in item)
    return names


def validate_prompt_text(prompt_id: str, raw_text: str, project_root: Optional[Path] = None) -> List[str]:
    """校验一个 prompt 文件。

    Args:
        prompt_id: prompt 标识（相对 prompts/ 的路径，不含 .md）
        raw_text: 文件原文
        project_root: 给定时检查 used_by 中列出的文件是否存在

    Returns:
        错误列表（为空表示通过）
    """
    meta_text, body = split_frontmatter(raw_text)
    if not meta_text:
        return [f"{prompt_id}: 缺少 YAML frontmatter（必须以 '---' 开头）"]
    try:
        frontmatter = yaml.safe_load(meta_text)
    except yaml.YAMLError as e:
        return [f"{prompt_id}: frontmatter 不是合法的 YAML: {e}"]
    if not isinstance(frontmatter, dict):
        return [f"{prompt_id}: frontmatter 必须是映射"]

    errors = [f"{prompt_id}: frontmatter 缺少字段 {name}" for name in REQUIRED_FIELDS if name not in frontmatter]

    if frontmatter.get("id") not in (None, prompt_id):
        errors.append(f"{prompt_id}: id 与文件路径不一致: {frontmatter.get('id')}")

    output = frontmatter.get("output")
    if not isinstance(output, dict):
        errors.append(f"{prompt_id}: output 必须是映射")
    elif output.get("type") not in OUTPUT_TYPES:
        errors.append(f"{prompt_id}: output.type 必须是 json 或 text，当前为 {output.get('type')!r}")

    if "## system" not in body:
        errors.append(f"{prompt_id}: 缺少 '## system' 分段")

    declared = declared_inputs(frontmatter)
    used = set(find_variables(body))
    undeclared = sorted(used - declared)
    if undeclared:
        errors.append(f"{prompt_id}: 变量未在 inputs 中声明: {', '.join(undeclared)}")
    unused = sorted(declared - used)
    if unused:
        errors.append(f"{prompt_id}: inputs 声明了未使用的变量: {', '.join(unused)}")

    if project_root is not None:
        for user in frontmatter.get("used_by") or []:
            if not (Path(project_root) / str(user)).exists():
                errors.append(f"{prompt_id}: used_by 指向不存在的文件: {user}")

    return errors
