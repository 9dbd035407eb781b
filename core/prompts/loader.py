"""Prompt loader.

Prompts live under ``prompts/`` as Markdown files: a YAML frontmatter block
followed by ``## system`` / ``## user`` / ``## assistant`` sections with
``{{variable}}`` placeholders.
"""
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")
ROLES = ("system", "user", "assistant")
_SECTION = re.compile(
    r"^##\s+(system|user|assistant)\s*\n(.*?)(?=^##\s+(?:system|user|assistant)\s*$|\Z)",
    re.DOTALL | re.MULTILINE,
)


def split_frontmatter(raw_text: str) -> Tuple[str, str]:
    """拆分 frontmatter 与正文。

    Returns:
        (frontmatter 原文, 正文)；没有 frontmatter 时前者为空字符串
    """
    if raw_text.startswith("---"):
        closing = raw_text.find("\n---", 4)
        if closing != -1:
            return raw_text[4:closing].strip(), raw_text[closing + 5:].strip()
    return "", raw_text.strip()


def find_variables(text: str) -> List[str]:
    """按出现顺序列出文本中的 {{var}} 变量（去重）。"""
    seen: Dict[str, None] = {}
    for name in VARIABLE_PATTERN.findall(text):
        seen.setdefault(name, None)
    return list(seen)


class PromptLoader:
    """从 prompts/ 目录读取、解析和渲染 prompt。"""

    def __init__(self, project_root: Optional[str] = None):
        """初始化加载器。

        Args:
            project_root: 项目根目录（默认为本文件向上三级）
        """
        if project_root:
            self.project_root = Path(project_root)
        else:
            self.project_root = Path(__file__).resolve().parent.parent.parent

        self.prompts_dir = self.project_root / "prompts"
        if not self.prompts_dir.exists():
            raise FileNotFoundError(f"prompts/ 目录不存在: {self.prompts_dir}")

    def path_for(self, prompt_id: str) -> Path:
        """解析 prompt 文件路径，拒绝 prompts/ 之外的路径。

        Raises:
            ValueError: prompt_id 指向 prompts/ 之外
            FileNotFoundError: 文件不存在
        """
        base = self.prompts_dir.resolve()
        path = (base / prompt_id).resolve()
        if base not in path.parents:
            raise ValueError(f"无效的 prompt_id: {prompt_id}")
        if not path.is_file():
            raise FileNotFoundError(f"Prompt 文件不存在: {path}")
        return path

    def load_raw(self, prompt_id: str) -> str:
        """读取原文（含 frontmatter），例如 load_raw("generator/next_action.md")。"""
        return self.path_for(prompt_id).read_text(encoding="utf-8")

    def load(self, prompt_id: str) -> str:
        """读取正文（不含 frontmatter）。"""
        return split_frontmatter(self.load_raw(prompt_id))[1]

    def parse(self, prompt_id: str) -> Dict[str, Any]:
        """解析为 {"meta": frontmatter 字典, "sections": {角色: 文本}}。

        Raises:
            ValueError: frontmatter 不是合法的 YAML 映射，或缺少 system 分段
        """
        meta_text, body = split_frontmatter(self.load_raw(prompt_id))

        meta: Dict[str, Any] = {}
        if meta_text:
            try:
                loaded = yaml.safe_load(meta_text)
            except yaml.YAMLError as e:
                raise ValueError(f"Prompt {prompt_id} frontmatter 解析失败: {e}") from e
            if isinstance(loaded, dict):
                meta = loaded

        sections = {m.group(1).lower(): m.group(2).strip() for m in _SECTION.finditer(body)}
        if "system" not in sections:
            raise ValueError(f"Prompt {prompt_id} 缺少 '## system' 分段")
        return {"meta": meta, "sections": sections}

    def render(self, prompt: str, vars: Dict[str, Any], strict: bool = True) -> str:
        """替换 {{var}} 占位符。

        只替换一遍：变量值里的 {{...}} 原样保留（任务 JSON 中可能出现这种文本）。

        Raises:
            ValueError: strict 模式下有未提供的变量
        """
        if strict:
            missing = [name for name in find_variables(prompt) if name not in vars]
            if missing:
                raise ValueError(f"缺少变量: {', '.join(missing)}")

        return VARIABLE_PATTERN.sub(lambda m: str(vars.get(m.group(1), "")), prompt)

    def render_messages(self, prompt_id: str, vars: Dict[str, Any]) -> List[Dict[str, str]]:
        """把各分段渲染为补全接口使用的消息列表（system 在前）。"""
        sections = self.parse(prompt_id)["sections"]
        return [
            {"role": role, "content": self.render(sections[role], vars)}
            for role in ROLES
            if role in sections
        ]

    def load_and_render(self, prompt_id: str, vars: Optional[Dict[str, Any]] = None, strict: bool = True) -> str:
        prompt = self.load(prompt_id)
        return self.render(prompt, vars, strict=strict) if vars else prompt
