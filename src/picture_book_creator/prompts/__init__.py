"""Prompt 模板管理

模板是同目录下的 .txt 文件，使用 str.format 占位符；
模板中的JSON示例需要把花括号写成 {{ }}。
"""

from functools import lru_cache
from pathlib import Path
from string import Formatter

PROMPTS_DIR = Path(__file__).parent


@lru_cache
def load_prompt(name: str) -> str:
    """加载 prompt 模板

    Args:
        name: 模板文件名（不含扩展名）

    Returns:
        模板原文
    """
    prompt_file = PROMPTS_DIR / f"{name}.txt"
    if not prompt_file.exists():
        raise FileNotFoundError(f"Prompt template not found: {prompt_file}")
    return prompt_file.read_text(encoding="utf-8")


def template_fields(name: str) -> set[str]:
    """模板中用到的占位符名称"""
    return {field for _, field, _, _ in Formatter().parse(load_prompt(name)) if field}


def render_prompt(name: str, **kwargs) -> str:
    """加载并渲染 prompt 模板

    Raises:
        KeyError: 缺少模板需要的变量
    """
    missing = template_fields(name) - kwargs.keys()
    if missing:
        raise KeyError(f"Prompt template '{name}' missing variables: {', '.join(sorted(missing))}")
    return load_prompt(name).format(**kwargs)
