"""系统提示词加载工具。

按编辑范围策略和语言(locale) 从 prompts/<locale> 目录读取对应的 system prompt 文本。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(policy, locale: str = "en") -> str:
    """根据编辑范围策略加载系统提示词文本。

    policy 可以是 EditScopePolicy，也可以是它的字符串值。
    """

    name = getattr(policy, "value", policy)
    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")
