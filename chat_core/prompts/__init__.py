"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取提示词模板，
用于构造 ChatTurn(role="system")。模板只读且很小，读取后缓存。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "en") -> str:
    """根据模板名和语言加载提示词文本，去掉结尾换行。

    目前可用的模板：
    - "persona_system": 角色扮演指令，包含 {name} 与 {description} 占位符。
    - "summary_instruction": 滚动摘要请求。
    """

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8").rstrip("\n")
