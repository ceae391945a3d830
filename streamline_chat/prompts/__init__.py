"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
交给上游模型会话使用。配置项 system_prompt 非空时优先使用配置。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "ko") -> str:
    """加载指定语言的默认系统提示词（去掉首尾空白）。"""

    fname = PROMPTS_DIR / locale / "chat_system.md"
    return fname.read_text(encoding="utf-8").strip()
