"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取默认 system prompt 文本，
私有模式下由引擎拼接在人设(persona)提示词之后，作为 ChatMessage(role="system") 发送。
"""

from pathlib import Path

PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "zh") -> str:
    """根据语言加载默认系统提示词，未知语言回退到中文。"""

    fname = PROMPTS_DIR / locale / "default_system.md"
    if not fname.exists():
        fname = PROMPTS_DIR / "zh" / "default_system.md"
    return fname.read_text(encoding="utf-8").strip()
