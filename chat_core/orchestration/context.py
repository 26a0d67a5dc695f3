from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from chat_core.domain.models import ModelSelection, ReasoningConfig


@dataclass
class ChatContext:
    """一次聊天会话的显式上下文（模型选择、人设、推理配置、匿名限制等）。

    由 UI 在会话开始时创建并传给编排器，退出登录或离开页面时调用 close()。
    同一个 ChatContext 下同时最多只有一个生成流（stream_key 唯一）。
    """

    selected_model: Optional[ModelSelection] = None
    persona_id: Optional[str] = None
    persona_prompt: Optional[str] = None
    reasoning_config: Optional[ReasoningConfig] = None
    temperature: Optional[float] = None
    is_anonymous: bool = False
    can_send_message: bool = True
    conversation_id: Optional[str] = None
    locale: Optional[str] = None
    session_id: str = field(default_factory=lambda: f"s-{uuid4().hex}")
    closed: bool = False

    @property
    def stream_key(self) -> str:
        return f"chat:{self.session_id}"

    def close(self) -> None:
        self.closed = True
