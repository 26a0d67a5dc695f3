from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol, Sequence

from .messages import Attachment, Message
from .models import ReasoningConfig

ChatMode = Literal["private", "server"]

RetryType = Literal["user", "assistant"]


@dataclass
class Conversation:
    """服务端会话文档中与编排相关的字段。"""

    id: str
    title: str = ""
    is_streaming: bool = False
    persona_id: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationSnapshot:
    """对实时会话文档的一次观察：会话本身 + 按创建顺序排列的消息列表。"""

    conversation: Conversation
    messages: List[Message] = field(default_factory=list)

    @property
    def is_streaming(self) -> bool:
        return self.conversation.is_streaming


class ChatBackend(Protocol):
    """服务端模式依赖的远端后端。

    后端负责持久化与实际生成；客户端只发起请求并观察会话文档。
    """

    async def create_conversation(
        self,
        first_message: str,
        *,
        model: str,
        provider: str,
        persona_id: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> str:
        ...

    async def send_follow_up_message(
        self,
        conversation_id: str,
        content: str,
        *,
        model: str,
        provider: str,
        attachments: Sequence[Attachment] = (),
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        ...

    async def retry_from_message(
        self,
        conversation_id: str,
        message_id: str,
        retry_type: RetryType,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        ...

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        new_content: str,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        ...

    async def resume_conversation(
        self,
        conversation_id: str,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        ...

    async def stop_generation(self, conversation_id: str) -> None:
        ...

    async def delete_message(self, message_id: str) -> None:
        ...

    async def get_conversation(self, conversation_id: str) -> ConversationSnapshot:
        ...

    def watch_conversation(self, conversation_id: str) -> AsyncIterator[ConversationSnapshot]:
        ...

    async def save_private_conversation(
        self,
        messages: Sequence[Message],
        *,
        persona_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> str:
        ...
