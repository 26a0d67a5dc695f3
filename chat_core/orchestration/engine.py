"""两种生成引擎共享的会话结构、契约与发送前校验。"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.messages import Attachment, Citation, Message, Role
from chat_core.domain.models import ChatUsage, ModelSelection
from chat_core.orchestration.cancellation import CancellationToken
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.message_store import MessageStore

FirstDeltaCallback = Callable[[], None]
ConversationCreatedCallback = Callable[[str], None]


def _noop() -> None:
    return None


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


@dataclass
class StreamSession:
    """一次进行中的生成，流结束、出错或被中止后即销毁。"""

    key: str
    token: CancellationToken
    message_id: str
    content: str = ""
    reasoning: str = ""
    citations: List[Citation] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    started: bool = False

    def mark_started(self, on_first_delta: FirstDeltaCallback) -> None:
        if not self.started:
            self.started = True
            on_first_delta()


class ChatEngine(Protocol):
    """私有 / 服务端引擎共同实现的操作契约。"""

    mode: str

    async def send(
        self,
        ctx: ChatContext,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        on_first_delta: FirstDeltaCallback = _noop,
        on_conversation_created: Optional[ConversationCreatedCallback] = None,
    ) -> Optional[str]:
        ...

    async def retry_user(self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop) -> None:
        ...

    async def retry_assistant(
        self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        ...

    async def edit(
        self, ctx: ChatContext, message_id: str, content: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        ...

    async def delete(self, ctx: ChatContext, message_id: str) -> bool:
        ...

    def can_stop(self, ctx: ChatContext) -> bool:
        ...

    async def stop(self, ctx: ChatContext) -> bool:
        ...


def require_model(ctx: ChatContext) -> ModelSelection:
    if ctx.selected_model is None or not ctx.selected_model.model_id:
        raise ValidationError(code="NO_MODEL_SELECTED", message="Please select a model first")
    return ctx.selected_model


def require_can_send(ctx: ChatContext) -> None:
    if ctx.closed:
        raise ValidationError(code="SESSION_CLOSED", message="This chat session has ended")
    if not ctx.can_send_message:
        message = "Message limit reached"
        if ctx.is_anonymous:
            message = "Message limit reached. Please sign in to continue chatting."
        raise ValidationError(code="MESSAGE_LIMIT_REACHED", message=message)


def validate_outgoing(ctx: ChatContext, content: str, attachments: Sequence[Attachment] = ()) -> ModelSelection:
    """发送前校验；任何乐观更新之前调用。"""

    if not (content or "").strip() and not attachments:
        raise ValidationError(code="EMPTY_MESSAGE", message="Message cannot be empty")
    model = require_model(ctx)
    require_can_send(ctx)
    return model


def require_message(store: MessageStore, message_id: str, role: Optional[Role] = None) -> Message:
    msg = store.get(message_id)
    if msg is None:
        raise ValidationError(code="MESSAGE_NOT_FOUND", message="Message not found", message_id=message_id)
    if role is not None and msg.role != role:
        raise ValidationError(
            code="INVALID_RETRY_TARGET",
            message=f"Expected a {role} message",
            message_id=message_id,
        )
    return msg


def require_user_before(store: MessageStore, assistant_id: str) -> Message:
    previous = store.previous_of(assistant_id)
    if previous is None or previous.role != "user":
        raise ValidationError(
            code="INVALID_RETRY_TARGET",
            message="Cannot retry: no user message before this response",
            message_id=assistant_id,
        )
    return previous
