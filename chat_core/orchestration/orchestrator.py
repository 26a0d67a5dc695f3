"""聊天编排器：按当前模式把操作分发给私有引擎或服务端引擎。

UI 只和 ChatOrchestrator 打交道：
- 读取 messages / status / phase_for(message_id)；
- 调用 send_message、stop_generation、retry_*、edit_message、delete_message、toggle_mode 等操作。

引擎抛出的业务异常在这里统一捕获：转换成用户可见的通知，同时驱动状态机
（ValidationError 回到 idle，其余错误进入 error 并保留异常供 can_retry 判断）。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple, TypeVar

from chat_core.domain.conversation import ChatMode
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.messages import Attachment, Message
from chat_core.domain.models import ReasoningConfig
from chat_core.infrastructure.logging.logger import logger
from chat_core.orchestration.cancellation import CancellationController
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.engine import ChatEngine, FirstDeltaCallback, validate_outgoing
from chat_core.orchestration.message_store import MessageStore
from chat_core.orchestration.notifier import LoggingNotifier, Notifier
from chat_core.orchestration.phase import PhaseDeriver, PhaseView
from chat_core.orchestration.private_engine import PrivateStreamEngine
from chat_core.orchestration.server_engine import ServerStreamEngine
from chat_core.orchestration.status_machine import ChatStatus, ChatStatusMachine

T = TypeVar("T")

NavigateCallback = Callable[[str, Dict[str, Any]], None]

_ERROR_TITLES = {
    "send_message": "Failed to send message",
    "send_message_to_new_conversation": "Failed to start conversation",
    "retry_user_message": "Failed to retry message",
    "retry_assistant_message": "Failed to retry message",
    "edit_message": "Failed to edit message",
    "delete_message": "Failed to delete message",
    "stop_generation": "Failed to stop generation",
    "open_conversation": "Failed to load conversation",
    "save_private_conversation": "Failed to save conversation",
}


class ChatOrchestrator:
    def __init__(
        self,
        context: ChatContext,
        *,
        store: MessageStore,
        cancellation: CancellationController,
        private_engine: PrivateStreamEngine,
        server_engine: ServerStreamEngine,
        mode: ChatMode = "server",
        notifier: Optional[Notifier] = None,
        status: Optional[ChatStatusMachine] = None,
        phase: Optional[PhaseDeriver] = None,
        on_navigate: Optional[NavigateCallback] = None,
        on_error: Optional[Callable[[BusinessError], None]] = None,
        on_phase_change: Optional[Callable[[str], None]] = None,
    ):
        self._ctx = context
        self._store = store
        self._cancellation = cancellation
        self._engines: Mapping[str, ChatEngine] = {
            "private": private_engine,
            "server": server_engine,
        }
        self._server_engine = server_engine
        self._mode: ChatMode = mode
        self._notifier = notifier or LoggingNotifier()
        self._status = status or ChatStatusMachine()
        self._phase = phase or PhaseDeriver(on_change=on_phase_change)
        self._on_navigate = on_navigate
        self._on_error = on_error
        self._op_seq = 0
        self._unsubscribe = store.subscribe(self._phase.sync)

    # ---- 只读视图 ----

    @property
    def context(self) -> ChatContext:
        return self._ctx

    @property
    def mode(self) -> ChatMode:
        return self._mode

    @property
    def engine(self) -> ChatEngine:
        return self._engines[self._mode]

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._store.messages

    @property
    def status(self) -> ChatStatus:
        return self._status.status

    @property
    def status_machine(self) -> ChatStatusMachine:
        return self._status

    @property
    def is_streaming(self) -> bool:
        return self._store.active_assistant() is not None

    def phase_for(self, message_id: str) -> Optional[PhaseView]:
        msg = self._store.get(message_id)
        if msg is None:
            return None
        return self._phase.derive(msg)

    # ---- 发送 ----

    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        persona_id: Optional[str] = None,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> Optional[str]:
        """在当前会话中发送消息；服务端模式下会话不存在时自动创建，返回会话 id。"""

        self._apply_overrides(persona_id, reasoning_config)
        engine = self.engine
        return await self._run(
            "send_message",
            lambda on_first_delta: engine.send(
                self._ctx,
                content,
                attachments,
                on_first_delta=on_first_delta,
            ),
            preflight=lambda: validate_outgoing(self._ctx, content, attachments),
        )

    async def send_message_to_new_conversation(
        self,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        should_navigate: bool = True,
        persona_id: Optional[str] = None,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> Optional[str]:
        """清空当前视图并以 content 开启一个新会话。"""

        try:
            validate_outgoing(self._ctx, content, attachments)
        except ValidationError as exc:
            self._report("send_message_to_new_conversation", exc)
            return None
        await self._cancel_live("new_conversation")
        self._store.reset()
        self._ctx.conversation_id = None
        self._apply_overrides(persona_id, reasoning_config)
        engine = self.engine

        def created(conversation_id: str) -> None:
            if should_navigate:
                self._navigate("conversation", {"conversation_id": conversation_id})

        return await self._run(
            "send_message_to_new_conversation",
            lambda on_first_delta: engine.send(
                self._ctx,
                content,
                attachments,
                on_first_delta=on_first_delta,
                on_conversation_created=created,
            ),
        )

    # ---- 停止 / 重试 / 编辑 / 删除 ----

    async def stop_generation(self) -> bool:
        engine = self.engine
        if not engine.can_stop(self._ctx):
            return False
        self._status.stop()
        try:
            stopped = await engine.stop(self._ctx)
        except BusinessError as exc:
            self._report("stop_generation", exc)
            return False
        self._log(logging.INFO, "Generation stopped", stopped=stopped)
        return stopped

    async def retry_user_message(self, message_id: str) -> None:
        engine = self.engine
        await self._run(
            "retry_user_message",
            lambda on_first_delta: engine.retry_user(self._ctx, message_id, on_first_delta=on_first_delta),
            message_id=message_id,
        )

    async def retry_assistant_message(self, message_id: str) -> None:
        engine = self.engine
        await self._run(
            "retry_assistant_message",
            lambda on_first_delta: engine.retry_assistant(self._ctx, message_id, on_first_delta=on_first_delta),
            message_id=message_id,
        )

    async def edit_message(self, message_id: str, content: str) -> None:
        engine = self.engine
        await self._run(
            "edit_message",
            lambda on_first_delta: engine.edit(self._ctx, message_id, content, on_first_delta=on_first_delta),
            message_id=message_id,
        )

    async def delete_message(self, message_id: str) -> bool:
        try:
            deleted = await self.engine.delete(self._ctx, message_id)
        except BusinessError as exc:
            self._report("delete_message", exc)
            return False
        if deleted and self._status.status == "error":
            self._status.reset()
        return deleted

    # ---- 模式切换与会话管理 ----

    async def toggle_mode(self) -> ChatMode:
        """在私有 / 服务端模式间切换：先取消进行中的生成，保留内存中的对话记录。"""

        previous = self._mode
        await self._cancel_live("toggle_mode")
        target: ChatMode = "server" if previous == "private" else "private"
        self._mode = target
        self._status.reset()
        if target == "private":
            state = {"from_regular_mode": True, "conversation_id": self._ctx.conversation_id}
            self._ctx.conversation_id = None
            self._navigate("private", state)
        else:
            state = {"from_private_mode": True, "message_count": len(self._store)}
            self._ctx.conversation_id = None
            self._navigate("home", state)
        self._log(logging.INFO, "Chat mode toggled", previous=previous, mode=target)
        return target

    async def open_conversation(self, conversation_id: str) -> None:
        """进入服务端会话：加载消息，必要时自动续流。"""

        if self._mode != "server":
            await self._cancel_live("open_conversation")
            self._mode = "server"
        engine = self._server_engine
        await self._run(
            "open_conversation",
            lambda on_first_delta: engine.open_conversation(
                self._ctx, conversation_id, on_first_delta=on_first_delta
            ),
        )

    async def save_private_conversation(self) -> Optional[str]:
        """把私有模式的对话保存到服务端并切换到该会话。"""

        if self._mode != "private":
            return None
        await self._cancel_live("save_private_conversation")
        try:
            conversation_id = await self._server_engine.save_private_conversation(self._ctx, self._store.messages)
            self._mode = "server"
            self._ctx.conversation_id = conversation_id
            await self._server_engine.refresh(self._ctx)
        except BusinessError as exc:
            self._report("save_private_conversation", exc)
            return None
        self._status.reset()
        self._notifier.success("Conversation saved", key=f"saved-{conversation_id}")
        self._navigate("conversation", {"conversation_id": conversation_id})
        return conversation_id

    def close(self) -> None:
        """会话结束（退出登录 / 离开页面）时释放令牌、定时器与清理任务。"""

        self._cancellation.cancel_all()
        self._unsubscribe()
        self._phase.close()
        self._store.close()
        self._ctx.close()

    # ---- 内部 ----

    async def _run(
        self,
        operation: str,
        call: Callable[[FirstDeltaCallback], Awaitable[T]],
        *,
        message_id: Optional[str] = None,
        preflight: Optional[Callable[[], Any]] = None,
    ) -> Optional[T]:
        if preflight is not None:
            try:
                preflight()
            except ValidationError as exc:
                self._report(operation, exc)
                return None

        self._op_seq += 1
        seq = self._op_seq
        self._status.send(message_id)

        def on_first_delta() -> None:
            if seq == self._op_seq:
                self._status.start_streaming()

        try:
            result = await call(on_first_delta)
        except ValidationError as exc:
            if seq == self._op_seq:
                self._status.reset()
            self._report(operation, exc)
            return None
        except BusinessError as exc:
            if seq == self._op_seq:
                self._status.fail(exc)
            self._report(operation, exc)
            return None
        except asyncio.CancelledError:
            if seq == self._op_seq:
                self._status.stop()
            self._log(logging.INFO, "Chat operation cancelled", operation=operation)
            raise
        except Exception as exc:
            if seq == self._op_seq:
                self._status.fail(exc)
            self._log(logging.ERROR, "Chat operation crashed", operation=operation, error=repr(exc))
            raise
        if seq == self._op_seq:
            self._status.end_streaming()
        return result

    async def _cancel_live(self, reason: str) -> None:
        engine = self.engine
        if not engine.can_stop(self._ctx):
            return
        try:
            await engine.stop(self._ctx)
        except BusinessError as exc:
            self._report("stop_generation", exc)
        self._log(logging.INFO, "Cancelled live generation", reason=reason)

    def _apply_overrides(self, persona_id: Optional[str], reasoning_config: Optional[ReasoningConfig]) -> None:
        if persona_id is not None:
            self._ctx.persona_id = persona_id
        if reasoning_config is not None:
            self._ctx.reasoning_config = reasoning_config

    def _navigate(self, route: str, state: Dict[str, Any]) -> None:
        if self._on_navigate is not None:
            self._on_navigate(route, state)

    def _report(self, operation: str, exc: BusinessError) -> None:
        self._log(logging.WARNING, "Chat operation failed", operation=operation, code=exc.code, error=exc.message)
        self._notifier.error(
            _ERROR_TITLES.get(operation, "Something went wrong"),
            key=f"{operation}-{exc.code}",
            description=exc.message,
        )
        if self._on_error is not None:
            self._on_error(exc)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "mode": self._mode,
            "session_id": self._ctx.session_id,
            "conversation_id": self._ctx.conversation_id,
        }
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
