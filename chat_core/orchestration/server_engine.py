"""服务端模式生成引擎：生成由远端服务完成，客户端只发起请求并观察会话文档。

远端的消息列表是唯一事实来源。引擎负责：
- 发送时追加乐观的用户消息与助手占位消息，直到该回合的第一条权威行出现；
- 每次观察到新快照时（先检查取消令牌）用 MessageStore.merge_authoritative 对账；
- 停止时“双重标记”：本地立即标记 stopped，同时向服务端发送停止请求，
  之后到达的服务端确认按终态优先级合并，不会把 stopped 改回 streaming/done。
"""

import logging
from contextlib import aclosing
from typing import Any, Dict, Optional, Sequence
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatBackend, Conversation, ConversationSnapshot
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.messages import Attachment, Message
from chat_core.domain.models import ModelSelection
from chat_core.infrastructure.logging.logger import logger
from chat_core.orchestration.cancellation import CancellationController
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.engine import (
    ConversationCreatedCallback,
    FirstDeltaCallback,
    StreamSession,
    _noop,
    new_message_id,
    require_can_send,
    require_message,
    require_model,
    require_user_before,
    validate_outgoing,
)
from chat_core.orchestration.message_store import MessageStore


class ServerStreamEngine:
    mode = "server"

    def __init__(
        self,
        store: MessageStore,
        cancellation: CancellationController,
        backend: ChatBackend,
        cfg=settings,
    ):
        self._store = store
        self._cancellation = cancellation
        self._backend = backend
        self._settle_polls = getattr(cfg, "server_settle_polls", 3)
        self._sessions: Dict[str, StreamSession] = {}

    @property
    def backend(self) -> ChatBackend:
        return self._backend

    # ---- 公共操作 ----

    async def send(
        self,
        ctx: ChatContext,
        content: str,
        attachments: Sequence[Attachment] = (),
        *,
        on_first_delta: FirstDeltaCallback = _noop,
        on_conversation_created: Optional[ConversationCreatedCallback] = None,
    ) -> Optional[str]:
        model = validate_outgoing(ctx, content, attachments)
        user = Message(
            id=new_message_id(),
            role="user",
            content=content,
            attachments=list(attachments),
            optimistic=True,
        )
        self._store.append(user)
        session = self._open_session(ctx, model)
        log_ctx = self._log_ctx(ctx, session)

        try:
            if ctx.conversation_id is None:
                created = True
                conversation_id = await self._backend.create_conversation(
                    content,
                    model=model.model_id,
                    provider=model.provider,
                    persona_id=ctx.persona_id,
                    attachments=attachments,
                    reasoning_config=ctx.reasoning_config,
                )
                ctx.conversation_id = conversation_id
                log_ctx["conversation_id"] = conversation_id
                self._log(logging.INFO, "Created conversation", log_ctx)
                if on_conversation_created is not None:
                    on_conversation_created(conversation_id)
            else:
                created = False
                await self._backend.send_follow_up_message(
                    ctx.conversation_id,
                    content,
                    model=model.model_id,
                    provider=model.provider,
                    attachments=attachments,
                    reasoning_config=ctx.reasoning_config,
                )
        except BusinessError as exc:
            self._abandon(session, exc, log_ctx)
            raise

        if created and session.token.cancelled and ctx.conversation_id is not None:
            # 创建请求期间已被停止：当时还没有会话 id，停止请求在此补发
            await self._backend.stop_generation(ctx.conversation_id)
            self._close_session(session)
            await self.refresh(ctx)
            return ctx.conversation_id
        await self._observe(ctx, session, on_first_delta, log_ctx)
        return ctx.conversation_id

    async def retry_user(self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop) -> None:
        conversation_id, model = self._preflight(ctx)
        self._require_synced(message_id, role="user")
        self._cancellation.cancel(ctx.stream_key)
        self._store.truncate_after(message_id)
        await self._regenerate(
            ctx,
            model,
            lambda: self._backend.retry_from_message(
                conversation_id,
                message_id,
                "user",
                model=model.model_id,
                provider=model.provider,
                reasoning_config=ctx.reasoning_config,
            ),
            on_first_delta,
        )

    async def retry_assistant(
        self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        conversation_id, model = self._preflight(ctx)
        self._require_synced(message_id, role="assistant")
        require_user_before(self._store, message_id)
        self._cancellation.cancel(ctx.stream_key)
        self._store.truncate_from(message_id)
        await self._regenerate(
            ctx,
            model,
            lambda: self._backend.retry_from_message(
                conversation_id,
                message_id,
                "assistant",
                model=model.model_id,
                provider=model.provider,
                reasoning_config=ctx.reasoning_config,
            ),
            on_first_delta,
        )

    async def edit(
        self, ctx: ChatContext, message_id: str, content: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        if not (content or "").strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Message cannot be empty")
        conversation_id, model = self._preflight(ctx)
        self._require_synced(message_id, role="user")
        self._cancellation.cancel(ctx.stream_key)
        self._store.patch(message_id, {"content": content})
        self._store.truncate_after(message_id)
        await self._regenerate(
            ctx,
            model,
            lambda: self._backend.edit_message(
                conversation_id,
                message_id,
                content,
                model=model.model_id,
                provider=model.provider,
                reasoning_config=ctx.reasoning_config,
            ),
            on_first_delta,
        )

    async def delete(self, ctx: ChatContext, message_id: str) -> bool:
        msg = self._store.get(message_id)
        if msg is None:
            return False
        if msg.role == "assistant" and msg.is_active:
            await self.stop(ctx)
        self._store.remove(message_id)
        if msg.optimistic:
            return True
        try:
            await self._backend.delete_message(message_id)
        except BusinessError:
            # 允许下一次刷新把消息恢复回来
            self._store.forget_tombstone(message_id)
            raise
        return True

    def can_stop(self, ctx: ChatContext) -> bool:
        session = self._sessions.get(ctx.stream_key)
        if session is not None and not session.token.cancelled:
            return True
        return self._store.active_assistant() is not None

    async def stop(self, ctx: ChatContext) -> bool:
        if not self.can_stop(ctx):
            return False
        session = self._sessions.get(ctx.stream_key)
        if session is not None:
            self._cancellation.signal(session.token)
        active = self._store.active_assistant()
        if active is not None:
            self._store.patch(
                active.id,
                {"status": "stopped", "metadata": {"stopped_by_user": True, "finish_reason": "stop"}},
            )
        if ctx.conversation_id is None:
            return True
        await self._backend.stop_generation(ctx.conversation_id)
        await self.refresh(ctx)
        return True

    async def refresh(self, ctx: ChatContext) -> Optional[ConversationSnapshot]:
        """拉取一次权威快照并对账。"""

        if ctx.conversation_id is None:
            return None
        snapshot = await self._backend.get_conversation(ctx.conversation_id)
        self._store.merge_authoritative(snapshot.messages)
        return snapshot

    async def open_conversation(
        self,
        ctx: ChatContext,
        conversation_id: str,
        *,
        on_first_delta: FirstDeltaCallback = _noop,
    ) -> Conversation:
        """加载会话并自动续流：服务端仍在生成则继续观察；最后一条是未回复的用户消息则请求续写。"""

        self._cancellation.cancel(ctx.stream_key)
        ctx.conversation_id = conversation_id
        snapshot = await self._backend.get_conversation(conversation_id)
        self._store.reset(snapshot.messages)
        last = snapshot.messages[-1] if snapshot.messages else None

        if snapshot.is_streaming:
            active = self._store.active_assistant()
            token = self._cancellation.begin(ctx.stream_key)
            session = StreamSession(key=ctx.stream_key, token=token, message_id=active.id if active else "")
            self._sessions[session.key] = session
            log_ctx = self._log_ctx(ctx, session)
            self._log(logging.INFO, "Resuming observation of streaming conversation", log_ctx)
            await self._observe(ctx, session, on_first_delta, log_ctx)
        elif last is not None and last.role == "user" and ctx.selected_model is not None and ctx.can_send_message:
            model = ctx.selected_model
            await self._regenerate(
                ctx,
                model,
                lambda: self._backend.resume_conversation(
                    conversation_id,
                    model=model.model_id,
                    provider=model.provider,
                    reasoning_config=ctx.reasoning_config,
                ),
                on_first_delta,
            )
        return snapshot.conversation

    async def save_private_conversation(self, ctx: ChatContext, messages: Sequence[Message]) -> str:
        """把私有模式的对话保存到服务端，返回新会话 id。"""

        kept = [
            m
            for m in messages
            if m.role in ("user", "assistant")
            and (m.content.strip() or m.attachments)
            and not m.is_active
        ]
        if not kept:
            raise ValidationError(code="EMPTY_CONVERSATION", message="Nothing to save")
        title = next((m.content.strip()[:60] for m in kept if m.role == "user" and m.content.strip()), None)
        return await self._backend.save_private_conversation(kept, persona_id=ctx.persona_id, title=title)

    # ---- 内部流程 ----

    def _preflight(self, ctx: ChatContext):
        model = require_model(ctx)
        require_can_send(ctx)
        if ctx.conversation_id is None:
            raise ValidationError(code="NO_CONVERSATION", message="No active conversation")
        return ctx.conversation_id, model

    def _require_synced(self, message_id: str, role: str) -> Message:
        msg = require_message(self._store, message_id, role=role)  # type: ignore[arg-type]
        if msg.optimistic:
            raise ValidationError(
                code="INVALID_RETRY_TARGET",
                message="Message has not been saved yet",
                message_id=message_id,
            )
        return msg

    def _open_session(self, ctx: ChatContext, model: ModelSelection) -> StreamSession:
        token = self._cancellation.begin(ctx.stream_key)
        placeholder = Message(
            id=new_message_id(),
            role="assistant",
            status="thinking",
            model=model.model_id,
            provider=model.provider,
            optimistic=True,
        )
        self._store.append(placeholder)
        session = StreamSession(key=ctx.stream_key, token=token, message_id=placeholder.id)
        self._sessions[session.key] = session
        return session

    async def _regenerate(self, ctx, model: ModelSelection, request, on_first_delta: FirstDeltaCallback) -> None:
        session = self._open_session(ctx, model)
        log_ctx = self._log_ctx(ctx, session)
        try:
            await request()
        except BusinessError as exc:
            self._abandon(session, exc, log_ctx)
            raise
        await self._observe(ctx, session, on_first_delta, log_ctx)

    async def _observe(
        self,
        ctx: ChatContext,
        session: StreamSession,
        on_first_delta: FirstDeltaCallback,
        log_ctx: Dict[str, Any],
    ) -> None:
        conversation_id = ctx.conversation_id
        if conversation_id is None or session.token.cancelled:
            self._close_session(session)
            return

        idle_polls = 0
        try:
            snapshots = self._backend.watch_conversation(conversation_id)
            async with aclosing(snapshots):
                async for snapshot in snapshots:
                    if session.token.cancelled:
                        break
                    self._store.merge_authoritative(snapshot.messages)
                    latest = self._latest_assistant()
                    if latest is not None and (latest.content or latest.reasoning):
                        session.mark_started(on_first_delta)
                    if snapshot.is_streaming:
                        idle_polls = 0
                        continue
                    pending = self._pending_placeholder(session)
                    if pending is None and (latest is None or not latest.is_active):
                        break
                    idle_polls += 1
                    if idle_polls >= self._settle_polls:
                        if pending is not None:
                            self._store.patch(
                                pending.id,
                                {
                                    "status": "error",
                                    "optimistic": False,
                                    "metadata": {"error": "The server did not start a response"},
                                },
                            )
                        self._log(logging.WARNING, "Observation settled without a response", log_ctx)
                        break
        except BusinessError as exc:
            if not session.token.cancelled:
                self._abandon(session, exc, log_ctx)
                raise
        finally:
            self._close_session(session)
        self._log(logging.INFO, "Observation finished", log_ctx, stopped=session.token.cancelled)

    def _latest_assistant(self) -> Optional[Message]:
        for msg in reversed(self._store.messages):
            if msg.role == "assistant":
                return msg
        return None

    def _pending_placeholder(self, session: StreamSession) -> Optional[Message]:
        msg = self._store.get(session.message_id)
        if msg is not None and msg.optimistic:
            return msg
        return None

    def _abandon(self, session: StreamSession, exc: BusinessError, log_ctx: Dict[str, Any]) -> None:
        """请求失败：占位消息标记为 error，其余乐观状态保持不动，由调用方对账。"""

        self._store.patch(
            session.message_id,
            {"status": "error", "optimistic": False, "metadata": {"error": exc.message}},
        )
        self._log(logging.ERROR, "Server request failed", log_ctx, error=exc.code, detail=exc.message)
        self._close_session(session)

    def _close_session(self, session: StreamSession) -> None:
        self._cancellation.finish(session.token)
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]

    @staticmethod
    def _log_ctx(ctx: ChatContext, session: StreamSession) -> Dict[str, Any]:
        return {
            "trace_id": f"tr-{uuid4().hex}",
            "mode": "server",
            "conversation_id": ctx.conversation_id,
            "message_id": session.message_id,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
