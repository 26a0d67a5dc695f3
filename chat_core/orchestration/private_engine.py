"""私有模式生成引擎：客户端直连模型 Provider 完成整个生成回合。

流程：
1. 发送前校验（内容、匿名限制、模型、密钥），失败时不产生任何乐观消息；
2. 追加用户消息与助手占位消息（status="thinking"）；
3. 拼接人设提示词 + 默认系统提示词，裁剪历史后打开 Provider 流；
4. 逐个应用增量：推理增量写入 reasoning，正文增量写入 content；
   每个增量应用前都检查取消令牌；
5. 正常结束写入 done；用户停止写入 stopped（不是错误，保留已生成内容）；
   流中途出错则删除占位消息，并抛出 TransportError。
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, TransportError, ValidationError
from chat_core.domain.messages import Attachment, Message
from chat_core.domain.models import ChatMessage, ChatRequest, ChatStreamChunk, ModelSelection
from chat_core.infrastructure.logging.logger import logger
from chat_core.orchestration.cancellation import CancellationController, CancellationToken
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
from chat_core.prompts import load_system_prompt
from chat_core.providers import create_provider
from chat_core.providers.base import ProviderClient
from chat_core.providers.credentials import KeyStore, SettingsKeyStore

ProviderFactory = Callable[..., ProviderClient]


class PrivateStreamEngine:
    mode = "private"

    def __init__(
        self,
        store: MessageStore,
        cancellation: CancellationController,
        key_store: Optional[KeyStore] = None,
        provider_factory: ProviderFactory = create_provider,
        cfg=settings,
    ):
        self._store = store
        self._cancellation = cancellation
        self._settings = cfg
        self._key_store = key_store or SettingsKeyStore(cfg)
        self._provider_factory = provider_factory
        self._sessions: Dict[str, StreamSession] = {}
        self._pending: Dict[str, CancellationToken] = {}

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
        pending, provider = await self._prepare(ctx, model)
        user = Message(id=new_message_id(), role="user", content=content, attachments=list(attachments))
        self._store.append(user)
        if self._abandoned(ctx, pending, model):
            return None
        await self._generate(ctx, model, provider, on_first_delta)
        return None

    async def retry_user(self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop) -> None:
        require_message(self._store, message_id, role="user")
        model, pending, provider = await self._preflight(ctx)
        if self._abandoned(ctx, pending, model):
            return
        self._store.truncate_after(message_id)
        await self._generate(ctx, model, provider, on_first_delta)

    async def retry_assistant(
        self, ctx: ChatContext, message_id: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        require_message(self._store, message_id, role="assistant")
        require_user_before(self._store, message_id)
        model, pending, provider = await self._preflight(ctx)
        if self._abandoned(ctx, pending, model):
            return
        self._store.truncate_from(message_id)
        await self._generate(ctx, model, provider, on_first_delta)

    async def edit(
        self, ctx: ChatContext, message_id: str, content: str, *, on_first_delta: FirstDeltaCallback = _noop
    ) -> None:
        require_message(self._store, message_id, role="user")
        if not (content or "").strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Message cannot be empty")
        model, pending, provider = await self._preflight(ctx)
        if self._abandoned(ctx, pending, model):
            return
        self._store.patch(message_id, {"content": content})
        self._store.truncate_after(message_id)
        await self._generate(ctx, model, provider, on_first_delta)

    async def delete(self, ctx: ChatContext, message_id: str) -> bool:
        session = self._sessions.get(ctx.stream_key)
        if session is not None and session.message_id == message_id:
            await self.stop(ctx)
        return self._store.remove(message_id)

    def can_stop(self, ctx: ChatContext) -> bool:
        session = self._sessions.get(ctx.stream_key)
        if session is not None:
            return not session.token.cancelled
        pending = self._pending.get(ctx.stream_key)
        return pending is not None and not pending.cancelled

    async def stop(self, ctx: ChatContext) -> bool:
        """停止当前生成；在返回前 store 中的消息已是 stopped。

        密钥解析期间还没有占位消息，此时只记下停止请求，解析完成后不再开始生成。
        """

        session = self._sessions.get(ctx.stream_key)
        if session is None:
            pending = self._pending.get(ctx.stream_key)
            if pending is None:
                return False
            return pending.cancel()
        if session.token.cancelled:
            return False
        self._cancellation.signal(session.token)
        self._store.patch(
            session.message_id,
            {"status": "stopped", "metadata": {"stopped_by_user": True, "finish_reason": "stop"}},
        )
        return True

    # ---- 内部流程 ----

    async def _preflight(self, ctx: ChatContext):
        model = require_model(ctx)
        require_can_send(ctx)
        pending, provider = await self._prepare(ctx, model)
        return model, pending, provider

    async def _prepare(self, ctx: ChatContext, model: ModelSelection) -> Tuple[CancellationToken, ProviderClient]:
        """解析密钥并创建 Provider；期间发放一个待定令牌供 stop 使用。"""

        pending = CancellationToken(ctx.stream_key)
        self._pending[ctx.stream_key] = pending
        try:
            api_key = await self._resolve_credential(model)
            provider = self._open_provider(model, api_key)
        finally:
            if self._pending.get(ctx.stream_key) is pending:
                del self._pending[ctx.stream_key]
        return pending, provider

    async def _resolve_credential(self, model: ModelSelection) -> str:
        api_key = await self._key_store.get_api_key(model.provider, model.model_id)
        if not api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"No API key configured for {model.provider}",
                provider=model.provider,
            )
        return api_key

    def _open_provider(self, model: ModelSelection, api_key: str) -> ProviderClient:
        try:
            return self._provider_factory(model.provider, api_key=api_key, cfg=self._settings)
        except KeyError as exc:
            raise ValidationError(
                code="UNSUPPORTED_PROVIDER",
                message=f"Provider {model.provider} is not supported",
                provider=model.provider,
            ) from exc

    def _abandoned(self, ctx: ChatContext, pending: CancellationToken, model: ModelSelection) -> bool:
        if not (pending.cancelled or ctx.closed):
            return False
        logger.log(
            logging.INFO,
            "Private stream cancelled before start",
            extra={"extra": {"mode": self.mode, "provider": model.provider, "model": model.model_id}},
        )
        return True

    async def _generate(
        self,
        ctx: ChatContext,
        model: ModelSelection,
        provider: ProviderClient,
        on_first_delta: FirstDeltaCallback,
    ) -> None:
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "mode": self.mode,
            "provider": model.provider,
            "model": model.model_id,
        }
        history = self._build_history()
        request = self._build_request(ctx, model, history)
        token = self._cancellation.begin(ctx.stream_key)
        assistant = Message(
            id=new_message_id(),
            role="assistant",
            status="thinking",
            model=model.model_id,
            provider=model.provider,
        )
        self._store.append(assistant)
        session = StreamSession(key=ctx.stream_key, token=token, message_id=assistant.id)
        self._sessions[session.key] = session
        log_ctx["message_id"] = assistant.id

        reader: Optional[asyncio.Future] = None
        try:
            self._log(logging.INFO, "Private stream started", log_ctx, history=len(history))
            reader = asyncio.ensure_future(self._pump(provider, request, session, on_first_delta))
            # 传输层中止只是优化：令牌被取消时同时取消读取任务
            token.add_callback(reader.cancel)
            await reader
        except asyncio.CancelledError:
            if token.cancelled and reader is not None and reader.cancelled():
                self._log(logging.INFO, "Private stream aborted", log_ctx, chars=len(session.content))
                return
            if not token.cancelled:
                # 外部取消（如任务被取消）：先收尾占位消息再向上传播
                self._cancellation.signal(token)
                self._store.patch(assistant.id, {"status": "stopped", "metadata": {"finish_reason": "cancelled"}})
            self._log(logging.INFO, "Private stream cancelled", log_ctx, chars=len(session.content))
            raise
        except BusinessError as exc:
            if token.cancelled:
                self._log(logging.INFO, "Ignored error after cancellation", log_ctx, error=exc.code)
                return
            self._store.remove(assistant.id)
            self._log(logging.ERROR, "Private stream failed", log_ctx, error=exc.code, detail=exc.message)
            raise
        except Exception as exc:
            if token.cancelled:
                self._log(logging.INFO, "Ignored error after cancellation", log_ctx, error=repr(exc))
                return
            self._store.remove(assistant.id)
            self._log(logging.ERROR, "Private stream failed", log_ctx, error=repr(exc))
            raise TransportError(code="STREAM_ERROR", message=str(exc) or exc.__class__.__name__) from exc
        else:
            if token.cancelled:
                self._log(logging.INFO, "Private stream stopped", log_ctx, chars=len(session.content))
                return
            self._finalize(session)
            self._log(
                logging.INFO,
                "Private stream finished",
                log_ctx,
                finish_reason=session.finish_reason,
                chars=len(session.content),
            )
        finally:
            self._cancellation.finish(token)
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]

    async def _pump(
        self,
        provider: ProviderClient,
        request: ChatRequest,
        session: StreamSession,
        on_first_delta: FirstDeltaCallback,
    ) -> None:
        stream = provider.chat_stream(request)
        async with aclosing(stream):
            async for chunk in stream:
                # 令牌是唯一可信的取消依据，传输层可能在取消后继续投递数据
                if session.token.cancelled:
                    break
                self._apply_chunk(session, chunk, on_first_delta)

    def _apply_chunk(self, session: StreamSession, chunk: ChatStreamChunk, on_first_delta: FirstDeltaCallback) -> None:
        if chunk.usage is not None:
            session.usage = chunk.usage
        for choice in chunk.choices[:1]:
            delta = choice.delta
            changes: Dict[str, Any] = {}
            if delta.reasoning:
                session.reasoning += delta.reasoning
                changes["reasoning"] = session.reasoning
                if not session.content:
                    changes["status"] = "thinking"
            if delta.citations:
                session.citations.extend(delta.citations)
                changes["citations"] = list(session.citations)
            if delta.content:
                session.content += delta.content
                changes["content"] = session.content
                changes["status"] = "streaming"
            if choice.finish_reason:
                session.finish_reason = choice.finish_reason
            if changes:
                session.mark_started(on_first_delta)
                self._store.patch(session.message_id, changes)

    def _finalize(self, session: StreamSession) -> None:
        metadata: Dict[str, Any] = {"finish_reason": session.finish_reason or "stop"}
        if session.usage is not None:
            metadata.update(
                prompt_tokens=session.usage.prompt_tokens,
                completion_tokens=session.usage.completion_tokens,
                total_tokens=session.usage.total_tokens,
            )
        self._store.patch(session.message_id, {"status": "done", "metadata": metadata})

    def _build_history(self) -> List[ChatMessage]:
        history: List[ChatMessage] = []
        for msg in self._store.messages:
            if msg.role in ("context", "system"):
                continue
            if msg.role == "assistant" and not msg.content.strip():
                continue
            history.append(ChatMessage(role=msg.role, content=self._render_content(msg)))
        max_context = getattr(self._settings, "max_context_messages", 20)
        if len(history) > max_context:
            history = history[-max_context:]
        return history

    @staticmethod
    def _render_content(msg: Message) -> str:
        parts = [msg.content] if msg.content else []
        for att in msg.attachments:
            if att.type == "text" and att.content:
                parts.append(f"[{att.name}]\n{att.content}")
        return "\n\n".join(parts)

    def _build_request(self, ctx: ChatContext, model: ModelSelection, history: List[ChatMessage]) -> ChatRequest:
        system: List[ChatMessage] = []
        if ctx.persona_prompt:
            system.append(ChatMessage(role="system", content=ctx.persona_prompt))
        locale = ctx.locale or getattr(self._settings, "prompt_locale", "zh")
        system.append(ChatMessage(role="system", content=load_system_prompt(locale)))
        reasoning = ctx.reasoning_config if model.supports_reasoning else None
        return ChatRequest(
            provider=model.provider,
            model=model.model_id,
            messages=system + history,
            temperature=ctx.temperature,
            reasoning=reasoning,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
