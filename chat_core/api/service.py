"""对外装配入口。

按配置组装 ChatOrchestrator 与 BackgroundJobTracker，供上层 UI 调用。
每次调用都创建新的实例（按会话隔离），不保留模块级单例。
"""

from typing import Any, Callable, Dict, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ChatBackend, ChatMode
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.jobs import JobBackend
from chat_core.domain.models import ModelSelection
from chat_core.infrastructure.remote.http_backend import HttpChatBackend
from chat_core.orchestration.background_jobs import BackgroundJobTracker
from chat_core.orchestration.cancellation import CancellationController
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.message_store import MessageStore
from chat_core.orchestration.notifier import Notifier
from chat_core.orchestration.orchestrator import ChatOrchestrator
from chat_core.orchestration.private_engine import PrivateStreamEngine, ProviderFactory
from chat_core.orchestration.server_engine import ServerStreamEngine
from chat_core.providers import create_provider
from chat_core.providers.credentials import KeyStore
from chat_core.providers.registry import resolve_model


def default_context(cfg=settings) -> ChatContext:
    """以配置中的默认 provider / model 创建会话上下文。"""

    model_cfg = resolve_model(cfg.default_provider, cfg.default_model)
    return ChatContext(
        selected_model=ModelSelection(
            model_id=model_cfg.model_id,
            provider=cfg.default_provider,
            supports_reasoning=model_cfg.supports_reasoning,
        ),
        locale=cfg.prompt_locale,
    )


def build_orchestrator(
    mode: ChatMode = "server",
    context: Optional[ChatContext] = None,
    *,
    backend: Optional[ChatBackend] = None,
    key_store: Optional[KeyStore] = None,
    provider_factory: ProviderFactory = create_provider,
    notifier: Optional[Notifier] = None,
    on_navigate: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    on_error: Optional[Callable[[BusinessError], None]] = None,
    cfg=settings,
) -> ChatOrchestrator:
    """组装一个完整的编排器（共享 MessageStore 与 CancellationController）。"""

    store = MessageStore(cfg=cfg)
    cancellation = CancellationController()
    private_engine = PrivateStreamEngine(
        store,
        cancellation,
        key_store=key_store,
        provider_factory=provider_factory,
        cfg=cfg,
    )
    server_engine = ServerStreamEngine(store, cancellation, backend or HttpChatBackend(cfg), cfg=cfg)
    return ChatOrchestrator(
        context or default_context(cfg),
        store=store,
        cancellation=cancellation,
        private_engine=private_engine,
        server_engine=server_engine,
        mode=mode,
        notifier=notifier,
        on_navigate=on_navigate,
        on_error=on_error,
    )


def build_job_tracker(
    backend: Optional[JobBackend] = None,
    *,
    notifier: Optional[Notifier] = None,
    on_invalidate: Optional[Callable[[str], None]] = None,
    cfg=settings,
) -> BackgroundJobTracker:
    return BackgroundJobTracker(
        backend or HttpChatBackend(cfg),
        notifier=notifier,
        on_invalidate=on_invalidate,
        cfg=cfg,
    )
