import asyncio
from typing import Any, Dict, List, Optional

import pytest

from chat_core.domain.conversation import Conversation, ConversationSnapshot
from chat_core.domain.models import ChatStreamChoice, ChatStreamChunk, ChatStreamDelta, ChatUsage, ModelSelection
from chat_core.orchestration.cancellation import CancellationController
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.message_store import MessageStore
from chat_core.orchestration.orchestrator import ChatOrchestrator
from chat_core.orchestration.phase import PhaseDeriver
from chat_core.orchestration.private_engine import PrivateStreamEngine
from chat_core.orchestration.server_engine import ServerStreamEngine


class SettingsStub:
    glm_api_key = "glm-test-key"
    kimi_api_key = None
    glm_base_url = "https://open.bigmodel.cn/api/paas/v4"
    kimi_base_url = "https://api.moonshot.cn/v1"
    http_timeout = 1.0
    default_provider = "glm"
    default_model = "glm-4.6"
    max_context_messages = 20
    prompt_locale = "zh"
    backend_base_url = "http://backend.test/api"
    backend_token = "tok"
    poll_interval = 0.0
    job_poll_interval = 0.01
    server_settle_polls = 2
    phase_debounce_seconds = 0.2
    tombstone_ttl = 30.0
    store_cleanup_interval = 10.0
    max_tombstones = 500


class RecordingNotifier:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def success(self, title, *, key=None, description=None):
        self.events.append({"kind": "success", "title": title, "key": key, "description": description})

    def error(self, title, *, key=None, description=None):
        self.events.append({"kind": "error", "title": title, "key": key, "description": description})

    def info(self, title, *, key=None, description=None):
        self.events.append({"kind": "info", "title": title, "key": key, "description": description})

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["kind"] == kind]


def content_chunk(text: str, finish_reason: Optional[str] = None) -> ChatStreamChunk:
    return ChatStreamChunk(
        provider="glm",
        model="glm-4.6",
        choices=[ChatStreamChoice(index=0, delta=ChatStreamDelta(content=text), finish_reason=finish_reason)],
    )


def reasoning_chunk(text: str) -> ChatStreamChunk:
    return ChatStreamChunk(
        provider="glm",
        model="glm-4.6",
        choices=[ChatStreamChoice(index=0, delta=ChatStreamDelta(reasoning=text))],
    )


def finish_chunk(reason: str = "stop", usage: Optional[ChatUsage] = None) -> ChatStreamChunk:
    return ChatStreamChunk(
        provider="glm",
        model="glm-4.6",
        choices=[ChatStreamChoice(index=0, delta=ChatStreamDelta(), finish_reason=reason)],
        usage=usage,
    )


class ScriptedProvider:
    """按脚本产出增量；脚本项为 ChatStreamChunk、Exception 或 asyncio.Event（等待该事件）。"""

    name = "glm"

    def __init__(self, script):
        self.script = list(script)
        self.requests = []
        self.closed = False

    async def chat_stream(self, req):
        self.requests.append(req)
        try:
            for item in self.script:
                if isinstance(item, asyncio.Event):
                    await item.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
                    await asyncio.sleep(0)
        finally:
            self.closed = True


class StaticKeyStore:
    def __init__(self, key: Optional[str] = "sk-test-0000"):
        self.key = key

    async def get_api_key(self, provider, model_id):
        return self.key


class GatedKeyStore(StaticKeyStore):
    """密钥解析阻塞在 gate 上，用于模拟解密等慢速解析。"""

    def __init__(self, key: Optional[str] = "sk-test-0000"):
        super().__init__(key)
        self.gate = asyncio.Event()
        self.waiting = False

    async def get_api_key(self, provider, model_id):
        self.waiting = True
        await self.gate.wait()
        return self.key


class FakeBackend:
    """服务端后端替身：snapshots 按顺序被 watch_conversation 产出。"""

    def __init__(self, snapshots=None, conversation_id="c1"):
        self.snapshots: List[ConversationSnapshot] = list(snapshots or [])
        self.final: Optional[ConversationSnapshot] = None
        self.conversation_id = conversation_id
        self.calls: List[tuple] = []
        self.fail_with: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.hold: Optional[asyncio.Event] = None

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.fail_with:
            raise self.fail_with[name]

    def call_names(self):
        return [c[0] for c in self.calls]

    async def create_conversation(self, first_message, **kwargs):
        self._record("create_conversation", first_message, **kwargs)
        if self.gate is not None:
            await self.gate.wait()
        return self.conversation_id

    async def send_follow_up_message(self, conversation_id, content, **kwargs):
        self._record("send_follow_up_message", conversation_id, content, **kwargs)

    async def retry_from_message(self, conversation_id, message_id, retry_type, **kwargs):
        self._record("retry_from_message", conversation_id, message_id, retry_type, **kwargs)

    async def edit_message(self, conversation_id, message_id, new_content, **kwargs):
        self._record("edit_message", conversation_id, message_id, new_content, **kwargs)

    async def resume_conversation(self, conversation_id, **kwargs):
        self._record("resume_conversation", conversation_id, **kwargs)

    async def stop_generation(self, conversation_id):
        self._record("stop_generation", conversation_id)

    async def delete_message(self, message_id):
        self._record("delete_message", message_id)

    async def get_conversation(self, conversation_id):
        self._record("get_conversation", conversation_id)
        if self.final is not None:
            return self.final
        if self.snapshots:
            return self.snapshots[-1]
        return ConversationSnapshot(conversation=Conversation(id=conversation_id))

    async def watch_conversation(self, conversation_id):
        for snapshot in self.snapshots:
            yield snapshot
            await asyncio.sleep(0)
        if self.hold is not None:
            await self.hold.wait()
        # 脚本耗尽后保持“未在生成”的最后状态，交给引擎的收敛逻辑结束观察
        last = self.snapshots[-1] if self.snapshots else ConversationSnapshot(conversation=Conversation(id=conversation_id))
        idle = ConversationSnapshot(
            conversation=Conversation(id=conversation_id, is_streaming=False),
            messages=last.messages,
        )
        while True:
            yield idle
            await asyncio.sleep(0)

    async def save_private_conversation(self, messages, **kwargs):
        self._record("save_private_conversation", list(messages), **kwargs)
        return self.conversation_id


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def snapshot(messages, streaming=False, conversation_id="c1") -> ConversationSnapshot:
    return ConversationSnapshot(
        conversation=Conversation(id=conversation_id, is_streaming=streaming),
        messages=list(messages),
    )


@pytest.fixture
def cfg():
    return SettingsStub()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def context():
    return ChatContext(selected_model=ModelSelection(model_id="glm-4.6", provider="glm", supports_reasoning=True))


@pytest.fixture
def make_orchestrator(cfg, notifier, context):
    """组装编排器；provider 与 backend 由测试提供。"""

    def factory(
        provider=None,
        backend=None,
        mode="private",
        key_store=None,
        clock=None,
        navigations=None,
        provider_factory=None,
    ):
        store = MessageStore(cfg=cfg)
        cancellation = CancellationController()
        private_engine = PrivateStreamEngine(
            store,
            cancellation,
            key_store=key_store or StaticKeyStore(),
            provider_factory=provider_factory or (lambda name, api_key=None, cfg=None: provider),
            cfg=cfg,
        )
        server_engine = ServerStreamEngine(store, cancellation, backend or FakeBackend(), cfg=cfg)
        phase = PhaseDeriver(debounce_seconds=cfg.phase_debounce_seconds, clock=clock or (lambda: 0.0), cfg=cfg)

        def navigate(route, state):
            if navigations is not None:
                navigations.append((route, state))

        return ChatOrchestrator(
            context,
            store=store,
            cancellation=cancellation,
            private_engine=private_engine,
            server_engine=server_engine,
            mode=mode,
            notifier=notifier,
            phase=phase,
            on_navigate=navigate,
        )

    return factory
