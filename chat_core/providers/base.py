"""Provider 抽象接口。

私有模式的引擎不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 GlmClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把 SSE 增量解析为 ChatStreamChunk。

这样可以在不改编排代码的前提下接入更多厂商（OpenAI、DeepSeek 等）。
"""

from typing import AsyncIterator, Protocol

from chat_core.domain.models import ChatRequest, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat_stream(req): 执行一次流式对话调用，按到达顺序逐个产出增量。
    """

    name: str

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...
