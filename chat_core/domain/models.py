"""与模型 Provider 交互的统一数据模型。

本模块定义了私有模式下，编排层与不同 Provider 之间共享的标准数据结构：

- ChatMessage: 发给 Provider 的一条对话消息（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整流式请求。
- ChatStreamChunk: 从 Provider SSE 流解析出的统一增量结果，
  其中 delta 区分正文增量（content）与推理增量（reasoning）。
- ReasoningConfig / ModelSelection: 由会话上下文提供的模型与推理选项。

所有 Provider 适配器（如 GlmClient）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from chat_core.domain.messages import Citation


# 发给 Provider 的消息角色（context 角色只在本地展示，不会进入请求）
ProviderRole = Literal["system", "user", "assistant"]

ReasoningEffort = Literal["low", "medium", "high"]


@dataclass
class ReasoningConfig:
    """推理（思考）相关配置。"""

    enabled: bool = False
    effort: ReasoningEffort = "medium"
    max_tokens: Optional[int] = None


@dataclass
class ModelSelection:
    """当前会话选中的模型身份。"""

    model_id: str
    provider: str
    supports_reasoning: bool = False


@dataclass
class ChatMessage:
    role: ProviderRole
    content: str


@dataclass
class ChatRequest:
    """一次完整的流式聊天请求。

    编排层将上下文裁剪、拼接系统提示词后生成 ChatRequest，再交给具体 ProviderClient。
    """

    provider: str
    model: str  # 用户选中的模型 ID，由 registry 解析为厂商模型配置
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    top_p: float = 0.95
    max_tokens: Optional[int] = None
    reasoning: Optional[ReasoningConfig] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamDelta:
    """单次增量：正文、推理文本与引用来源可能同时或分别出现。"""

    content: str = ""
    reasoning: str = ""
    citations: List["Citation"] = field(default_factory=list)


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatStreamDelta
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果。

    每次流式回调由若干 choice 组成，choice.delta 代表本次增量内容；
    usage 通常只出现在最后一个 chunk 中。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[Dict[str, Any]] = None
