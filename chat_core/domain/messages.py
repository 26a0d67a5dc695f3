"""会话消息模型。

Message 是编排层唯一操作的消息实体：

- 乐观消息（optimistic=True）由客户端在发送时生成，id 也由客户端生成；
- 权威消息由服务端下发（服务端模式），或者在私有模式下直接视为权威。

消息生命周期：创建（乐观）→ 流式过程中被反复 patch → 由引擎写入终态
（done/stopped/error）→ 可能因重试/编辑被截断，或被删除。
"""

import time
from dataclasses import dataclass, field
from typing import List, Literal, Optional

Role = Literal["user", "assistant", "system", "context"]

MessageStatus = Literal[
    "pending",
    "thinking",
    "searching",
    "reading",
    "streaming",
    "done",
    "stopped",
    "error",
]

ImageGenerationStatus = Literal["scheduled", "succeeded", "failed", "canceled"]

AttachmentType = Literal["image", "pdf", "text", "audio", "video"]

ACTIVE_STATUSES = frozenset({"pending", "thinking", "searching", "reading", "streaming"})
TERMINAL_STATUSES = frozenset({"done", "stopped", "error"})

# 终态优先级：error > stopped > done
_TERMINAL_RANK = {"done": 1, "stopped": 2, "error": 3}


@dataclass
class Citation:
    url: str
    title: Optional[str] = None
    snippet: Optional[str] = None


@dataclass
class Attachment:
    type: AttachmentType
    name: str
    url: Optional[str] = None
    content: Optional[str] = None
    mime_type: Optional[str] = None
    size: int = 0


@dataclass
class ImageGeneration:
    """图片生成子状态，独立于消息本身的 status。"""

    status: ImageGenerationStatus
    prompt: Optional[str] = None
    model: Optional[str] = None
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class MessageMetadata:
    finish_reason: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    stopped_by_user: bool = False
    error: Optional[str] = None


@dataclass
class Message:
    id: str
    role: Role
    content: str = ""
    reasoning: Optional[str] = None
    citations: List[Citation] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    status: Optional[MessageStatus] = None
    image_generation: Optional[ImageGeneration] = None
    metadata: MessageMetadata = field(default_factory=MessageMetadata)
    model: Optional[str] = None
    provider: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    optimistic: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    @property
    def has_reasoning(self) -> bool:
        return bool(self.reasoning)


def resolve_status(
    current: Optional[MessageStatus],
    incoming: Optional[MessageStatus],
) -> Optional[MessageStatus]:
    """合并本地状态与新写入的状态。

    - 终态不会被非终态覆盖（已停止的消息不会被迟到的数据“复活”）；
    - 两个终态冲突时按 error > stopped > done 取优先级高者；
    - 其余情况以新值为准。
    """

    if incoming is None:
        return current
    if current in TERMINAL_STATUSES:
        if incoming not in TERMINAL_STATUSES:
            return current
        if _TERMINAL_RANK[incoming] < _TERMINAL_RANK[current]:
            return current
    return incoming
