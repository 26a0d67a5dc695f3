"""会话消息存储。

MessageStore 是编排层唯一的共享可变状态：

- 所有写操作（append / patch / remove / truncate_from / replace_optimistic /
  merge_authoritative）都在事件循环内同步完成，并在返回前同步通知订阅者；
- 写操作不可重入：订阅者回调中再修改 store 会抛出 RuntimeError；
- patch 不存在的 id 是 no-op，用于吸收截断/删除之后迟到的增量；
- 乐观消息被权威消息替换时原地替换，列表位置不变。

服务端模式下，本地删除/截断的消息 id 会作为“墓碑”保留一段时间，
避免尚未感知删除的轮询结果把它们重新带回来。墓碑由周期性清理任务回收。
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from chat_core.config.settings import settings
from chat_core.domain.messages import Message, MessageMetadata, resolve_status
from chat_core.infrastructure.logging.logger import logger

Listener = Callable[[Tuple[Message, ...]], None]


def _apply_patch(current: Message, changes: Dict[str, Any]) -> Message:
    fields = dict(changes)
    metadata = fields.get("metadata")
    if isinstance(metadata, dict):
        fields["metadata"] = replace(current.metadata, **metadata)
    if "status" in fields:
        fields["status"] = resolve_status(current.status, fields["status"])
    return replace(current, **fields)


def reconcile(local: Message, canonical: Message) -> Message:
    """把权威消息合并到本地消息上。

    状态按终态优先级合并；助手消息的正文与推理文本只增不减；
    本地“用户停止”的标记在合并后依然保留。
    """

    status = resolve_status(local.status, canonical.status)
    content = canonical.content
    reasoning = canonical.reasoning
    if local.role == "assistant":
        if len(local.content) > len(canonical.content):
            content = local.content
        if len(local.reasoning or "") > len(canonical.reasoning or ""):
            reasoning = local.reasoning
    metadata: MessageMetadata = canonical.metadata
    if local.metadata.stopped_by_user and status == "stopped":
        metadata = replace(
            canonical.metadata,
            stopped_by_user=True,
            finish_reason=canonical.metadata.finish_reason or local.metadata.finish_reason,
        )
    return replace(
        canonical,
        status=status,
        content=content,
        reasoning=reasoning,
        metadata=metadata,
        citations=canonical.citations or local.citations,
        attachments=canonical.attachments or local.attachments,
        optimistic=False,
    )


class MessageStore:
    def __init__(
        self,
        messages: Optional[Iterable[Message]] = None,
        cfg=settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._messages: List[Message] = list(messages or [])
        self._listeners: List[Listener] = []
        self._mutating = False
        self._clock = clock
        self._tombstones: Dict[str, float] = {}
        self._tombstone_ttl = cfg.tombstone_ttl
        self._max_tombstones = cfg.max_tombstones
        self._cleanup_interval = cfg.store_cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None

    # ---- 读取 ----

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def get(self, message_id: str) -> Optional[Message]:
        idx = self.index_of(message_id)
        return self._messages[idx] if idx >= 0 else None

    def index_of(self, message_id: str) -> int:
        for idx, msg in enumerate(self._messages):
            if msg.id == message_id:
                return idx
        return -1

    def active_assistant(self) -> Optional[Message]:
        for msg in reversed(self._messages):
            if msg.role == "assistant" and msg.is_active:
                return msg
        return None

    def previous_of(self, message_id: str) -> Optional[Message]:
        idx = self.index_of(message_id)
        return self._messages[idx - 1] if idx > 0 else None

    def is_tombstoned(self, message_id: str) -> bool:
        return message_id in self._tombstones

    # ---- 订阅 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        if self._mutating:
            raise RuntimeError("MessageStore mutation is not re-entrant")
        self._mutating = True
        try:
            yield
        finally:
            self._mutating = False

    def _notify(self) -> None:
        snapshot = tuple(self._messages)
        for listener in list(self._listeners):
            listener(snapshot)

    # ---- 写操作 ----

    def append(self, message: Message) -> None:
        with self._mutation():
            if message.role == "assistant" and message.is_active:
                self._supersede_active_assistants()
            self._messages.append(message)
            self._notify()

    def patch(self, message_id: str, changes: Dict[str, Any]) -> Optional[Message]:
        with self._mutation():
            idx = self.index_of(message_id)
            if idx < 0:
                return None
            updated = _apply_patch(self._messages[idx], changes)
            self._messages[idx] = updated
            self._notify()
            return updated

    def remove(self, message_id: str) -> bool:
        with self._mutation():
            idx = self.index_of(message_id)
            if idx < 0:
                return False
            removed = self._messages.pop(idx)
            self._tombstone([removed.id])
            self._notify()
            return True

    def truncate_from(self, message_id: str) -> List[Message]:
        """删除该消息及其之后的所有消息（包含自身），返回被删除的消息。"""

        with self._mutation():
            idx = self.index_of(message_id)
            if idx < 0:
                return []
            removed = self._messages[idx:]
            del self._messages[idx:]
            self._tombstone([m.id for m in removed])
            self._notify()
            return removed

    def truncate_after(self, message_id: str) -> List[Message]:
        """删除该消息之后的所有消息（不含自身）。"""

        idx = self.index_of(message_id)
        if idx < 0 or idx + 1 >= len(self._messages):
            return []
        return self.truncate_from(self._messages[idx + 1].id)

    def replace_optimistic(self, optimistic_id: str, canonical: Message) -> bool:
        with self._mutation():
            idx = self.index_of(optimistic_id)
            if idx < 0:
                return False
            existing = self.index_of(canonical.id) if canonical.id != optimistic_id else -1
            if 0 <= existing < idx:
                # 权威消息已在更前的位置出现：保留该位置，丢弃乐观消息
                self._messages[existing] = reconcile(self._messages[existing], canonical)
                del self._messages[idx]
            else:
                self._messages[idx] = reconcile(self._messages[idx], canonical)
                # 之后的重复项
                self._messages = [
                    m for i, m in enumerate(self._messages) if i <= idx or m.id != canonical.id
                ]
            self._notify()
            return True

    def reset(self, messages: Sequence[Message] = ()) -> None:
        with self._mutation():
            self._messages = list(messages)
            self._tombstones.clear()
            self._notify()

    def merge_authoritative(self, rows: Sequence[Message]) -> bool:
        """用服务端的完整消息列表对账本地列表，返回是否有变化。

        - 本地已删除（墓碑）的行被忽略；
        - 同 id 的行与本地消息按 reconcile 规则合并；
        - 尾部仍未确认的乐观消息，按顺序被第一个同角色的未知行原地替换；
        - 服务端不存在的已确认消息被移除，未匹配的乐观消息保留在尾部。
        """

        with self._mutation():
            self._expire_tombstones()
            rows = [r for r in rows if r.id not in self._tombstones]
            row_ids = {r.id for r in rows}
            local_by_id = {m.id: m for m in self._messages}
            pending = deque(m for m in self._messages if m.optimistic and m.id not in row_ids)
            merged: List[Message] = []
            for row in rows:
                local = local_by_id.get(row.id)
                if local is not None:
                    merged.append(reconcile(local, row))
                elif pending and pending[0].role == row.role:
                    merged.append(reconcile(pending.popleft(), row))
                else:
                    merged.append(row)
            merged.extend(pending)
            if merged == self._messages:
                return False
            self._messages = merged
            self._notify()
            return True

    def _supersede_active_assistants(self) -> None:
        for idx, msg in enumerate(self._messages):
            if msg.role == "assistant" and msg.is_active:
                logger.log(
                    logging.WARNING,
                    "Superseding active assistant message",
                    extra={"extra": {"message_id": msg.id, "status": msg.status}},
                )
                self._messages[idx] = _apply_patch(
                    msg, {"status": "stopped", "metadata": {"finish_reason": "stop"}}
                )

    # ---- 墓碑与清理 ----

    def _tombstone(self, message_ids: Iterable[str]) -> None:
        now = self._clock()
        for mid in message_ids:
            self._tombstones.pop(mid, None)
            self._tombstones[mid] = now
        overflow = len(self._tombstones) - self._max_tombstones
        if overflow > 0:
            for mid in list(self._tombstones)[:overflow]:
                del self._tombstones[mid]

    def _expire_tombstones(self) -> int:
        cutoff = self._clock() - self._tombstone_ttl
        expired = [mid for mid, ts in self._tombstones.items() if ts <= cutoff]
        for mid in expired:
            del self._tombstones[mid]
        return len(expired)

    def forget_tombstone(self, message_id: str) -> None:
        self._tombstones.pop(message_id, None)

    def prune(self) -> int:
        """回收过期墓碑，返回回收数量。"""

        return self._expire_tombstones()

    def start_cleanup(self, interval: Optional[float] = None) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        loop = asyncio.get_running_loop()
        self._cleanup_task = loop.create_task(self._cleanup_loop(interval or self._cleanup_interval))

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            pruned = self.prune()
            if pruned:
                logger.log(logging.DEBUG, "Pruned tombstones", extra={"extra": {"count": pruned}})

    def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self._listeners.clear()
