"""取消令牌。

每次生成（StreamSession）持有且仅持有一个令牌。令牌是取消的唯一事实来源：
引擎在应用每个增量之前都要检查令牌，底层传输的中止（如关闭 HTTP 流）
只是尽力而为的优化，可能在若干增量之后才生效。
"""

import logging
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from chat_core.infrastructure.logging.logger import logger


class CancellationToken:
    def __init__(self, key: str):
        self.key = key
        self.id = f"ct-{uuid4().hex[:12]}"
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """标记为已取消并触发回调；重复取消返回 False。"""

        if self._cancelled:
            return False
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception as exc:  # 回调只做传输层中止，失败不影响逻辑取消
                logger.log(
                    logging.WARNING,
                    "Cancellation callback failed",
                    extra={"extra": {"stream_key": self.key, "token": self.id, "error": repr(exc)}},
                )
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """注册取消回调（通常用于中止传输）；已取消时立即执行。"""

        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def __repr__(self) -> str:
        return f"CancellationToken(key={self.key!r}, id={self.id!r}, cancelled={self._cancelled})"


class CancellationController:
    """按 stream key 发放令牌，保证每个 key 同时最多一个有效令牌。"""

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}

    def begin(self, key: str) -> CancellationToken:
        previous = self._tokens.get(key)
        if previous is not None:
            previous.cancel()
        token = CancellationToken(key)
        self._tokens[key] = token
        return token

    def signal(self, token: CancellationToken) -> bool:
        cancelled = token.cancel()
        if self._tokens.get(token.key) is token:
            del self._tokens[token.key]
        return cancelled

    def cancel(self, key: str) -> bool:
        token = self._tokens.pop(key, None)
        if token is None:
            return False
        return token.cancel()

    def current(self, key: str) -> Optional[CancellationToken]:
        return self._tokens.get(key)

    def is_live(self, key: str) -> bool:
        token = self._tokens.get(key)
        return token is not None and not token.cancelled

    def finish(self, token: CancellationToken) -> None:
        """流结束后释放令牌（仅当它仍是该 key 的当前令牌）。"""

        if self._tokens.get(token.key) is token:
            del self._tokens[token.key]

    def cancel_all(self) -> None:
        tokens, self._tokens = self._tokens, {}
        for token in tokens.values():
            token.cancel()
