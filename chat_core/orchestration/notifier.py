"""面向用户的通知（UI 层的 toast）。

编排层与后台任务跟踪器只依赖 Notifier 协议，默认实现写入 chat_core 日志。
key 用于 UI 侧去重：同一个 key 的通知只应展示一次。
"""

import logging
from typing import Optional, Protocol

from chat_core.infrastructure.logging.logger import logger


class Notifier(Protocol):
    def success(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        ...

    def error(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        ...

    def info(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        ...


class LoggingNotifier:
    def success(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        self._emit(logging.INFO, "success", title, key, description)

    def error(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        self._emit(logging.WARNING, "error", title, key, description)

    def info(self, title: str, *, key: Optional[str] = None, description: Optional[str] = None) -> None:
        self._emit(logging.INFO, "info", title, key, description)

    @staticmethod
    def _emit(level: int, kind: str, title: str, key: Optional[str], description: Optional[str]) -> None:
        logger.log(
            level,
            title,
            extra={"extra": {"notification": kind, "key": key, "description": description}},
        )
