"""会话级聊天状态机。

状态：idle | sending | streaming | stopped | error，
与单条消息的展示阶段（见 phase.py）相互独立。

    idle/stopped/error --send--> sending --start_streaming--> streaming
    sending/streaming --end_streaming--> idle
    sending/streaming --stop--> stopped
    任意状态 --fail--> error，任意状态 --reset--> idle

非法迁移会被忽略（返回 False），不会抛异常。
"""

import logging
from typing import Callable, Dict, FrozenSet, List, Literal, Optional

from chat_core.domain.exceptions import ValidationError
from chat_core.infrastructure.logging.logger import logger

ChatStatus = Literal["idle", "sending", "streaming", "stopped", "error"]

StatusListener = Callable[[ChatStatus, ChatStatus], None]

_ANY: FrozenSet[str] = frozenset({"idle", "sending", "streaming", "stopped", "error"})
_ACTIVE: FrozenSet[str] = frozenset({"sending", "streaming"})

# 事件 -> (允许的源状态, 目标状态)
_TRANSITIONS: Dict[str, tuple] = {
    "send": (_ANY, "sending"),
    "start_streaming": (frozenset({"sending"}), "streaming"),
    "end_streaming": (_ACTIVE, "idle"),
    "stop": (_ACTIVE, "stopped"),
    "fail": (_ANY, "error"),
    "reset": (_ANY, "idle"),
}


class ChatStatusMachine:
    def __init__(self):
        self._status: ChatStatus = "idle"
        self._error: Optional[BaseException] = None
        self._message_id: Optional[str] = None
        self._listeners: List[StatusListener] = []

    @property
    def status(self) -> ChatStatus:
        return self._status

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def message_id(self) -> Optional[str]:
        return self._message_id

    @property
    def is_idle(self) -> bool:
        return self._status == "idle"

    @property
    def is_active(self) -> bool:
        return self._status in _ACTIVE

    @property
    def can_retry(self) -> bool:
        if self._status == "stopped":
            return True
        return self._status == "error" and not isinstance(self._error, ValidationError)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def send(self, message_id: Optional[str] = None) -> bool:
        if not self._transition("send"):
            return False
        self._message_id = message_id
        return True

    def start_streaming(self) -> bool:
        return self._transition("start_streaming")

    def end_streaming(self) -> bool:
        return self._transition("end_streaming")

    def stop(self) -> bool:
        return self._transition("stop")

    def fail(self, error: BaseException) -> bool:
        self._error = error
        return self._transition("fail", keep_error=True)

    def reset(self) -> bool:
        self._message_id = None
        return self._transition("reset")

    def _transition(self, event: str, keep_error: bool = False) -> bool:
        sources, target = _TRANSITIONS[event]
        previous = self._status
        if previous not in sources:
            logger.log(
                logging.DEBUG,
                "Ignored chat status transition",
                extra={"extra": {"event": event, "status": previous}},
            )
            return False
        if not keep_error:
            self._error = None
        self._status = target
        if previous != target:
            for listener in list(self._listeners):
                listener(previous, target)
        return True
