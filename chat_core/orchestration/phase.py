"""助手消息的展示阶段推导。

阶段由消息字段计算得出（不落库），并带有两条额外规则：

1. 去抖：消息开始活跃后，需要经过 debounce_seconds 才会从 awaiting 进入
   precontent，避免几乎瞬间完成的回合出现一闪而过的加载指示；
   推理文本一旦出现则立即进入 precontent。
2. 单调：同一条消息一旦到达 streaming / complete，就不会再回到 precontent。

error 优先级最高，始终最先判断。
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Literal, Optional

from chat_core.config.settings import settings
from chat_core.domain.messages import Message

DisplayPhase = Literal["awaiting", "precontent", "streaming", "complete", "error"]

_RANK = {"awaiting": 0, "precontent": 1, "streaming": 2, "complete": 3}

_STATUS_LABELS = {
    "searching": "Searching…",
    "reading": "Reading sources…",
}
_DEFAULT_LABEL = "Thinking…"


@dataclass(frozen=True)
class PhaseView:
    phase: DisplayPhase
    status_label: Optional[str] = None
    is_active: bool = False


class CancellableTimer:
    """对 loop.call_later 的薄封装，可安全地重复 cancel。"""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self._delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = False

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._fired

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> bool:
        """在当前运行中的事件循环上启动；没有运行中的循环时返回 False。"""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._handle = loop.call_later(self._delay, self._fire)
        return True

    def _fire(self) -> None:
        self._fired = True
        self._handle = None
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


@dataclass
class _PhaseState:
    activity_started: Optional[float] = None
    high_water: Optional[DisplayPhase] = None
    timer: Optional[CancellableTimer] = None


class PhaseDeriver:
    def __init__(
        self,
        debounce_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[str], None]] = None,
        cfg=settings,
    ):
        self._debounce = cfg.phase_debounce_seconds if debounce_seconds is None else debounce_seconds
        self._clock = clock
        self._on_change = on_change
        self._states: Dict[str, _PhaseState] = {}

    def derive(self, message: Message) -> PhaseView:
        phase = self._compute(message)
        label = None
        if phase == "precontent":
            label = _STATUS_LABELS.get(message.status or "", _DEFAULT_LABEL)
        return PhaseView(
            phase=phase,
            status_label=label,
            is_active=phase in ("awaiting", "precontent", "streaming"),
        )

    def _compute(self, message: Message) -> DisplayPhase:
        state = self._states.setdefault(message.id, _PhaseState())
        if message.status == "error":
            self._cancel_timer(state)
            return "error"

        settled: Optional[DisplayPhase] = None
        if not message.is_active:
            settled = "complete"
        elif message.has_content:
            settled = "streaming"
        if settled is not None:
            self._cancel_timer(state)
            if state.high_water is None or _RANK[settled] > _RANK[state.high_water]:
                state.high_water = settled
            return state.high_water

        if state.high_water in ("streaming", "complete"):
            return state.high_water

        if message.has_reasoning:
            self._cancel_timer(state)
            state.high_water = "precontent"
            return "precontent"

        if state.activity_started is None:
            state.activity_started = self._clock()
            self._schedule(message.id, state)
        if state.high_water == "precontent" or self._clock() - state.activity_started >= self._debounce:
            state.high_water = "precontent"
            return "precontent"
        return "awaiting"

    def _schedule(self, message_id: str, state: _PhaseState) -> None:
        if self._on_change is None or self._debounce <= 0:
            return
        on_change = self._on_change

        def elapsed() -> None:
            state.timer = None
            on_change(message_id)

        timer = CancellableTimer(self._debounce, elapsed)
        if timer.start():
            state.timer = timer

    @staticmethod
    def _cancel_timer(state: _PhaseState) -> None:
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

    def has_pending_timer(self, message_id: str) -> bool:
        state = self._states.get(message_id)
        return state is not None and state.timer is not None and state.timer.active

    def sync(self, messages: Iterable[Message]) -> None:
        """跟随消息列表更新：丢弃已不存在的消息状态，并推进活跃消息的阶段。"""

        present = set()
        for msg in messages:
            if msg.role != "assistant":
                continue
            present.add(msg.id)
            self._compute(msg)
        for mid in [mid for mid in self._states if mid not in present]:
            self.forget(mid)

    def forget(self, message_id: str) -> None:
        state = self._states.pop(message_id, None)
        if state is not None:
            self._cancel_timer(state)

    def close(self) -> None:
        for state in self._states.values():
            self._cancel_timer(state)
        self._states.clear()
