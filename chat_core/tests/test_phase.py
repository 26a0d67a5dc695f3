import asyncio

import pytest

from chat_core.domain.messages import Message
from chat_core.orchestration.phase import CancellableTimer, PhaseDeriver
from conftest import SettingsStub


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _deriver(clock, **kwargs):
    return PhaseDeriver(debounce_seconds=0.2, clock=clock, cfg=SettingsStub(), **kwargs)


def test_awaiting_until_debounce_elapses():
    clock = FakeClock()
    deriver = _deriver(clock)
    msg = Message(id="a1", role="assistant", status="thinking")

    assert deriver.derive(msg).phase == "awaiting"
    clock.now = 0.1
    assert deriver.derive(msg).phase == "awaiting"
    clock.now = 0.25
    view = deriver.derive(msg)
    assert view.phase == "precontent"
    assert view.status_label == "Thinking…"
    assert view.is_active


def test_reasoning_skips_debounce():
    deriver = _deriver(FakeClock())
    msg = Message(id="a1", role="assistant", status="thinking", reasoning="let me see")
    assert deriver.derive(msg).phase == "precontent"


def test_status_label_follows_tool_status():
    deriver = _deriver(FakeClock())
    msg = Message(id="a1", role="assistant", status="searching", reasoning="...")
    assert deriver.derive(msg).status_label == "Searching…"


def test_fast_turn_never_shows_precontent():
    deriver = _deriver(FakeClock())
    msg = Message(id="a1", role="assistant", status="thinking")
    assert deriver.derive(msg).phase == "awaiting"
    msg = Message(id="a1", role="assistant", status="streaming", content="Hi")
    assert deriver.derive(msg).phase == "streaming"
    msg = Message(id="a1", role="assistant", status="done", content="Hi there")
    view = deriver.derive(msg)
    assert view.phase == "complete"
    assert not view.is_active


def test_phase_does_not_regress_after_streaming():
    deriver = _deriver(FakeClock())
    deriver.derive(Message(id="a1", role="assistant", status="streaming", content="Hi"))
    # 正文被截断后的中间态不会让阶段回退
    again = Message(id="a1", role="assistant", status="thinking", reasoning="hmm")
    assert deriver.derive(again).phase == "streaming"


def test_error_wins_over_everything():
    deriver = _deriver(FakeClock())
    deriver.derive(Message(id="a1", role="assistant", status="done", content="x"))
    assert deriver.derive(Message(id="a1", role="assistant", status="error", content="x")).phase == "error"


def test_sync_forgets_removed_messages():
    deriver = _deriver(FakeClock())
    deriver.sync([Message(id="a1", role="assistant", status="streaming", content="x")])
    deriver.sync([])
    # 状态被丢弃后重新开始计算
    assert deriver.derive(Message(id="a1", role="assistant", status="thinking")).phase == "awaiting"


@pytest.mark.asyncio
async def test_debounce_timer_notifies_change():
    changed = []
    deriver = PhaseDeriver(debounce_seconds=0.01, on_change=changed.append, cfg=SettingsStub())
    msg = Message(id="a1", role="assistant", status="thinking")

    assert deriver.derive(msg).phase == "awaiting"
    assert deriver.has_pending_timer("a1")
    await asyncio.sleep(0.05)

    assert changed == ["a1"]
    assert deriver.derive(msg).phase == "precontent"
    assert not deriver.has_pending_timer("a1")


@pytest.mark.asyncio
async def test_content_cancels_pending_timer():
    changed = []
    deriver = PhaseDeriver(debounce_seconds=0.05, on_change=changed.append, cfg=SettingsStub())
    deriver.derive(Message(id="a1", role="assistant", status="thinking"))
    deriver.derive(Message(id="a1", role="assistant", status="streaming", content="Hi"))
    await asyncio.sleep(0.1)
    assert changed == []


def test_timer_without_running_loop():
    timer = CancellableTimer(0.1, lambda: None)
    assert timer.start() is False
    assert not timer.active
    timer.cancel()
