from chat_core.orchestration.cancellation import CancellationController, CancellationToken


def test_token_cancel_runs_callbacks_once():
    calls = []
    token = CancellationToken("chat:s1")
    token.add_callback(lambda: calls.append("abort"))

    assert token.cancel() is True
    assert token.cancel() is False
    assert token.cancelled
    assert calls == ["abort"]


def test_callback_added_after_cancel_runs_immediately():
    calls = []
    token = CancellationToken("chat:s1")
    token.cancel()
    token.add_callback(lambda: calls.append("late"))
    assert calls == ["late"]


def test_failing_callback_does_not_block_cancellation():
    calls = []

    def broken():
        raise RuntimeError("transport already closed")

    token = CancellationToken("chat:s1")
    token.add_callback(broken)
    token.add_callback(lambda: calls.append("second"))

    assert token.cancel() is True
    assert token.cancelled
    assert calls == ["second"]


def test_begin_supersedes_previous_token():
    ctrl = CancellationController()
    first = ctrl.begin("chat:s1")
    second = ctrl.begin("chat:s1")

    assert first.cancelled
    assert not second.cancelled
    assert ctrl.current("chat:s1") is second
    assert ctrl.is_live("chat:s1")


def test_finish_only_releases_current_token():
    ctrl = CancellationController()
    old = ctrl.begin("chat:s1")
    new = ctrl.begin("chat:s1")

    ctrl.finish(old)
    assert ctrl.current("chat:s1") is new

    ctrl.finish(new)
    assert ctrl.current("chat:s1") is None
    assert not new.cancelled


def test_signal_and_cancel_by_key():
    ctrl = CancellationController()
    token = ctrl.begin("chat:a")
    assert ctrl.signal(token) is True
    assert not ctrl.is_live("chat:a")

    ctrl.begin("chat:b")
    assert ctrl.cancel("chat:b") is True
    assert ctrl.cancel("chat:b") is False


def test_cancel_all():
    ctrl = CancellationController()
    tokens = [ctrl.begin(f"chat:{i}") for i in range(3)]
    ctrl.cancel_all()
    assert all(t.cancelled for t in tokens)
    assert ctrl.current("chat:0") is None
