import asyncio

import pytest

from chat_core.domain.exceptions import ServerRequestError
from chat_core.domain.messages import Message
from conftest import FakeBackend, snapshot, wait_until


def _user(mid="u1", content="Hello"):
    return Message(id=mid, role="user", content=content)


def _assistant(mid="a1", content="", status="streaming"):
    return Message(id=mid, role="assistant", content=content, status=status)


@pytest.mark.asyncio
async def test_new_conversation_streams_and_navigates(make_orchestrator):
    backend = FakeBackend(
        [
            snapshot([_user(), _assistant(status="thinking")], streaming=True),
            snapshot([_user(), _assistant(content="Hi")], streaming=True),
            snapshot([_user(), _assistant(content="Hi there", status="done")]),
        ]
    )
    navigations = []
    orch = make_orchestrator(backend=backend, mode="server", navigations=navigations)

    conversation_id = await orch.send_message_to_new_conversation("Hello")

    assert conversation_id == "c1"
    assert orch.context.conversation_id == "c1"
    assert navigations == [("conversation", {"conversation_id": "c1"})]
    assert [m.id for m in orch.messages] == ["u1", "a1"]
    assert orch.messages[-1].content == "Hi there"
    assert orch.messages[-1].status == "done"
    assert not any(m.optimistic for m in orch.messages)
    assert orch.status == "idle"


@pytest.mark.asyncio
async def test_follow_up_uses_existing_conversation(make_orchestrator, context):
    context.conversation_id = "c1"
    backend = FakeBackend([snapshot([_user(), _assistant(content="ok", status="done")])])
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.send_message("Hello")

    assert backend.call_names()[0] == "send_follow_up_message"
    assert backend.calls[0][1] == ("c1", "Hello")


@pytest.mark.asyncio
async def test_stop_survives_late_done(make_orchestrator):
    backend = FakeBackend([snapshot([_user(), _assistant(content="Partial")], streaming=True)])
    backend.hold = asyncio.Event()
    orch = make_orchestrator(backend=backend, mode="server")

    task = asyncio.ensure_future(orch.send_message("Hello"))
    await wait_until(lambda: orch.messages and orch.messages[-1].content == "Partial")

    backend.final = snapshot([_user(), _assistant(content="Partial answer", status="done")])
    assert await orch.stop_generation() is True

    assistant = orch.messages[-1]
    assert assistant.status == "stopped"
    assert assistant.metadata.stopped_by_user is True
    assert assistant.content == "Partial answer"
    assert "stop_generation" in backend.call_names()

    backend.hold.set()
    await task
    assert orch.messages[-1].status == "stopped"
    assert orch.status == "stopped"


@pytest.mark.asyncio
async def test_stop_while_creating_conversation(make_orchestrator):
    backend = FakeBackend()
    backend.gate = asyncio.Event()
    backend.final = snapshot([_user(), _assistant(status="streaming")], streaming=True)
    orch = make_orchestrator(backend=backend, mode="server")

    task = asyncio.ensure_future(orch.send_message("Hello"))
    await wait_until(lambda: "create_conversation" in backend.call_names())

    assert await orch.stop_generation() is True
    assert orch.messages[-1].status == "stopped"

    backend.gate.set()
    await task

    names = backend.call_names()
    assert names.index("stop_generation") > names.index("create_conversation")
    assert orch.context.conversation_id == "c1"
    assert [m.id for m in orch.messages] == ["u1", "a1"]
    assert orch.messages[-1].status == "stopped"
    assert orch.status == "stopped"


@pytest.mark.asyncio
async def test_placeholder_errors_when_server_never_responds(make_orchestrator):
    backend = FakeBackend()
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.send_message("Hello")

    placeholder = orch.messages[-1]
    assert placeholder.role == "assistant"
    assert placeholder.status == "error"
    assert placeholder.metadata.error == "The server did not start a response"
    assert not orch.engine.can_stop(orch.context)


@pytest.mark.asyncio
async def test_create_failure_marks_placeholder_error(make_orchestrator, notifier):
    backend = FakeBackend()
    backend.fail_with["create_conversation"] = ServerRequestError(
        code="SERVER_REQUEST_ERROR", message="quota exceeded", http_status=403
    )
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.send_message("Hello")

    user, placeholder = orch.messages
    assert user.optimistic
    assert placeholder.status == "error"
    assert placeholder.metadata.error == "quota exceeded"
    assert orch.status == "error"
    assert notifier.of_kind("error")[0]["key"] == "send_message-SERVER_REQUEST_ERROR"
    assert notifier.of_kind("error")[0]["description"] == "quota exceeded"


@pytest.mark.asyncio
async def test_open_conversation_resumes_unanswered_user_message(make_orchestrator):
    backend = FakeBackend([snapshot([_user(), _assistant(content="Resumed", status="done")])])
    backend.final = snapshot([_user()])
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.open_conversation("c1")

    assert "resume_conversation" in backend.call_names()
    assert [m.id for m in orch.messages] == ["u1", "a1"]
    assert orch.messages[-1].status == "done"


@pytest.mark.asyncio
async def test_open_streaming_conversation_keeps_observing(make_orchestrator):
    backend = FakeBackend([snapshot([_user(), _assistant(content="Partial done", status="done")])])
    backend.final = snapshot([_user(), _assistant(content="Par")], streaming=True)
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.open_conversation("c1")

    assert "resume_conversation" not in backend.call_names()
    assert orch.messages[-1].content == "Partial done"
    assert orch.messages[-1].status == "done"


@pytest.mark.asyncio
async def test_open_finished_conversation_does_nothing_else(make_orchestrator):
    backend = FakeBackend()
    backend.final = snapshot([_user(), _assistant(content="Hi", status="done")])
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.open_conversation("c1")

    assert backend.call_names() == ["get_conversation"]
    assert orch.status == "idle"


@pytest.mark.asyncio
async def test_retry_assistant_on_server(make_orchestrator):
    backend = FakeBackend()
    backend.final = snapshot([_user(), _assistant(content="Hi", status="done")])
    orch = make_orchestrator(backend=backend, mode="server")
    await orch.open_conversation("c1")

    backend.snapshots = [snapshot([_user(), _assistant(mid="a2", content="Again", status="done")])]
    await orch.retry_assistant_message("a1")

    assert ("retry_from_message", ("c1", "a1", "assistant")) in [(c[0], c[1]) for c in backend.calls]
    assert [m.id for m in orch.messages] == ["u1", "a2"]
    assert orch.store.is_tombstoned("a1")


@pytest.mark.asyncio
async def test_retry_without_conversation_is_rejected(make_orchestrator, notifier):
    orch = make_orchestrator(backend=FakeBackend(), mode="server")
    orch.store.reset([_user()])

    await orch.retry_user_message("u1")

    assert notifier.of_kind("error")[0]["key"] == "retry_user_message-NO_CONVERSATION"
    assert orch.status == "idle"


@pytest.mark.asyncio
async def test_edit_on_server(make_orchestrator):
    backend = FakeBackend()
    backend.final = snapshot([_user(), _assistant(content="Hi", status="done")])
    orch = make_orchestrator(backend=backend, mode="server")
    await orch.open_conversation("c1")

    backend.snapshots = [
        snapshot([_user(content="Hello!"), _assistant(mid="a2", content="Edited", status="done")])
    ]
    await orch.edit_message("u1", "Hello!")

    edit_call = [c for c in backend.calls if c[0] == "edit_message"][0]
    assert edit_call[1] == ("c1", "u1", "Hello!")
    assert [m.content for m in orch.messages] == ["Hello!", "Edited"]


@pytest.mark.asyncio
async def test_delete_failure_allows_row_to_return(make_orchestrator, notifier):
    backend = FakeBackend()
    backend.final = snapshot([_user(), _assistant(content="Hi", status="done")])
    orch = make_orchestrator(backend=backend, mode="server")
    await orch.open_conversation("c1")

    backend.fail_with["delete_message"] = ServerRequestError(code="SERVER_REQUEST_ERROR", message="nope", http_status=500)
    assert await orch.delete_message("a1") is False
    assert notifier.of_kind("error")[0]["title"] == "Failed to delete message"
    assert not orch.store.is_tombstoned("a1")

    await orch.engine.refresh(orch.context)
    assert [m.id for m in orch.messages] == ["u1", "a1"]


@pytest.mark.asyncio
async def test_delete_success_keeps_row_hidden(make_orchestrator):
    backend = FakeBackend()
    backend.final = snapshot([_user(), _assistant(content="Hi", status="done")])
    orch = make_orchestrator(backend=backend, mode="server")
    await orch.open_conversation("c1")

    assert await orch.delete_message("a1") is True
    # 服务端尚未感知删除时，轮询结果不会把它带回来
    await orch.engine.refresh(orch.context)
    assert [m.id for m in orch.messages] == ["u1"]


@pytest.mark.asyncio
async def test_empty_message_is_rejected(make_orchestrator, notifier):
    backend = FakeBackend()
    orch = make_orchestrator(backend=backend, mode="server")

    await orch.send_message("")
    await orch.send_message_to_new_conversation("  \n")

    assert orch.messages == ()
    assert orch.status == "idle"
    assert backend.calls == []
    keys = [e["key"] for e in notifier.of_kind("error")]
    assert keys == ["send_message-EMPTY_MESSAGE", "send_message_to_new_conversation-EMPTY_MESSAGE"]
