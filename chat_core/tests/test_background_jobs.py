import asyncio

import pytest

from chat_core.domain.exceptions import ServerRequestError
from chat_core.domain.jobs import BackgroundJob
from chat_core.orchestration.background_jobs import CONVERSATIONS_CACHE_KEY, BackgroundJobTracker
from conftest import RecordingNotifier, SettingsStub


class FakeJobBackend:
    def __init__(self):
        self.jobs = []
        self.scheduled = []
        self.deleted = []
        self.fail_schedule = None

    async def schedule_export(self, job_id, conversation_ids=None, include_attachments=False):
        return self._schedule("export", job_id)

    async def schedule_import(self, job_id, conversations, title=None, description=None):
        return self._schedule("import", job_id)

    async def schedule_bulk_delete(self, job_id, conversation_ids):
        return self._schedule("bulk_delete", job_id)

    def _schedule(self, kind, job_id):
        if self.fail_schedule is not None:
            raise self.fail_schedule
        self.scheduled.append((kind, job_id))
        return f"srv-{job_id}"

    async def list_jobs(self, limit=50):
        return list(self.jobs)

    async def delete_job(self, job_id):
        self.deleted.append(job_id)


def _job(job_id, status, job_type="export", **kwargs):
    return BackgroundJob(id=job_id, type=job_type, status=status, **kwargs)


def _tracker(backend=None, notifier=None, invalidated=None):
    return BackgroundJobTracker(
        backend or FakeJobBackend(),
        notifier=notifier or RecordingNotifier(),
        on_invalidate=invalidated.append if invalidated is not None else None,
        cfg=SettingsStub(),
    )


def test_transition_to_completed_fires_once():
    notifier = RecordingNotifier()
    tracker = _tracker(notifier=notifier)

    assert tracker.observe([_job("j1", "processing"), _job("j2", "completed")]) == []
    assert tracker.observe([_job("j1", "completed"), _job("j2", "completed")]) == ["job-j1"]
    assert tracker.observe([_job("j1", "completed"), _job("j2", "completed")]) == []

    successes = notifier.of_kind("success")
    assert len(successes) == 1
    assert successes[0]["title"] == "Export completed successfully!"
    assert successes[0]["key"] == "job-j1"


def test_failed_job_notifies_with_error():
    notifier = RecordingNotifier()
    tracker = _tracker(notifier=notifier)

    tracker.observe([_job("j1", "processing", job_type="import")])
    fired = tracker.observe([_job("j1", "failed", job_type="import", error="bad file")])

    assert fired == ["job-error-j1"]
    assert notifier.of_kind("error")[0]["title"] == "Import failed: bad file"


def test_import_and_bulk_delete_invalidate_conversations():
    invalidated = []
    tracker = _tracker(invalidated=invalidated)

    tracker.observe([_job("j1", "processing", job_type="import"), _job("j2", "processing", job_type="bulk_delete")])
    tracker.observe([_job("j1", "completed", job_type="import"), _job("j2", "completed", job_type="bulk_delete")])

    assert invalidated == [CONVERSATIONS_CACHE_KEY, CONVERSATIONS_CACHE_KEY]


def test_export_does_not_invalidate():
    invalidated = []
    tracker = _tracker(invalidated=invalidated)
    tracker.observe([_job("j1", "processing")])
    tracker.observe([_job("j1", "completed")])
    assert invalidated == []


@pytest.mark.asyncio
async def test_local_job_is_replaced_by_server_record():
    backend = FakeJobBackend()
    notifier = RecordingNotifier()
    tracker = _tracker(backend, notifier)

    job_id = await tracker.start_export(["c1", "c2"])

    assert backend.scheduled == [("export", job_id)]
    assert notifier.of_kind("info")[0]["key"] == f"job-start-{job_id}"
    local = tracker.get_job(job_id)
    assert local.status == "scheduled"
    assert local.total == 2
    assert local.server_id == f"srv-{job_id}"

    backend.jobs = [_job(job_id, "completed", processed=2, total=2)]
    assert await tracker.poll() == [f"job-{job_id}"]
    assert [j.id for j in tracker.jobs] == [job_id]
    assert tracker.get_job(job_id).progress == 100


@pytest.mark.asyncio
async def test_two_jobs_complete_in_one_poll():
    backend = FakeJobBackend()
    notifier = RecordingNotifier()
    invalidated = []
    tracker = _tracker(backend, notifier, invalidated)

    j1 = await tracker.start_export()
    j2 = await tracker.start_import([{"title": "chat"}])

    backend.jobs = [_job(j1, "completed"), _job(j2, "completed", job_type="import")]
    fired = await tracker.poll()
    assert sorted(fired) == sorted([f"job-{j1}", f"job-{j2}"])

    assert await tracker.poll() == []
    keys = [e["key"] for e in notifier.of_kind("success")]
    assert sorted(keys) == sorted([f"job-{j1}", f"job-{j2}"])
    assert invalidated == [CONVERSATIONS_CACHE_KEY]


@pytest.mark.asyncio
async def test_schedule_failure_marks_local_job_failed():
    backend = FakeJobBackend()
    backend.fail_schedule = ServerRequestError(code="SERVER_REQUEST_ERROR", message="queue full", http_status=503)
    notifier = RecordingNotifier()
    tracker = _tracker(backend, notifier)

    with pytest.raises(ServerRequestError):
        await tracker.start_bulk_delete(["c1"])

    failed = tracker.jobs[0]
    assert failed.status == "failed"
    assert failed.error == "queue full"
    assert notifier.of_kind("error")[0]["key"] == f"job-error-{failed.id}"

    # 服务端之后报告同一个失败任务时不会重复通知
    tracker.observe([_job(failed.id, "failed", job_type="bulk_delete", error="queue full")])
    assert len(notifier.of_kind("error")) == 1


@pytest.mark.asyncio
async def test_listing_and_remove_job():
    backend = FakeJobBackend()
    tracker = _tracker(backend)
    tracker.observe(
        [
            _job("old", "completed", created_at=1.0),
            _job("new", "processing", created_at=2.0),
        ]
    )

    assert [j.id for j in tracker.jobs] == ["new", "old"]
    assert [j.id for j in tracker.active_jobs()] == ["new"]
    assert [j.id for j in tracker.completed_jobs()] == ["old"]

    await tracker.remove_job("old")
    assert backend.deleted == ["old"]
    assert tracker.get_job("old") is None


@pytest.mark.asyncio
async def test_run_polls_until_stopped():
    backend = FakeJobBackend()
    notifier = RecordingNotifier()
    tracker = _tracker(backend, notifier)
    backend.jobs = [_job("j1", "processing")]

    task = tracker.run(interval=0.01)
    assert tracker.run() is task
    await asyncio.sleep(0.02)
    backend.jobs = [_job("j1", "completed")]
    await asyncio.sleep(0.05)
    await tracker.stop()

    assert task.done()
    assert [e["key"] for e in notifier.of_kind("success")] == ["job-j1"]


def test_jobs_leaving_the_listing_are_forgotten():
    notifier = RecordingNotifier()
    tracker = _tracker(notifier=notifier)

    tracker.observe([_job("j1", "processing")])
    tracker.observe([_job("j1", "completed")])
    tracker.observe([])

    assert tracker._last_status == {}
    assert tracker._notified == set()
    # 重新出现的已完成任务没有可比较的前一状态，不会再次通知
    tracker.observe([_job("j1", "completed")])
    assert len(notifier.of_kind("success")) == 1


@pytest.mark.asyncio
async def test_remove_job_drops_tracking_state():
    backend = FakeJobBackend()
    tracker = _tracker(backend)
    tracker.observe([_job("j1", "processing")])
    tracker.observe([_job("j1", "failed", error="boom")])

    await tracker.remove_job("j1")

    assert "j1" not in tracker._last_status
    assert "job-error-j1" not in tracker._notified
