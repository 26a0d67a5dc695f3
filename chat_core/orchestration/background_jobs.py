"""后台任务跟踪。

- start_export / start_import / start_bulk_delete：先创建本地乐观记录（客户端生成 job id），
  再向后端调度；
- observe / poll：把服务端任务列表与上一次观察到的状态做 diff，
  状态进入 completed / failed 时恰好通知一次（按 job-{id} / job-error-{id} 去重）；
- import / bulk_delete 完成后使本地会话列表缓存失效。
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.jobs import FINISHED_JOB_STATUSES, BackgroundJob, JobBackend, JobType
from chat_core.infrastructure.logging.logger import logger
from chat_core.orchestration.notifier import LoggingNotifier, Notifier

_LABELS: Dict[str, str] = {
    "export": "Export",
    "import": "Import",
    "bulk_archive": "Archive",
    "bulk_delete": "Delete",
    "conversation_summary": "Summary",
    "data_migration": "Data migration",
    "model_migration": "Model migration",
    "backup": "Backup",
}

_COMPLETED_MESSAGES: Dict[str, str] = {
    "export": "Export completed successfully!",
    "import": "Import completed successfully!",
    "bulk_delete": "Conversations deleted successfully!",
}

# 这些任务完成后，本地缓存的会话列表已过期
_INVALIDATING_TYPES = frozenset({"import", "bulk_delete"})

CONVERSATIONS_CACHE_KEY = "conversations"


class BackgroundJobTracker:
    def __init__(
        self,
        backend: JobBackend,
        notifier: Optional[Notifier] = None,
        on_invalidate: Optional[Callable[[str], None]] = None,
        cfg=settings,
    ):
        self._backend = backend
        self._notifier = notifier or LoggingNotifier()
        self._on_invalidate = on_invalidate
        self._poll_interval = cfg.job_poll_interval
        self._local: Dict[str, BackgroundJob] = {}
        self._server: Dict[str, BackgroundJob] = {}
        self._last_status: Dict[str, str] = {}
        self._notified: Set[str] = set()
        self._poll_task: Optional[asyncio.Task] = None

    # ---- 调度 ----

    async def start_export(
        self,
        conversation_ids: Optional[Sequence[str]] = None,
        include_attachments: bool = False,
    ) -> str:
        job = self._new_job("export", title="Export conversations", total=len(conversation_ids or ()))
        return await self._schedule(
            job,
            lambda: self._backend.schedule_export(job.id, conversation_ids, include_attachments),
        )

    async def start_import(
        self,
        conversations: Sequence[Dict[str, Any]],
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        job = self._new_job(
            "import",
            title=title or "Import conversations",
            description=description,
            total=len(conversations),
        )
        return await self._schedule(
            job,
            lambda: self._backend.schedule_import(job.id, conversations, title, description),
        )

    async def start_bulk_delete(self, conversation_ids: Sequence[str]) -> str:
        job = self._new_job("bulk_delete", title="Delete conversations", total=len(conversation_ids))
        return await self._schedule(
            job,
            lambda: self._backend.schedule_bulk_delete(job.id, conversation_ids),
        )

    def _new_job(self, job_type: JobType, *, title: str, description: Optional[str] = None, total: int = 0) -> BackgroundJob:
        return BackgroundJob(
            id=f"job-{uuid4().hex}",
            type=job_type,
            status="scheduled",
            title=title,
            description=description,
            total=total,
        )

    async def _schedule(self, job: BackgroundJob, call) -> str:
        self._local[job.id] = job
        label = _LABELS.get(job.type, job.type)
        self._notifier.info(f"{label} started", key=f"job-start-{job.id}", description=job.title)
        try:
            job.server_id = await call()
        except BusinessError as exc:
            job.status = "failed"
            job.error = exc.message
            job.completed_at = time.time()
            self._last_status[job.id] = "failed"
            self._notify_once(
                f"job-error-{job.id}",
                lambda: self._notifier.error(f"Failed to start {label.lower()}", key=f"job-error-{job.id}", description=exc.message),
            )
            self._log(logging.WARNING, "Job scheduling failed", job, error=exc.code)
            raise
        self._log(logging.INFO, "Job scheduled", job, server_id=job.server_id)
        return job.id

    # ---- 观察与对账 ----

    def observe(self, server_jobs: Sequence[BackgroundJob]) -> List[str]:
        """对一次服务端任务列表做 diff，返回本次触发的通知 key。"""

        fired: List[str] = []
        current: Dict[str, BackgroundJob] = {}
        for job in server_jobs:
            current[job.id] = job
            previous = self._last_status.get(job.id)
            if previous is None and job.id in self._local:
                previous = self._local[job.id].status
            if previous is not None and previous != job.status:
                key = self._on_transition(job)
                if key is not None:
                    fired.append(key)
            self._last_status[job.id] = job.status
            # 服务端已经接管的本地乐观记录不再单独跟踪
            self._local.pop(job.id, None)
        self._server = current
        for job_id in [j for j in self._last_status if j not in current and j not in self._local]:
            self._forget(job_id)
        return fired

    def _on_transition(self, job: BackgroundJob) -> Optional[str]:
        label = _LABELS.get(job.type, job.type)
        if job.status == "completed":
            key = f"job-{job.id}"
            message = _COMPLETED_MESSAGES.get(job.type, f"{label} completed")
            if not self._notify_once(key, lambda: self._notifier.success(message, key=key, description=job.title)):
                return None
            if job.type in _INVALIDATING_TYPES and self._on_invalidate is not None:
                self._on_invalidate(CONVERSATIONS_CACHE_KEY)
            self._log(logging.INFO, "Job completed", job)
            return key
        if job.status == "failed":
            key = f"job-error-{job.id}"
            description = job.error or "Unknown error"
            if not self._notify_once(
                key,
                lambda: self._notifier.error(f"{label} failed: {description}", key=key, description=job.title),
            ):
                return None
            self._log(logging.WARNING, "Job failed", job, error=job.error)
            return key
        return None

    def _forget(self, job_id: str) -> None:
        """丢弃已离开列表的任务的 diff 状态与通知记录。"""

        self._last_status.pop(job_id, None)
        self._notified.discard(f"job-{job_id}")
        self._notified.discard(f"job-error-{job_id}")

    def _notify_once(self, key: str, emit: Callable[[], None]) -> bool:
        if key in self._notified:
            return False
        self._notified.add(key)
        emit()
        return True

    async def poll(self, limit: int = 50) -> List[str]:
        jobs = await self._backend.list_jobs(limit)
        return self.observe(jobs)

    def run(self, interval: Optional[float] = None) -> asyncio.Task:
        """启动后台轮询任务；重复调用返回同一个任务。"""

        if self._poll_task is not None and not self._poll_task.done():
            return self._poll_task
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(interval or self._poll_interval))
        return self._poll_task

    async def _poll_loop(self, interval: float) -> None:
        while True:
            try:
                await self.poll()
            except BusinessError as exc:
                logger.log(
                    logging.WARNING,
                    "Job poll failed",
                    extra={"extra": {"code": exc.code, "error": exc.message}},
                )
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ---- 查询 ----

    @property
    def jobs(self) -> List[BackgroundJob]:
        merged = dict(self._server)
        for job_id, job in self._local.items():
            merged.setdefault(job_id, job)
        return sorted(merged.values(), key=lambda j: j.created_at, reverse=True)

    def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        return self._server.get(job_id) or self._local.get(job_id)

    def active_jobs(self) -> List[BackgroundJob]:
        return [j for j in self.jobs if j.is_active]

    def completed_jobs(self) -> List[BackgroundJob]:
        return [j for j in self.jobs if j.status in FINISHED_JOB_STATUSES]

    async def remove_job(self, job_id: str) -> None:
        """用户关闭任务卡片：移除本地记录，并删除服务端记录（若存在）。"""

        local = self._local.pop(job_id, None)
        server = self._server.pop(job_id, None)
        self._forget(job_id)
        target = server or local
        if target is not None and (server is not None or target.server_id):
            await self._backend.delete_job(job_id)

    @staticmethod
    def _log(level: int, message: str, job: BackgroundJob, **fields) -> None:
        payload = {"job_id": job.id, "job_type": job.type, "status": job.status}
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
