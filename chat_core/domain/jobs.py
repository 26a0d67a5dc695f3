"""后台任务（导出 / 导入 / 批量删除等）模型。"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

JobType = Literal[
    "export",
    "import",
    "bulk_archive",
    "bulk_delete",
    "conversation_summary",
    "data_migration",
    "model_migration",
    "backup",
]

JobStatus = Literal["scheduled", "processing", "completed", "failed", "cancelled"]

ACTIVE_JOB_STATUSES = frozenset({"scheduled", "processing"})
FINISHED_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})


@dataclass
class BackgroundJob:
    """一条后台任务记录。

    - id: 客户端生成的幂等键（服务端会原样回传）。
    - server_id: 服务端分配的记录 id，未知时为 None。
    """

    id: str
    type: JobType
    status: JobStatus = "scheduled"
    processed: int = 0
    total: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    description: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    server_id: Optional[str] = None

    @property
    def progress(self) -> int:
        if self.total <= 0:
            return 100 if self.status == "completed" else 0
        return min(100, round(self.processed * 100 / self.total))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


class JobBackend(Protocol):
    """后台任务后端：调度任务并提供可轮询的任务列表。

    schedule_* 接收客户端生成的 job_id 作为幂等键，返回服务端记录 id。
    """

    async def schedule_export(
        self,
        job_id: str,
        conversation_ids: Optional[Sequence[str]] = None,
        include_attachments: bool = False,
    ) -> str:
        ...

    async def schedule_import(
        self,
        job_id: str,
        conversations: Sequence[Dict[str, Any]],
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        ...

    async def schedule_bulk_delete(self, job_id: str, conversation_ids: Sequence[str]) -> str:
        ...

    async def list_jobs(self, limit: int = 50) -> List[BackgroundJob]:
        ...

    async def delete_job(self, job_id: str) -> None:
        ...
