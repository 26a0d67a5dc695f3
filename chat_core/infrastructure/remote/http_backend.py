"""远端聊天后端的 HTTP 适配器。

同时实现 ChatBackend（服务端模式）与 JobBackend（后台任务）两个协议：
- 认证: Authorization: Bearer <backend_token>（未配置时不带）
- 会话文档没有推送通道，watch_conversation 以 poll_interval 轮询 GET /conversations/{id}

错误映射：
- httpx.RequestError -> NetworkError
- 429 -> RateLimitError
- 其他 4xx/5xx -> ServerRequestError（优先使用服务端返回的 message / error 字段）
"""

import asyncio
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationSnapshot, RetryType
from chat_core.domain.exceptions import NetworkError, RateLimitError, ServerRequestError
from chat_core.domain.jobs import BackgroundJob
from chat_core.domain.messages import Attachment, Citation, ImageGeneration, Message, MessageMetadata
from chat_core.domain.models import ReasoningConfig


def _attachment_payload(att: Attachment) -> Dict[str, Any]:
    return {k: v for k, v in asdict(att).items() if v is not None}


def _reasoning_payload(cfg: Optional[ReasoningConfig]) -> Optional[Dict[str, Any]]:
    if cfg is None:
        return None
    return asdict(cfg)


def parse_message(data: Dict[str, Any]) -> Message:
    """把后端返回的一行消息 JSON 解析为 Message。"""

    meta_raw = data.get("metadata") or {}
    image_raw = data.get("image_generation") or data.get("imageGeneration")
    image = None
    if image_raw:
        image = ImageGeneration(
            status=image_raw.get("status", "scheduled"),
            prompt=image_raw.get("prompt"),
            model=image_raw.get("model"),
            output=list(image_raw.get("output") or []),
            error=image_raw.get("error"),
        )
    return Message(
        id=str(data.get("id") or data.get("_id")),
        role=data.get("role", "assistant"),
        content=data.get("content") or "",
        reasoning=data.get("reasoning"),
        citations=[
            Citation(url=c["url"], title=c.get("title"), snippet=c.get("snippet"))
            for c in data.get("citations") or []
            if c.get("url")
        ],
        attachments=[
            Attachment(
                type=a.get("type", "text"),
                name=a.get("name", ""),
                url=a.get("url"),
                content=a.get("content"),
                mime_type=a.get("mime_type") or a.get("mimeType"),
                size=a.get("size") or 0,
            )
            for a in data.get("attachments") or []
        ],
        status=data.get("status"),
        image_generation=image,
        metadata=MessageMetadata(
            finish_reason=meta_raw.get("finish_reason") or meta_raw.get("finishReason"),
            prompt_tokens=meta_raw.get("prompt_tokens"),
            completion_tokens=meta_raw.get("completion_tokens"),
            total_tokens=meta_raw.get("total_tokens"),
            stopped_by_user=bool(meta_raw.get("stopped_by_user") or meta_raw.get("stopped")),
            error=meta_raw.get("error"),
        ),
        model=data.get("model"),
        provider=data.get("provider"),
        created_at=data.get("created_at") or data.get("createdAt") or 0.0,
    )


def parse_job(data: Dict[str, Any]) -> BackgroundJob:
    return BackgroundJob(
        id=str(data.get("job_id") or data.get("jobId") or data.get("id")),
        type=data.get("type", "export"),
        status=data.get("status", "scheduled"),
        processed=data.get("processed") or data.get("processed_items") or 0,
        total=data.get("total") or data.get("total_items") or 0,
        error=data.get("error"),
        result=data.get("result"),
        title=data.get("title"),
        description=data.get("description"),
        created_at=data.get("created_at") or 0.0,
        completed_at=data.get("completed_at"),
        server_id=data.get("id") or data.get("_id"),
    )


class HttpChatBackend:
    def __init__(
        self,
        cfg=settings,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = cfg
        self._base_url = (base_url or cfg.backend_base_url).rstrip("/")
        self._token = token if token is not None else getattr(cfg, "backend_token", None)
        self._transport = transport
        self._poll_interval = getattr(cfg, "poll_interval", 0.5)

    # ---- ChatBackend ----

    async def create_conversation(
        self,
        first_message: str,
        *,
        model: str,
        provider: str,
        persona_id: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/conversations",
            json={
                "first_message": first_message,
                "model": model,
                "provider": provider,
                "persona_id": persona_id,
                "attachments": [_attachment_payload(a) for a in attachments],
                "reasoning_config": _reasoning_payload(reasoning_config),
            },
        )
        return str(data["conversation_id"])

    async def send_follow_up_message(
        self,
        conversation_id: str,
        content: str,
        *,
        model: str,
        provider: str,
        attachments: Sequence[Attachment] = (),
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={
                "content": content,
                "model": model,
                "provider": provider,
                "attachments": [_attachment_payload(a) for a in attachments],
                "reasoning_config": _reasoning_payload(reasoning_config),
            },
        )

    async def retry_from_message(
        self,
        conversation_id: str,
        message_id: str,
        retry_type: RetryType,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/retry",
            json={
                "message_id": message_id,
                "retry_type": retry_type,
                "model": model,
                "provider": provider,
                "reasoning_config": _reasoning_payload(reasoning_config),
            },
        )

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        new_content: str,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/edit",
            json={
                "message_id": message_id,
                "new_content": new_content,
                "model": model,
                "provider": provider,
                "reasoning_config": _reasoning_payload(reasoning_config),
            },
        )

    async def resume_conversation(
        self,
        conversation_id: str,
        *,
        model: str,
        provider: str,
        reasoning_config: Optional[ReasoningConfig] = None,
    ) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/resume",
            json={"model": model, "provider": provider, "reasoning_config": _reasoning_payload(reasoning_config)},
        )

    async def stop_generation(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/stop")

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    async def get_conversation(self, conversation_id: str) -> ConversationSnapshot:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        conv_raw = data.get("conversation") or {}
        conversation = Conversation(
            id=str(conv_raw.get("id") or conversation_id),
            title=conv_raw.get("title") or "",
            is_streaming=bool(conv_raw.get("is_streaming") or conv_raw.get("isStreaming")),
            persona_id=conv_raw.get("persona_id"),
            created_at=conv_raw.get("created_at"),
            updated_at=conv_raw.get("updated_at"),
        )
        messages = [parse_message(m) for m in data.get("messages") or []]
        return ConversationSnapshot(conversation=conversation, messages=messages)

    async def watch_conversation(self, conversation_id: str) -> AsyncIterator[ConversationSnapshot]:
        while True:
            yield await self.get_conversation(conversation_id)
            await asyncio.sleep(self._poll_interval)

    async def save_private_conversation(
        self,
        messages: Sequence[Message],
        *,
        persona_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/conversations/import-private",
            json={
                "title": title,
                "persona_id": persona_id,
                "messages": [
                    {
                        "role": m.role,
                        "content": m.content,
                        "reasoning": m.reasoning,
                        "model": m.model,
                        "provider": m.provider,
                        "created_at": m.created_at,
                        "attachments": [_attachment_payload(a) for a in m.attachments],
                        "citations": [asdict(c) for c in m.citations],
                    }
                    for m in messages
                ],
            },
        )
        return str(data["conversation_id"])

    # ---- JobBackend ----

    async def schedule_export(
        self,
        job_id: str,
        conversation_ids: Optional[Sequence[str]] = None,
        include_attachments: bool = False,
    ) -> str:
        data = await self._request(
            "POST",
            "/jobs/export",
            json={
                "job_id": job_id,
                "conversation_ids": list(conversation_ids) if conversation_ids is not None else None,
                "include_attachments": include_attachments,
            },
        )
        return str(data.get("id") or job_id)

    async def schedule_import(
        self,
        job_id: str,
        conversations: Sequence[Dict[str, Any]],
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        data = await self._request(
            "POST",
            "/jobs/import",
            json={
                "job_id": job_id,
                "conversations": list(conversations),
                "title": title,
                "description": description,
            },
        )
        return str(data.get("id") or job_id)

    async def schedule_bulk_delete(self, job_id: str, conversation_ids: Sequence[str]) -> str:
        data = await self._request(
            "POST",
            "/jobs/bulk-delete",
            json={"job_id": job_id, "conversation_ids": list(conversation_ids)},
        )
        return str(data.get("id") or job_id)

    async def list_jobs(self, limit: int = 50) -> List[BackgroundJob]:
        data = await self._request("GET", "/jobs", params={"limit": limit})
        return [parse_job(j) for j in data.get("jobs") or []]

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/jobs/{job_id}")

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                trust_env=False,
                transport=self._transport,
            ) as client:
                resp = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=json,
                    params=params,
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Backend rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ServerRequestError(
                code="SERVER_REQUEST_ERROR",
                message=self._error_message(resp),
                http_status=resp.status_code,
                path=path,
            )
        if not resp.content:
            return {}
        data = resp.json()
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)
        return str(data)
