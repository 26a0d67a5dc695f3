"""OpenAI 兼容 chat/completions 流式协议的公共实现。

GLM 与 Kimi 都使用相同的端点与 SSE 格式：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 增量: choices[].delta.content / choices[].delta.reasoning_content

子类只需声明 name、配置字段名，并按需覆盖推理参数与引用解析。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.messages import Citation
from chat_core.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatStreamDelta,
    ChatUsage,
    ReasoningConfig,
)
from chat_core.providers.registry import ModelConfig, ProviderConfig, resolve_model


class OpenAICompatibleClient:
    name = "openai-compatible"
    provider_config: ProviderConfig
    api_key_field = ""
    base_url_field = ""

    def __init__(self, cfg, api_key: Optional[str] = None):
        self._settings = cfg
        self._api_key = api_key or getattr(cfg, self.api_key_field, None)

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        if not self._api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self.api_key_field.upper()} not set",
                provider=self.name,
            )
        model_cfg = resolve_model(self.name, req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, self.base_url_field, None) or self.provider_config.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{base}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(
                            code="RATE_LIMIT",
                            message=f"{self.name} rate limit",
                            http_status=429,
                        )
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        data = self._decode_sse_line(line)
                        if data is None:
                            continue
                        yield self._parse_stream_chunk(data, req)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    @staticmethod
    def _decode_sse_line(line: str) -> Optional[Dict[str, Any]]:
        if not line:
            return None
        data_str = line
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        else:
            data_str = data_str.strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
            "stream": True,
        }
        payload.update(self._reasoning_options(req.reasoning, model_cfg))
        return payload

    def _reasoning_options(self, reasoning: Optional[ReasoningConfig], model_cfg: ModelConfig) -> Dict[str, Any]:
        return {}

    def _parse_citations(self, data: Dict[str, Any]) -> List[Citation]:
        return []

    def _parse_stream_chunk(self, data: Dict[str, Any], req: ChatRequest) -> ChatStreamChunk:
        choices: List[ChatStreamChoice] = []
        citations = self._parse_citations(data)
        for i, ch in enumerate(data.get("choices", [])):
            delta_payload = ch.get("delta") or {}
            delta = ChatStreamDelta(
                content=delta_payload.get("content") or "",
                reasoning=delta_payload.get("reasoning_content") or "",
                citations=citations if i == 0 else [],
            )
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=delta,
                    finish_reason=ch.get("finish_reason"),
                )
            )
        if not choices and citations:
            choices.append(ChatStreamChoice(index=0, delta=ChatStreamDelta(citations=citations)))
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}
