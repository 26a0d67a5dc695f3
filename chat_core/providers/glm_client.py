"""GLM / BigModel Provider 适配器。

接口风格与 OpenAI/Kimi 类似，差异点：
- 推理开关通过 thinking={"type": "enabled" | "disabled"} 传递；
- 开启联网搜索时，chunk 顶层会携带 web_search 列表，这里解析为引用来源。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.messages import Citation
from chat_core.domain.models import ReasoningConfig
from chat_core.providers.openai_compat import OpenAICompatibleClient
from chat_core.providers.registry import GLM_CONFIG, ModelConfig


class GlmClient(OpenAICompatibleClient):
    """GLM / BigModel Provider 客户端实现。"""

    name = "glm"
    provider_config = GLM_CONFIG
    api_key_field = "glm_api_key"
    base_url_field = "glm_base_url"

    def __init__(self, cfg=settings, api_key: Optional[str] = None):
        super().__init__(cfg, api_key=api_key)

    def _reasoning_options(self, reasoning: Optional[ReasoningConfig], model_cfg: ModelConfig) -> Dict[str, Any]:
        if not model_cfg.supports_reasoning:
            return {}
        enabled = bool(reasoning and reasoning.enabled)
        return {"thinking": {"type": "enabled" if enabled else "disabled"}}

    def _parse_citations(self, data: Dict[str, Any]) -> List[Citation]:
        citations: List[Citation] = []
        for item in data.get("web_search") or []:
            link = item.get("link")
            if not link:
                continue
            citations.append(Citation(url=link, title=item.get("title"), snippet=item.get("content")))
        return citations
