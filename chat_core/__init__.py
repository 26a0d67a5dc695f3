"""Chat Core 顶层包。

该包实现流式聊天编排层：消息存储与乐观更新对账、
私有模式（直连模型 Provider）与服务端模式（远端生成、本地观察）两套引擎、
取消令牌、聊天状态机、消息展示阶段推导以及后台任务跟踪。
"""

from chat_core.api.service import build_job_tracker, build_orchestrator
from chat_core.orchestration.context import ChatContext
from chat_core.orchestration.orchestrator import ChatOrchestrator

__all__ = ["ChatContext", "ChatOrchestrator", "build_job_tracker", "build_orchestrator"]
