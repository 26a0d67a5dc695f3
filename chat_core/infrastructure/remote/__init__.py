"""远端后端（服务端模式 / 后台任务）的 HTTP 适配。"""

from chat_core.infrastructure.remote.http_backend import HttpChatBackend

__all__ = ["HttpChatBackend"]
