"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层（ChatOrchestrator）做统一捕获与用户提示。

注意：用户主动停止生成不是异常，而是正常的 "stopped" 终态，
因此这里没有对应的异常类型。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "NO_MODEL_SELECTED"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """发送前校验失败（未选模型、匿名受限、空消息、缺少密钥等），不会自动重试。"""


class TransportError(BusinessError):
    """流式生成过程中的网络 / Provider 故障，可通过显式重试恢复。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(TransportError):
    """Provider 或后端限流错误，由上层负责重试/退避策略。"""


class ServerRequestError(BusinessError):
    """远端后端拒绝了请求，message 优先使用服务端返回的错误信息。"""
