"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或 UI 层做统一捕获与用户提示。

流式请求相关的错误在 RequestOrchestrator 边界被统一折叠为
Finalized / Cancelled / Failed 三种结果，Reconciler 不需要关心传输细节。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、status_code 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """请求体或参数校验失败，请求不会被发出。"""


class TransportError(BusinessError):
    """传输层错误：连接失败、非 2xx 状态、流在终止帧之前结束等。可重试。"""


class UpstreamError(BusinessError):
    """上游模型通过 error 帧显式报告的失败。"""


class CancellationError(BusinessError):
    """用户主动取消。不作为错误展示，只走 Cancelled 结果分支。"""


class ConcurrencyViolation(BusinessError):
    """同一会话已有请求在进行中时再次发送。"""


class ParseError(BusinessError):
    """响应体无法解析。单帧解析失败会被吞掉，整包解析失败按传输错误处理。"""
