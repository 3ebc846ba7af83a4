"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话控制器或 UI 协作方做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、base_url 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConnectError(BusinessError):
    """无法连接推理服务，或服务端以非 2xx 状态拒绝了请求。

    code 为 "UNREACHABLE" 时表示请求本身失败（DNS、拒绝连接等），
    为 "HTTP_ERROR" 时表示服务端可达但返回了错误状态。
    """

    UNREACHABLE = "UNREACHABLE"
    HTTP_ERROR = "HTTP_ERROR"

    @property
    def unreachable(self) -> bool:
        return self.code == self.UNREACHABLE


class StreamInterruptedError(BusinessError):
    """流已经开始之后传输层读取失败。"""


class ServerStreamError(BusinessError):
    """服务端在流中途发送了 {"error": ...} 行。"""


class StreamParseError(BusinessError):
    """单行无法解析。只记录日志，不会中断整个流。"""


class AlreadyGenerating(BusinessError):
    """同一会话已存在进行中的生成。"""


class Cancelled(BusinessError):
    """用户主动取消，不会以错误文本的形式展示。"""


class ConversationNotFound(BusinessError):
    """会话 ID 不存在。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StoreError(BusinessError):
    """持久化读写失败。"""
