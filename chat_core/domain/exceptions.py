"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在引擎层统一捕获，并按类别决定是否展示给用户：

- BackendConnectionError / AuthError / RequestError：展示为错误横幅，
  并把正在生成的助手消息改写为 ``Error: <message>``。
- StreamParseError：单个数据块解析失败，记录日志后跳过，流继续。
- StorageError：持久化失败，记录日志，由下一个防抖周期重试。
- CancellationError：记录在被取消的生成句柄上，不展示给用户。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class BackendConnectionError(BusinessError):
    """后端不可达：连接失败、超时、流读取停滞等。"""


class AuthError(BusinessError):
    """缺少或无效的凭证（API Key）。"""


class RequestError(BusinessError):
    """请求本身有问题：格式错误、模型不存在等。"""


class RateLimitError(RequestError):
    """Provider 限流错误。不会自动重试，由用户重新发送。"""


class StreamParseError(BusinessError):
    """单个流式数据块无法解析，非致命。"""


class StorageError(BusinessError):
    """持久化层读写失败。"""


class CancellationError(BusinessError):
    """生成被取消（内部信号）。"""
