"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Gateway 层统一转换为 agent/error 帧。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "BUDGET_ERROR"），会原样放进错误帧的 code 字段。
        message: 用户可读错误信息。
        extra: 其他补充字段（例如 provider、http_status 等）。
    """

    def __init__(self, code: str, message: str, **extra):
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class BudgetError(BusinessError):
    """预留回答空间后，可用的 prompt token 不为正。"""


class DecodeError(BusinessError):
    """入站帧无法解析，连接不受影响。"""


class AuthError(BusinessError):
    """连接缺少或携带了无效的 token。"""


class DuplicateRequestError(BusinessError):
    """同一连接上已有相同 id 的请求在执行。"""


class ProviderError(BusinessError):
    """Completion Provider 返回的错误基类。"""


class NetworkError(ProviderError):
    """网络层错误，例如连接失败、超时、流被意外中断等。"""


class ApiError(ProviderError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ProviderError):
    """Provider 限流错误，本服务不自动重试。"""
