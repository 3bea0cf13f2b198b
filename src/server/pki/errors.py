"""
证书签发流程的异常体系。

输入类错误继承 ValueError，查找类错误继承 LookupError，
CA / 存储 / 解析失败继承 RuntimeError，路由层据此映射 HTTP 状态码。
"""


class PKIError(Exception):
    """所有证书签发相关错误的基类。"""


class InvalidRequestError(PKIError, ValueError):
    """请求参数缺失或非法。"""


class UnsupportedKeyAlgorithmError(InvalidRequestError):
    """角色配置的 key_type 不是 rsa 或 ec。"""

    def __init__(self, key_type: str):
        super().__init__(f"无法确定密钥算法: {key_type!r}")
        self.key_type = key_type


class UnsupportedKeyCurveError(InvalidRequestError):
    """角色配置的 key_curve 不在 P224/P256/P384/P521 之内。"""

    def __init__(self, key_curve: str):
        super().__init__(f"不支持的椭圆曲线: {key_curve!r}")
        self.key_curve = key_curve


class RoleNotFoundError(PKIError, LookupError):
    def __init__(self, role: str):
        super().__init__(f"未知的角色: {role}")
        self.role = role


class CertificateNotFoundError(PKIError, LookupError):
    def __init__(self, key: str):
        super().__init__(f"证书不存在: {key}")
        self.key = key


class LeaseNotFoundError(PKIError, LookupError):
    def __init__(self, lease_id: str):
        super().__init__(f"租约不存在或已过期: {lease_id}")
        self.lease_id = lease_id


class CAError(PKIError, RuntimeError):
    """CA 客户端返回的错误。"""


class CASubmissionError(CAError):
    """提交 CSR 失败，不重试。"""


class CARetrievalError(CAError):
    """拉取证书失败（非 pending / timeout），不重试。"""


class CertificatePendingError(CAError):
    """CA 尚未签发完成，可稍后重试。"""


class CertificateRetrieveTimeoutError(CAError):
    """CA 拉取超时，可稍后重试。"""


class MalformedCertificateError(PKIError, RuntimeError):
    """CA 返回的证书无法解码或解析。"""


class StorageWriteError(PKIError, RuntimeError):
    """
    证书已由 CA 签发，但写入存储失败。
    与签发失败区分开：证书已存在于 CA 侧，只是本地没有记录。
    """

    def __init__(self, key: str, serial_number: str, reason: str):
        super().__init__(
            f"证书已签发但未记录 (serial={serial_number}): 写入 {key} 失败: {reason}"
        )
        self.key = key
        self.serial_number = serial_number
        self.reason = reason
