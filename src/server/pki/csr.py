"""
按角色策略生成私钥与 PKCS#10 证书签名请求。

纯函数，不做任何网络 I/O；除密钥随机性外输出由输入决定。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID
from loguru import logger

from .errors import (
    InvalidRequestError,
    UnsupportedKeyAlgorithmError,
    UnsupportedKeyCurveError,
)
from .schemas import RolePolicy

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

EC_CURVES = {
    "P224": ec.SECP224R1,
    "P256": ec.SECP256R1,
    "P384": ec.SECP384R1,
    "P521": ec.SECP521R1,
}


@dataclass(frozen=True)
class KeyMaterial:
    """新生成的私钥。属于单次请求，仅在 store_private_key 时被持久化。"""

    private_key: PrivateKey
    key_type: str  # "rsa" 或 "ec"
    key_size: int
    curve: str | None = None

    def private_key_pem(self) -> str:
        # RSA 输出 "RSA PRIVATE KEY"，EC 输出 "EC PRIVATE KEY"
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")


@dataclass(frozen=True)
class SigningRequest:
    """PEM 编码的 CSR，与一份 KeyMaterial 一一对应，创建后不可变。"""

    common_name: str
    dns_names: Tuple[str, ...]
    csr_pem: str


def normalize_names(common_name: str, alt_names: Sequence[str]) -> Tuple[str, List[str]]:
    """
    规范化 CN 与 SAN 列表。
    :param common_name: 请求的 Common Name，可为空。
    :param alt_names: 请求的备用名称。
    :return: (common_name, san 列表)，SAN 去重且必然包含 CN 恰好一次。
    :raises InvalidRequestError: 两者都为空时。
    """
    names: List[str] = []
    for name in alt_names:
        name = name.strip()
        if name and name not in names:
            names.append(name)

    common_name = (common_name or "").strip()
    if not common_name and not names:
        raise InvalidRequestError("证书上未指定任何域名")
    if not common_name:
        common_name = names[0]

    if common_name not in names:
        logger.debug(f"CN {common_name} 不在 SAN 中，已追加")
        names.append(common_name)
    return common_name, names


def generate_private_key(policy: RolePolicy) -> KeyMaterial:
    """
    按角色的 key_type / key_bits / key_curve 生成私钥。
    :raises UnsupportedKeyAlgorithmError: key_type 不是 rsa / ec。
    :raises UnsupportedKeyCurveError: ec 时曲线不在四种命名曲线之内。
    :raises InvalidRequestError: RSA 密钥长度不被底层库接受。
    """
    if policy.key_type == "rsa":
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=policy.key_bits)
        except ValueError as e:
            raise InvalidRequestError(f"无效的 RSA 密钥长度 {policy.key_bits}: {e}") from e
        return KeyMaterial(private_key=key, key_type="rsa", key_size=key.key_size)

    if policy.key_type == "ec":
        curve_cls = EC_CURVES.get(policy.key_curve)
        if curve_cls is None:
            raise UnsupportedKeyCurveError(policy.key_curve)
        key = ec.generate_private_key(curve_cls())
        return KeyMaterial(
            private_key=key,
            key_type="ec",
            key_size=key.curve.key_size,
            curve=policy.key_curve,
        )

    raise UnsupportedKeyAlgorithmError(policy.key_type)


def build_signing_request(
    common_name: str, alt_names: Sequence[str], policy: RolePolicy
) -> Tuple[SigningRequest, KeyMaterial]:
    """
    生成私钥并构造以其签名的 CSR。
    :param common_name: 请求的 Common Name，可为空。
    :param alt_names: 请求的 DNS 备用名称。
    :param policy: 角色策略。
    :return: (SigningRequest, KeyMaterial)
    """
    common_name, dns_names = normalize_names(common_name, alt_names)
    logger.info(f"使用 CN {common_name} 与 SAN {dns_names} 构造 CSR")

    key_material = generate_private_key(policy)
    logger.debug(
        f"已生成私钥: type={key_material.key_type}, size={key_material.key_size}, "
        f"curve={key_material.curve}"
    )

    try:
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                critical=False,
            )
            .sign(key_material.private_key, hashes.SHA256())
        )
    except ValueError as e:
        # 例如 CN 超过 64 个字符或包含非 ASCII 的 DNS 名称
        raise InvalidRequestError(f"无法构造 CSR: {e}") from e
    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode("utf-8")

    return (
        SigningRequest(common_name=common_name, dns_names=tuple(dns_names), csr_pem=csr_pem),
        key_material,
    )
