"""
解析 CA 返回的证书，提取序列号与到期时间，组装待持久化的字段。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from cryptography import x509
from loguru import logger

from .ca_client import IssuedCertificateSet
from .errors import MalformedCertificateError


@dataclass(frozen=True)
class MaterializedCertificate:
    certificate: str
    certificate_chain: str
    serial_number: str  # AB:CD:... 形式
    not_after: datetime


def format_serial(serial: int) -> str:
    """
    将证书序列号格式化为冒号分隔的大写十六进制字节，如 "01:AB:FF"。
    使用最小字节表示，与 big.Int.Bytes() 一致。
    """
    raw = serial.to_bytes((serial.bit_length() + 7) // 8, "big")
    return ":".join(f"{b:02X}" for b in raw)


def normalize_serial(serial_number: str) -> str:
    """存储键用的序列号：小写且以连字符代替冒号。"""
    return serial_number.lower().replace(":", "-")


def parse_certificate(pem: str) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError as e:
        logger.error(f"解析 CA 返回的证书失败: {e}")
        raise MalformedCertificateError(f"无法解析 CA 返回的证书: {e}") from e


def materialize(issued: IssuedCertificateSet) -> MaterializedCertificate:
    """
    :param issued: CA 返回的叶子证书与证书链。
    :return: certificate 仅含叶子证书，certificate_chain 为叶子 + 链（按此顺序）。
    :raises MalformedCertificateError: 叶子证书无法解码或解析。
    """
    if not issued.certificate or not issued.certificate.strip():
        raise MalformedCertificateError("CA 返回了空证书")

    parsed = parse_certificate(issued.certificate)
    serial_number = format_serial(parsed.serial_number)

    certificate = issued.certificate
    certificate_chain = "\n".join([issued.certificate, *issued.chain])
    logger.info(
        f"证书已解析: subject={parsed.subject.rfc4514_string()}, serial={serial_number}, "
        f"not_after={parsed.not_valid_after_utc.isoformat()}"
    )
    return MaterializedCertificate(
        certificate=certificate,
        certificate_chain=certificate_chain,
        serial_number=serial_number,
        not_after=parsed.not_valid_after_utc,
    )
