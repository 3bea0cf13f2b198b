"""
CA 客户端。

签发流程只依赖两个操作：
- submit(SigningRequest) -> pickup_id
- retrieve(pickup_id) -> IssuedCertificateSet，
  未完成时抛出 CertificatePendingError / CertificateRetrieveTimeoutError。
可选的 cancel(pickup_id) 用于编排器放弃等待时释放客户端持有的请求。

实现：
- LocalCAClient: 磁盘上的自签开发 CA，可模拟若干次 pending。
- HttpCAClient: TPP 风格的 REST CA（/vedsdk/certificates/request 与 /retrieve）。
"""

from __future__ import annotations

import base64
import os
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Protocol, Tuple

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from loguru import logger

from src.server.config import Config
from .csr import SigningRequest
from .errors import (
    CARetrievalError,
    CASubmissionError,
    CertificatePendingError,
    CertificateRetrieveTimeoutError,
)

_PEM_CERT_RE = re.compile(r"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----")


@dataclass(frozen=True)
class IssuedCertificateSet:
    """CA 返回的 PEM 集合：叶子证书与按顺序排列的证书链。"""

    certificate: str
    chain: Tuple[str, ...] = ()


class CAClient(Protocol):
    def submit(self, request: SigningRequest) -> str: ...

    def retrieve(self, pickup_id: str) -> IssuedCertificateSet: ...


def split_pem_bundle(bundle: str) -> List[str]:
    """从一段文本中按顺序提取所有证书 PEM 块。"""
    return _PEM_CERT_RE.findall(bundle)


class LocalCAClient:
    """
    本地开发用 CA。提交后需经过 pending_polls 次 retrieve 才会真正签发，
    用于在没有远程 CA 的环境下演练异步签发流程。
    """

    def __init__(
        self,
        ca_dir: str,
        pending_polls: int = 0,
        validity_days: int = 365,
        common_name: str = "PKI Lease Service Dev Root CA",
        organization: str = "PKI Lease Service",
    ):
        self.ca_dir = ca_dir
        self.pending_polls = pending_polls
        self.validity_days = validity_days
        self.common_name = common_name
        self.organization = organization
        self._pending: Dict[str, Tuple[x509.CertificateSigningRequest, int]] = {}
        self._lock = threading.Lock()
        self._ca_lock = threading.Lock()

    def _paths(self) -> Dict[str, str]:
        """返回 CA 私钥与证书文件的路径。"""
        return {
            "key": os.path.join(self.ca_dir, "ca_key.pem"),
            "cert": os.path.join(self.ca_dir, "ca_cert.pem"),
        }

    def load_or_create_ca(self) -> tuple:
        """
        加载或创建开发用自签 CA。
        返回 (ca_private_key, ca_certificate)。
        """
        paths = self._paths()
        os.makedirs(self.ca_dir, exist_ok=True)

        if os.path.exists(paths["key"]) and os.path.exists(paths["cert"]):
            with open(paths["key"], "rb") as f:
                ca_key = serialization.load_pem_private_key(f.read(), password=None)
            with open(paths["cert"], "rb") as f:
                ca_cert = x509.load_pem_x509_certificate(f.read())
            return ca_key, ca_cert

        logger.info(f"在 {self.ca_dir} 生成新的开发 CA")
        ca_key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(NameOID.COMMON_NAME, self.common_name),
            ]
        )
        now = datetime.now(timezone.utc)
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(private_key=ca_key, algorithm=hashes.SHA256())
        )

        with open(paths["key"], "wb") as f:
            f.write(
                ca_key.private_bytes(
                    encoding=Encoding.PEM,
                    format=PrivateFormat.PKCS8,
                    encryption_algorithm=NoEncryption(),
                )
            )
        os.chmod(paths["key"], 0o600)
        with open(paths["cert"], "wb") as f:
            f.write(ca_cert.public_bytes(Encoding.PEM))

        return ca_key, ca_cert

    def submit(self, request: SigningRequest) -> str:
        try:
            csr = x509.load_pem_x509_csr(request.csr_pem.encode("utf-8"))
        except ValueError as e:
            raise CASubmissionError(f"无效的 CSR 格式: {e}") from e
        if not csr.is_signature_valid:
            raise CASubmissionError("CSR 签名校验失败")

        pickup_id = str(uuid.uuid4())
        with self._lock:
            self._pending[pickup_id] = (csr, self.pending_polls)
        logger.debug(f"开发 CA 已受理 {request.common_name}，pickup_id={pickup_id}")
        return pickup_id

    def retrieve(self, pickup_id: str) -> IssuedCertificateSet:
        with self._lock:
            entry = self._pending.get(pickup_id)
            if entry is None:
                raise CARetrievalError(f"未知的 pickup_id: {pickup_id}")
            csr, remaining = entry
            if remaining > 0:
                self._pending[pickup_id] = (csr, remaining - 1)
                raise CertificatePendingError(f"证书 {pickup_id} 仍在签发中")
            del self._pending[pickup_id]

        return self._sign(csr)

    def cancel(self, pickup_id: str) -> None:
        """放弃一个尚未签发的请求，释放其 CSR。"""
        with self._lock:
            removed = self._pending.pop(pickup_id, None)
        if removed is not None:
            logger.debug(f"开发 CA 已放弃 pickup_id={pickup_id}")

    def _sign(self, csr: x509.CertificateSigningRequest) -> IssuedCertificateSet:
        with self._ca_lock:
            ca_key, ca_cert = self.load_or_create_ca()

        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
        )

        # 复制 CSR 中请求的 SAN
        for ext in csr.extensions:
            if isinstance(ext.value, x509.SubjectAlternativeName):
                builder = builder.add_extension(ext.value, critical=ext.critical)

        cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
        return IssuedCertificateSet(
            certificate=cert.public_bytes(Encoding.PEM).decode("utf-8"),
            chain=(ca_cert.public_bytes(Encoding.PEM).decode("utf-8"),),
        )


class HttpCAClient:
    """
    TPP 风格 REST CA 的客户端。
    - 提交: POST {base}/vedsdk/certificates/request，返回 CertificateDN 作为 pickup_id
    - 拉取: POST {base}/vedsdk/certificates/retrieve
      200 返回 Base64 编码的 PEM 证书包；202 表示仍在签发；408 / 504 表示拉取超时
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        zone: str = "",
        verify: bool = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-Venafi-Api-Key"] = api_key
        self.zone = zone
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def submit(self, request: SigningRequest) -> str:
        payload = {
            "PolicyDN": self.zone,
            "PKCS10": request.csr_pem,
            "ObjectName": request.common_name,
            "DisableAutomaticRenewal": True,
        }
        try:
            resp = self._client.post("/vedsdk/certificates/request", json=payload)
        except httpx.HTTPError as e:
            raise CASubmissionError(f"提交证书请求失败: {e}") from e

        if resp.status_code not in (200, 201):
            raise CASubmissionError(
                f"提交证书请求失败: HTTP {resp.status_code}: {resp.text}"
            )
        try:
            pickup_id = resp.json()["CertificateDN"]
        except (ValueError, KeyError, TypeError) as e:
            raise CASubmissionError(f"CA 返回的提交结果无法解析: {resp.text}") from e
        if not pickup_id:
            raise CASubmissionError("CA 未返回 CertificateDN")
        return pickup_id

    def retrieve(self, pickup_id: str) -> IssuedCertificateSet:
        payload = {
            "CertificateDN": pickup_id,
            "Format": "Base64",
            "IncludeChain": True,
            "RootFirstOrder": False,
        }
        try:
            resp = self._client.post("/vedsdk/certificates/retrieve", json=payload)
        except httpx.TimeoutException as e:
            raise CertificateRetrieveTimeoutError(f"拉取证书超时: {e}") from e
        except httpx.HTTPError as e:
            raise CARetrievalError(f"拉取证书失败: {e}") from e

        if resp.status_code == 202:
            raise CertificatePendingError(f"证书 {pickup_id} 仍在签发中")
        if resp.status_code in (408, 504):
            raise CertificateRetrieveTimeoutError(f"拉取证书超时: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise CARetrievalError(f"拉取证书失败: HTTP {resp.status_code}: {resp.text}")

        try:
            bundle = base64.b64decode(resp.json()["CertificateData"]).decode("utf-8")
        except (ValueError, KeyError, TypeError) as e:
            raise CARetrievalError(f"CA 返回的证书数据无法解析: {e}") from e

        blocks = split_pem_bundle(bundle)
        if not blocks:
            raise CARetrievalError("CA 返回的证书数据中没有证书")
        return IssuedCertificateSet(certificate=blocks[0], chain=tuple(blocks[1:]))


def build_ca_client(cfg: Config) -> CAClient:
    """根据配置构造 CA 客户端。"""
    if cfg.ca_backend == "http":
        if not cfg.ca_url:
            raise ValueError("ca_backend=http 时必须配置 ca_url")
        logger.info(f"使用远程 CA: {cfg.ca_url} (zone={cfg.ca_zone or '[default]'})")
        return HttpCAClient(
            base_url=cfg.ca_url,
            api_key=cfg.ca_api_key,
            zone=cfg.ca_zone,
            verify=cfg.ca_verify_tls,
            timeout=cfg.ca_request_timeout,
        )
    logger.info(f"使用本地开发 CA: {cfg.dev_ca_dir}")
    return LocalCAClient(
        ca_dir=cfg.dev_ca_dir,
        pending_polls=cfg.dev_ca_pending_polls,
        validity_days=cfg.dev_ca_validity_days,
    )
