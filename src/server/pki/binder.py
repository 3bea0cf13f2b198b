"""
持久化与租约绑定。

同一条证书记录可能按 CN 与序列号各写一份；两次写入相互独立，
不存在主从关系，也不做事务回滚：第二次写失败时第一份仍然保留。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from loguru import logger

from .errors import StorageWriteError
from .leases import LeaseManager
from .materialize import MaterializedCertificate, normalize_serial
from .schemas import CertificateData, CertificateRecord, IssueResponse, RolePolicy
from .storage import Storage

CERT_PREFIX = "certs/"

PRIVATE_KEY_WARNING = "应通过访问控制限制对该接口的读权限，因为响应中会原样返回证书私钥。"


def build_record(
    cert: MaterializedCertificate, private_key_pem: str, policy: RolePolicy
) -> CertificateRecord:
    return CertificateRecord(
        certificate=cert.certificate,
        certificate_chain=cert.certificate_chain,
        private_key=private_key_pem if policy.store_private_key else None,
        serial_number=cert.serial_number,
    )


def storage_keys(common_name: str, serial_number: str, policy: RolePolicy) -> List[str]:
    keys = []
    if policy.store_by_cn:
        keys.append(CERT_PREFIX + common_name)
    if policy.store_by_serial:
        keys.append(CERT_PREFIX + normalize_serial(serial_number))
    return keys


def persist(
    storage: Storage, record: CertificateRecord, keys: List[str]
) -> List[str]:
    """
    依次写入每个键，任一失败立即抛出 StorageWriteError，已完成的写入不回滚。
    :return: 成功写入的键。
    """
    value = record.model_dump(exclude_none=True)
    written: List[str] = []
    for key in keys:
        logger.info(f"写入证书记录到 {key}")
        try:
            storage.put(key, value)
        except Exception as e:
            logger.error(
                f"证书 {record.serial_number} 已签发但写入 {key} 失败 (已写入: {written}): {e}"
            )
            raise StorageWriteError(key, record.serial_number, str(e)) from e
        written.append(key)
    return written


def bind_response(
    role: str,
    common_name: str,
    cert: MaterializedCertificate,
    private_key_pem: str,
    policy: RolePolicy,
    leases: LeaseManager,
    issued_at: datetime | None = None,
) -> IssueResponse:
    """
    构造签发响应。启用租约时 TTL = not_after - issued_at，可能为负，原样透传。
    """
    data = CertificateData(
        common_name=common_name,
        serial_number=cert.serial_number,
        certificate=cert.certificate,
        certificate_chain=cert.certificate_chain,
        private_key=private_key_pem,
    )

    response = IssueResponse(data=data)
    if policy.generate_lease:
        issued_at = issued_at or datetime.now(timezone.utc)
        lease = leases.create(role, {"serial_number": cert.serial_number})
        ttl = cert.not_after - issued_at
        logger.info(f"设置租约 {lease.lease_id} 时长为 {ttl}")
        response.lease = leases.set_ttl(lease, ttl)

    response.warnings.append(PRIVATE_KEY_WARNING)
    return response


def persist_and_bind(
    role: str,
    common_name: str,
    cert: MaterializedCertificate,
    private_key_pem: str,
    policy: RolePolicy,
    storage: Storage,
    leases: LeaseManager,
    issued_at: datetime | None = None,
) -> IssueResponse:
    record = build_record(cert, private_key_pem, policy)
    persist(storage, record, storage_keys(common_name, cert.serial_number, policy))
    return bind_response(role, common_name, cert, private_key_pem, policy, leases, issued_at)
