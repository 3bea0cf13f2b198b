"""
证书签发服务的业务逻辑层。
此模块把 CSR 构建、CA 编排、证书解析与持久化串起来，提供给路由层调用。
所有协作者（存储、角色、租约、CA 客户端）都通过 PKIBackend 注入，模块本身不持有状态。
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, List

from loguru import logger

from src.server.config import Config, config
from .binder import CERT_PREFIX, persist_and_bind
from .ca_client import CAClient, build_ca_client
from .csr import build_signing_request
from .enroll import Enrollment
from .errors import CertificateNotFoundError, LeaseNotFoundError
from .leases import LeaseManager
from .materialize import materialize
from .roles import RoleStore
from .schemas import (
    CertificateRecord,
    IssueRequest,
    IssueResponse,
    RevokeRequest,
    RolePolicy,
)
from .storage import FileStorage, InMemoryStorage, Storage


class PKIBackend:
    """签发服务所需协作者的集合。"""

    def __init__(
        self,
        storage: Storage,
        ca_client: CAClient,
        leases: LeaseManager | None = None,
        poll_interval: float = 5.0,
        poll_max_attempts: int | None = None,
        poll_deadline: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.roles = RoleStore(storage)
        self.ca_client = ca_client
        self.leases = leases or LeaseManager()
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.poll_deadline = poll_deadline
        self.sleep = sleep

    @classmethod
    def from_config(cls, cfg: Config) -> "PKIBackend":
        storage: Storage
        if cfg.storage_backend == "file":
            storage = FileStorage(cfg.storage_dir)
        else:
            storage = InMemoryStorage()
        backend = cls(
            storage=storage,
            ca_client=build_ca_client(cfg),
            poll_interval=cfg.poll_interval_seconds,
            poll_max_attempts=cfg.poll_max_attempts,
            poll_deadline=cfg.poll_deadline_seconds,
        )
        if cfg.roles:
            backend.roles.load(cfg.roles)
            logger.info(f"已从配置导入角色: {sorted(cfg.roles)}")
        return backend


_BACKEND: PKIBackend | None = None
_LOCK = threading.Lock()


def get_backend() -> PKIBackend:
    """按全局配置惰性创建后端，供 FastAPI 依赖注入使用。"""
    global _BACKEND
    with _LOCK:
        if _BACKEND is None:
            _BACKEND = PKIBackend.from_config(config)
        return _BACKEND


def issue_certificate_service(
    role_name: str, req: IssueRequest, backend: PKIBackend
) -> IssueResponse:
    """
    处理签发证书的业务逻辑。
    :param role_name: 角色名。
    :param req: 包含 common_name 与 alt_names 的请求对象。
    :param backend: 协作者集合。
    :return: 证书数据、可选租约与警告。
    :raises InvalidRequestError: 未指定任何域名或角色的密钥配置无效。
    :raises RoleNotFoundError: 角色不存在。
    :raises CAError: CA 提交或拉取失败。
    :raises MalformedCertificateError: CA 返回的证书无法解析。
    :raises StorageWriteError: 证书已签发但写入存储失败。
    """
    logger.info(f"获取角色 {role_name}")
    policy = backend.roles.get_role(role_name)

    signing_request, key_material = build_signing_request(req.common_name, req.alt_names, policy)
    logger.info(f"签发证书 {signing_request.common_name}")

    enrollment = Enrollment(
        backend.ca_client,
        signing_request,
        poll_interval=backend.poll_interval,
        max_attempts=backend.poll_max_attempts,
        deadline=backend.poll_deadline,
        sleep=backend.sleep,
    )
    issued = enrollment.run()
    issued_at = datetime.now(timezone.utc)

    cert = materialize(issued)
    return persist_and_bind(
        role_name,
        signing_request.common_name,
        cert,
        key_material.private_key_pem(),
        policy,
        backend.storage,
        backend.leases,
        issued_at=issued_at,
    )


def revoke_certificate_service(role_name: str, req: RevokeRequest, backend: PKIBackend) -> None:
    """
    吊销证书。目前为空操作：不查找记录、不调用 CA、不修改存储。
    """
    # TODO: 按 certificate_uid 查找 certs/ 记录，调用 CA 吊销接口后删除或标记记录
    logger.warning(
        f"吊销尚未实现，忽略请求: role={role_name}, certificate_uid={req.certificate_uid}"
    )


def revoke_lease_service(lease_id: str, backend: PKIBackend) -> None:
    """
    吊销租约。
    :raises LeaseNotFoundError: 租约不存在或已过期。
    """
    if not backend.leases.revoke(lease_id):
        raise LeaseNotFoundError(lease_id)


def read_certificate_service(key: str, backend: PKIBackend) -> CertificateRecord:
    data = backend.storage.get(CERT_PREFIX + key)
    if data is None:
        raise CertificateNotFoundError(CERT_PREFIX + key)
    return CertificateRecord.model_validate(data)


def list_certificates_service(backend: PKIBackend) -> List[str]:
    return backend.storage.list(CERT_PREFIX)


def write_role_service(name: str, policy: RolePolicy, backend: PKIBackend) -> RolePolicy:
    backend.roles.put_role(name, policy)
    return policy


def read_role_service(name: str, backend: PKIBackend) -> RolePolicy:
    return backend.roles.get_role(name)


def delete_role_service(name: str, backend: PKIBackend) -> None:
    backend.roles.delete_role(name)


def list_roles_service(backend: PKIBackend) -> List[str]:
    return backend.roles.list_roles()
