"""
证书签发服务的 FastAPI 路由定义。

签发接口是同步路由：轮询 CA 时会阻塞，交给线程池执行，不占用事件循环。
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from loguru import logger

from . import services
from .errors import (
    CAError,
    InvalidRequestError,
    LeaseNotFoundError,
    PKIError,
    RoleNotFoundError,
    CertificateNotFoundError,
    StorageWriteError,
)
from .schemas import (
    CertificateListResponse,
    CertificateRecord,
    IssueRequest,
    IssueResponse,
    LeaseRevokeRequest,
    RevokeRequest,
    RoleListResponse,
    RolePolicy,
)
from .services import PKIBackend, get_backend

router = APIRouter(prefix="/pki", tags=["PKI"])


def _to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, (RoleNotFoundError, CertificateNotFoundError, LeaseNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidRequestError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, StorageWriteError):
        return HTTPException(status_code=500, detail=str(e))
    if isinstance(e, CAError):
        return HTTPException(status_code=502, detail=f"CA 错误: {e}")
    if isinstance(e, (PKIError, RuntimeError)):
        return HTTPException(status_code=500, detail=f"证书签发失败: {e}")
    logger.exception(f"未预期的错误: {e}")
    return HTTPException(status_code=500, detail="内部服务器错误")


@router.post(
    "/issue/{role}",
    response_model=IssueResponse,
    response_model_exclude_none=True,
)
def issue_certificate(
    role: str, req: IssueRequest, backend: PKIBackend = Depends(get_backend)
) -> IssueResponse:
    """
    按角色策略生成密钥与 CSR，向 CA 申请证书并返回。
    """
    try:
        return services.issue_certificate_service(role, req, backend)
    except Exception as e:
        raise _to_http_error(e)


@router.post("/revoke/{role}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_certificate(
    role: str, req: RevokeRequest, backend: PKIBackend = Depends(get_backend)
) -> Response:
    """
    吊销证书（目前为空操作）。
    """
    services.revoke_certificate_service(role, req, backend)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/leases/revoke", status_code=status.HTTP_204_NO_CONTENT)
def revoke_lease(req: LeaseRevokeRequest, backend: PKIBackend = Depends(get_backend)) -> Response:
    """
    吊销签发时生成的租约。
    """
    try:
        services.revoke_lease_service(req.lease_id, backend)
    except Exception as e:
        raise _to_http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/certs", response_model=CertificateListResponse)
def list_certificates(backend: PKIBackend = Depends(get_backend)) -> CertificateListResponse:
    return CertificateListResponse(keys=services.list_certificates_service(backend))


@router.get(
    "/cert/{key}",
    response_model=CertificateRecord,
    response_model_exclude_none=True,
)
def read_certificate(key: str, backend: PKIBackend = Depends(get_backend)) -> CertificateRecord:
    """
    读取按 CN 或序列号存储的证书记录。
    """
    try:
        return services.read_certificate_service(key, backend)
    except Exception as e:
        raise _to_http_error(e)


@router.get("/roles", response_model=RoleListResponse)
def list_roles(backend: PKIBackend = Depends(get_backend)) -> RoleListResponse:
    return RoleListResponse(roles=services.list_roles_service(backend))


@router.post("/roles/{name}", response_model=RolePolicy)
def write_role(
    name: str, policy: RolePolicy, backend: PKIBackend = Depends(get_backend)
) -> RolePolicy:
    try:
        return services.write_role_service(name, policy, backend)
    except Exception as e:
        raise _to_http_error(e)


@router.get("/roles/{name}", response_model=RolePolicy)
def read_role(name: str, backend: PKIBackend = Depends(get_backend)) -> RolePolicy:
    try:
        return services.read_role_service(name, backend)
    except Exception as e:
        raise _to_http_error(e)


@router.delete("/roles/{name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(name: str, backend: PKIBackend = Depends(get_backend)) -> Response:
    services.delete_role_service(name, backend)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
