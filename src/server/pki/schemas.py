"""
证书签发服务的数据模型定义。

公开接口的 Pydantic 模型：
    - RolePolicy: 角色的密钥与存储策略
    - IssueRequest / RevokeRequest: 入站请求
    - CertificateRecord: 持久化的证书记录
    - CertificateData / LeaseInfo / IssueResponse: 签发响应
"""

from __future__ import annotations

import re
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RolePolicy(BaseModel):
    """
    角色策略。单次请求内只读。
    key_type 保持为字符串，非法取值由 CSR 构建阶段拒绝。
    """

    model_config = ConfigDict(frozen=True)

    key_type: str = Field(default="rsa", description="rsa 或 ec")
    key_bits: int = Field(default=2048, description="RSA 密钥长度")
    key_curve: str = Field(default="P256", description="P224 / P256 / P384 / P521")
    store_by_cn: bool = Field(default=False, description="是否写入 certs/<common_name>")
    store_by_serial: bool = Field(default=False, description="是否写入 certs/<serial>")
    store_private_key: bool = Field(default=False, description="存储记录中是否包含私钥")
    generate_lease: bool = Field(default=False, description="是否为响应生成租约")


class IssueRequest(BaseModel):
    """
    客户端请求签发证书时的数据模型。
    """
    common_name: str = ""
    alt_names: List[str] = []

    @field_validator("alt_names", mode="before")
    @classmethod
    def parse_alt_names(cls, value: Any) -> List[str]:
        """支持列表或逗号分隔的字符串。"""
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [p.strip() for p in re.split(r",", value) if p.strip()]
        return value


class RevokeRequest(BaseModel):
    certificate_uid: str = ""


class CertificateRecord(BaseModel):
    """
    写入 certs/<key> 的证书记录。private_key 仅在角色要求时保存。
    """
    certificate: str
    certificate_chain: str
    private_key: str | None = None
    serial_number: str


class CertificateData(BaseModel):
    common_name: str
    serial_number: str
    certificate: str
    certificate_chain: str
    private_key: str


class LeaseInfo(BaseModel):
    """
    租约信息。ttl_seconds 可能为负（CA 签发了已过期的证书时原样透传）。
    internal_data 只在服务端使用，不随响应返回。
    """

    lease_id: str
    ttl_seconds: float
    renewable: bool = False
    internal_data: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class LeaseRevokeRequest(BaseModel):
    lease_id: str


class IssueResponse(BaseModel):
    """
    服务端返回签发证书的数据模型。未启用租约时 lease 为空。
    """
    data: CertificateData
    lease: LeaseInfo | None = None
    warnings: List[str] = []


class CertificateListResponse(BaseModel):
    keys: List[str]


class RoleListResponse(BaseModel):
    roles: List[str]
