"""
角色配置的读写，角色以 role/<name> 存放在通用存储中。
"""

from __future__ import annotations

from typing import Any, Dict, List

from loguru import logger
from pydantic import ValidationError

from .errors import InvalidRequestError, RoleNotFoundError
from .schemas import RolePolicy
from .storage import Storage

ROLE_PREFIX = "role/"


class RoleStore:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def get_role(self, name: str) -> RolePolicy:
        data = self.storage.get(ROLE_PREFIX + name)
        if data is None:
            raise RoleNotFoundError(name)
        return RolePolicy.model_validate(data)

    def put_role(self, name: str, policy: RolePolicy) -> None:
        if not name:
            raise InvalidRequestError("角色名不能为空")
        self.storage.put(ROLE_PREFIX + name, policy.model_dump())
        logger.info(f"角色已写入: {name}")

    def delete_role(self, name: str) -> None:
        self.storage.delete(ROLE_PREFIX + name)

    def list_roles(self) -> List[str]:
        return self.storage.list(ROLE_PREFIX)

    def load(self, roles: Dict[str, Dict[str, Any]]) -> None:
        """从配置批量导入角色。"""
        for name, raw in roles.items():
            try:
                policy = RolePolicy.model_validate(raw)
            except ValidationError as e:
                raise InvalidRequestError(f"角色 {name} 配置无效: {e}") from e
            self.put_role(name, policy)
