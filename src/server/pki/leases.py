"""
租约管理：为签发响应生成可吊销、有时限的租约。

TTL 由调用方在 create 之后直接设置，这里只负责登记、查询与吊销。
到期的租约在下一次 create / set_ttl 时清理。
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

from loguru import logger

from .schemas import LeaseInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeaseManager:
    def __init__(
        self,
        prefix: str = "pki/issue",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.prefix = prefix
        self._clock = clock
        self._leases: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _prune_expired(self, now: datetime) -> None:
        # 调用方需持有 self._lock
        expired = [
            lease_id
            for lease_id, entry in self._leases.items()
            if entry["expires_at"] is not None and entry["expires_at"] <= now
        ]
        for lease_id in expired:
            del self._leases[lease_id]
        if expired:
            logger.debug(f"清理到期租约 {len(expired)} 个")

    def create(self, role: str, internal_data: Dict[str, Any]) -> LeaseInfo:
        lease_id = f"{self.prefix}/{role}/{uuid.uuid4()}"
        lease = LeaseInfo(lease_id=lease_id, ttl_seconds=0.0, internal_data=dict(internal_data))
        now = self._clock()
        with self._lock:
            self._prune_expired(now)
            self._leases[lease_id] = {
                "internal_data": dict(internal_data),
                "issued_at": now,
                "expires_at": None,
            }
        return lease

    def set_ttl(self, lease: LeaseInfo, ttl: timedelta) -> LeaseInfo:
        """设置租约 TTL，负值原样保留。"""
        with self._lock:
            entry = self._leases.get(lease.lease_id)
            if entry is not None:
                entry["expires_at"] = entry["issued_at"] + ttl
            self._prune_expired(self._clock())
        return lease.model_copy(update={"ttl_seconds": ttl.total_seconds()})

    def get(self, lease_id: str) -> Dict[str, Any] | None:
        with self._lock:
            entry = self._leases.get(lease_id)
            return dict(entry) if entry is not None else None

    def revoke(self, lease_id: str) -> bool:
        with self._lock:
            self._prune_expired(self._clock())
            removed = self._leases.pop(lease_id, None)
        if removed is None:
            return False
        logger.info(f"租约已吊销: {lease_id}")
        return True
