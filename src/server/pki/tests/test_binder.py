"""
测试 binder.py 模块：存储键、独立写入与租约 TTL。
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.server.pki import binder
from src.server.pki.errors import StorageWriteError
from src.server.pki.leases import LeaseManager
from src.server.pki.materialize import MaterializedCertificate
from src.server.pki.schemas import RolePolicy
from src.server.pki.storage import InMemoryStorage

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)

CERT = MaterializedCertificate(
    certificate="LEAF",
    certificate_chain="LEAF\nCA",
    serial_number="0A:1B:2C",
    not_after=NOW + timedelta(days=90),
)


class FailingOnSecondPut(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def put(self, key, value):
        self.calls += 1
        if self.calls == 2:
            raise OSError("disk full")
        super().put(key, value)


def test_storage_keys():
    both = RolePolicy(store_by_cn=True, store_by_serial=True)
    assert binder.storage_keys("example.com", "0A:1B:2C", both) == [
        "certs/example.com",
        "certs/0a-1b-2c",
    ]
    assert binder.storage_keys("example.com", "0A", RolePolicy()) == []
    assert binder.storage_keys("example.com", "0A", RolePolicy(store_by_serial=True)) == ["certs/0a"]


def test_two_writes_identical_content():
    storage = InMemoryStorage()
    policy = RolePolicy(store_by_cn=True, store_by_serial=True)

    binder.persist_and_bind("web", "example.com", CERT, "KEY", policy, storage, LeaseManager(), NOW)

    by_cn = storage.get("certs/example.com")
    by_serial = storage.get("certs/0a-1b-2c")
    assert by_cn == by_serial
    assert by_cn == {
        "certificate": "LEAF",
        "certificate_chain": "LEAF\nCA",
        "serial_number": "0A:1B:2C",
    }


def test_private_key_stored_only_when_requested():
    storage = InMemoryStorage()
    policy = RolePolicy(store_by_cn=True, store_private_key=True)
    binder.persist_and_bind("web", "example.com", CERT, "KEY", policy, storage, LeaseManager(), NOW)
    assert storage.get("certs/example.com")["private_key"] == "KEY"


def test_second_write_failure_keeps_first():
    storage = FailingOnSecondPut()
    policy = RolePolicy(store_by_cn=True, store_by_serial=True)

    with pytest.raises(StorageWriteError) as ei:
        binder.persist_and_bind("web", "example.com", CERT, "KEY", policy, storage, LeaseManager(), NOW)

    assert storage.get("certs/example.com") is not None
    assert storage.get("certs/0a-1b-2c") is None
    assert ei.value.key == "certs/0a-1b-2c"
    assert ei.value.serial_number == "0A:1B:2C"
    assert "已签发但未记录" in str(ei.value)


def test_no_lease_when_disabled():
    leases = MagicMock(spec=LeaseManager)
    resp = binder.persist_and_bind(
        "web", "example.com", CERT, "KEY", RolePolicy(), InMemoryStorage(), leases, NOW
    )
    assert resp.lease is None
    assert "lease" not in resp.model_dump(exclude_none=True)
    leases.create.assert_not_called()
    # 直接响应中总是带私钥
    assert resp.data.private_key == "KEY"
    assert resp.data.common_name == "example.com"
    assert binder.PRIVATE_KEY_WARNING in resp.warnings


def test_lease_ttl_is_not_after_minus_issued_at():
    leases = LeaseManager()
    resp = binder.persist_and_bind(
        "web",
        "example.com",
        CERT,
        "KEY",
        RolePolicy(generate_lease=True),
        InMemoryStorage(),
        leases,
        NOW,
    )
    assert resp.lease is not None
    assert resp.lease.ttl_seconds == pytest.approx(timedelta(days=90).total_seconds())
    assert resp.lease.internal_data == {"serial_number": "0A:1B:2C"}
    assert resp.lease.lease_id.startswith("pki/issue/web/")
    assert leases.get(resp.lease.lease_id) is not None
    assert binder.PRIVATE_KEY_WARNING in resp.warnings


def test_negative_ttl_passes_through():
    expired = MaterializedCertificate(
        certificate="LEAF",
        certificate_chain="LEAF",
        serial_number="01",
        not_after=NOW - timedelta(hours=1),
    )
    resp = binder.bind_response(
        "web", "example.com", expired, "KEY", RolePolicy(generate_lease=True), LeaseManager(), NOW
    )
    assert resp.lease.ttl_seconds == pytest.approx(-3600)


def test_lease_ttl_defaults_to_now():
    cert = MaterializedCertificate(
        certificate="LEAF",
        certificate_chain="LEAF",
        serial_number="01",
        not_after=datetime.now(timezone.utc) + timedelta(hours=2),
    )
    resp = binder.bind_response(
        "web", "example.com", cert, "KEY", RolePolicy(generate_lease=True), LeaseManager()
    )
    assert resp.lease.ttl_seconds == pytest.approx(7200, abs=5)
