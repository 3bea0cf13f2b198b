"""
测试 router.py 模块。
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.server.pki.ca_client import LocalCAClient
from src.server.pki.errors import (
    CARetrievalError,
    MalformedCertificateError,
    StorageWriteError,
)
from src.server.pki.router import router
from src.server.pki.schemas import IssueRequest, RolePolicy
from src.server.pki.services import PKIBackend, get_backend
from src.server.pki.storage import InMemoryStorage


@pytest.fixture
def backend(tmp_path):
    return PKIBackend(
        storage=InMemoryStorage(),
        ca_client=LocalCAClient(str(tmp_path / "dev_ca")),
        sleep=lambda _: None,
    )


@pytest.fixture
def client(backend):
    # 创建一个 FastAPI 应用并包含我们的路由
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_backend] = lambda: backend
    return TestClient(app)


def test_issue_endpoint_without_lease(client, backend):
    backend.roles.put_role("web", RolePolicy(key_type="ec", store_by_cn=True))

    response = client.post(
        "/pki/issue/web",
        json={"common_name": "example.com", "alt_names": ["www.example.com"]},
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body["data"]) == {
        "common_name",
        "serial_number",
        "certificate",
        "certificate_chain",
        "private_key",
    }
    assert "lease" not in body
    assert body["warnings"]


def test_issue_endpoint_with_lease(client, backend):
    backend.roles.put_role("web", RolePolicy(key_type="ec", generate_lease=True))
    response = client.post("/pki/issue/web", json={"alt_names": "example.com"})

    assert response.status_code == 200
    lease = response.json()["lease"]
    assert lease["ttl_seconds"] > 0
    assert lease["lease_id"].startswith("pki/issue/web/")
    assert "internal_data" not in lease


def test_issue_endpoint_passes_request_to_service(client, backend):
    with patch("src.server.pki.services.issue_certificate_service") as mock_service:
        mock_service.side_effect = CARetrievalError("rejected")
        response = client.post("/pki/issue/web", json={"common_name": "example.com"})

    assert response.status_code == 502
    assert "rejected" in response.json()["detail"]
    mock_service.assert_called_once_with("web", IssueRequest(common_name="example.com"), backend)


def test_issue_endpoint_no_names(client, backend):
    backend.roles.put_role("web", RolePolicy())
    response = client.post("/pki/issue/web", json={})
    assert response.status_code == 400
    assert "未指定任何域名" in response.json()["detail"]


def test_issue_endpoint_unknown_role(client):
    response = client.post("/pki/issue/missing", json={"common_name": "example.com"})
    assert response.status_code == 404


def test_issue_endpoint_unsupported_curve(client, backend):
    backend.roles.put_role("web", RolePolicy(key_type="ec", key_curve="P999"))
    response = client.post("/pki/issue/web", json={"common_name": "example.com"})
    assert response.status_code == 400


@pytest.mark.parametrize(
    "error, status, text",
    [
        (StorageWriteError("certs/example.com", "01", "disk full"), 500, "已签发但未记录"),
        (MalformedCertificateError("bad pem"), 500, "bad pem"),
        (KeyError("oops"), 500, "内部服务器错误"),
    ],
)
def test_issue_endpoint_error_mapping(client, error, status, text):
    with patch("src.server.pki.services.issue_certificate_service", side_effect=error):
        response = client.post("/pki/issue/web", json={"common_name": "example.com"})
    assert response.status_code == status
    assert text in response.json()["detail"]


def test_issue_endpoint_validation_error(client):
    response = client.post("/pki/issue/web", json={"alt_names": 42})
    assert response.status_code == 422  # Pydantic validation error


def test_revoke_endpoint(client):
    response = client.post("/pki/revoke/web", json={"certificate_uid": "example.com"})
    assert response.status_code == 204


def test_revoke_lease_endpoint(client, backend):
    backend.roles.put_role("web", RolePolicy(key_type="ec", generate_lease=True))
    lease_id = client.post("/pki/issue/web", json={"common_name": "example.com"}).json()["lease"]["lease_id"]

    response = client.post("/pki/leases/revoke", json={"lease_id": lease_id})
    assert response.status_code == 204
    assert backend.leases.get(lease_id) is None

    response = client.post("/pki/leases/revoke", json={"lease_id": lease_id})
    assert response.status_code == 404


def test_cert_endpoints(client, backend):
    backend.roles.put_role("web", RolePolicy(key_type="ec", store_by_cn=True))
    issued = client.post("/pki/issue/web", json={"common_name": "example.com"}).json()

    response = client.get("/pki/cert/example.com")
    assert response.status_code == 200
    assert response.json()["serial_number"] == issued["data"]["serial_number"]
    assert "private_key" not in response.json()

    assert client.get("/pki/certs").json() == {"keys": ["example.com"]}
    assert client.get("/pki/cert/missing").status_code == 404


def test_role_endpoints(client):
    response = client.post("/pki/roles/web", json={"key_type": "ec", "key_curve": "P384"})
    assert response.status_code == 200
    assert response.json()["key_curve"] == "P384"

    assert client.get("/pki/roles/web").json()["key_type"] == "ec"
    assert client.get("/pki/roles").json() == {"roles": ["web"]}

    assert client.delete("/pki/roles/web").status_code == 204
    assert client.get("/pki/roles/web").status_code == 404


def test_app_mounts_router_under_v1():
    from src.server.main import app

    paths = app.openapi()["paths"]
    assert "/v1/pki/issue/{role}" in paths
    assert "/v1/pki/revoke/{role}" in paths
    assert "/v1/pki/leases/revoke" in paths


def test_app_shutdown_closes_ca_client():
    from src.server import main

    backend = MagicMock()
    with patch.object(main, "get_backend", return_value=backend):
        with TestClient(main.app):
            backend.ca_client.close.assert_not_called()
    backend.ca_client.close.assert_called_once_with()
