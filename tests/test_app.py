"""HTTP-level tests: tenant resolution, error envelope and internal tenancy endpoints."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from jose import jwt

from src.app import create_app
from src.config import settings
from src.exceptions import ConnectionPoolExhaustedException
from src.modules.tenancy.constants import PROVISIONING_TOKEN_HEADER
from src.modules.tenancy.dependencies import tenant_scope
from src.modules.tenancy.facade import TenantHandle

INTERNAL = "/api/v1/internal/tenancy"
# Well-formed, signed with a key the service does not trust
_FORGED_TOKEN = jwt.encode({"sub": "u-1", "tenant_id": "acme"}, "not-the-service-key", algorithm="HS256")


def _bearer(claims: dict) -> dict:
    token = jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def app(tenancy):
    application = create_app(tenancy=tenancy)
    # ASGITransport does not run the lifespan; the fixture already started the service
    application.state.tenancy = tenancy

    async def list_beds(handle: TenantHandle = Depends(tenant_scope)) -> list[str]:
        return [row["label"] for row in await handle.run("beds.list")]

    async def busy() -> None:
        raise ConnectionPoolExhaustedException("No database connection became available within 5s")

    application.add_api_route("/api/v1/wards/beds", list_beds, methods=["GET"])
    application.add_api_route("/api/v1/wards/busy", busy, methods=["GET"])
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


class TestTenantResolutionOverHttp:
    @pytest.mark.asyncio
    async def test_health_needs_no_tenant(self, client):
        response = await client.get("/health")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_header_selects_tenant(self, client):
        response = await client.get("/api/v1/tenancy/context", headers={"X-Tenant-ID": "acme"})

        assert response.status_code == 200
        assert response.json() == {"tenant_id": "acme", "schema_name": "tenant_a", "schema_version": 1}

    @pytest.mark.asyncio
    async def test_claim_overrides_header(self, client):
        headers = {"X-Tenant-ID": "acme", **_bearer({"sub": "u-1", "tenant_id": "globex"})}

        response = await client.get("/api/v1/tenancy/context", headers=headers)

        assert response.json()["tenant_id"] == "globex"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "authorization",
        [
            "Bearer not.a.jwt",
            f"Bearer {_FORGED_TOKEN}",
        ],
    )
    async def test_unverifiable_token_never_falls_back_to_header(self, client, authorization):
        headers = {"Authorization": authorization, "X-Tenant-ID": "globex"}

        response = await client.get("/api/v1/tenancy/context", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_scoped_endpoint_rejects_unverifiable_token(self, client):
        headers = {"Authorization": "Bearer not.a.jwt", "X-Tenant-ID": "globex"}

        response = await client.get("/api/v1/wards/beds", headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_subdomain_selects_tenant(self, app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://acme.localhost") as sub_client:
            response = await sub_client.get("/api/v1/tenancy/context")

        assert response.status_code == 200
        assert response.json()["tenant_id"] == "acme"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("headers", "status", "code"),
        [
            ({}, 400, "TENANT_NOT_SPECIFIED"),
            ({"X-Tenant-ID": "nobody"}, 404, "TENANT_UNKNOWN"),
            ({"X-Tenant-ID": "oldco"}, 409, "TENANT_NOT_PROVISIONED"),
            ({"X-Tenant-ID": "initech"}, 409, "TENANT_SCHEMA_VERSION_MISMATCH"),
        ],
    )
    async def test_resolution_failures(self, client, headers, status, code):
        response = await client.get("/api/v1/tenancy/context", headers=headers)

        assert response.status_code == status
        body = response.json()["error"]
        assert body["code"] == code
        assert body["retryable"] is False
        assert "Retry-After" not in response.headers

    @pytest.mark.asyncio
    async def test_scoped_endpoint_sees_only_its_tenant(self, client):
        response_a = await client.get("/api/v1/wards/beds", headers={"X-Tenant-ID": "acme"})
        response_b = await client.get("/api/v1/wards/beds", headers={"X-Tenant-ID": "globex"})

        assert response_a.json() == ["A-101", "A-102"]
        assert response_b.json() == ["B-201"]

    @pytest.mark.asyncio
    async def test_retryable_error_carries_retry_after(self, client):
        response = await client.get("/api/v1/wards/busy", headers={"X-Tenant-ID": "acme"})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == str(settings.retry_after_seconds)
        body = response.json()["error"]
        assert body["code"] == "CONNECTION_POOL_EXHAUSTED"
        assert body["retryable"] is True


class TestInternalEndpoints:
    @pytest.fixture
    def auth(self) -> dict:
        return {PROVISIONING_TOKEN_HEADER: settings.provisioning_token}

    @pytest.mark.asyncio
    async def test_token_required(self, client):
        missing = await client.get(f"{INTERNAL}/pool")
        wrong = await client.get(f"{INTERNAL}/pool", headers={PROVISIONING_TOKEN_HEADER: "nope"})

        assert missing.status_code == 401
        assert wrong.status_code == 403

    @pytest.mark.asyncio
    async def test_provisioned_hook_updates_registry(self, client, auth, tenancy):
        response = await client.post(
            f"{INTERNAL}/tenants/initech/provisioned",
            json={"schema_name": "tenant_c", "schema_version": 1, "subdomain": "initech"},
            headers=auth,
        )

        assert response.status_code == 200
        assert response.json()["state"] == "PROVISIONED"
        assert (await tenancy.resolver.resolve("initech")).schema_version == 1

    @pytest.mark.asyncio
    async def test_provisioned_hook_validates_body(self, client, auth):
        response = await client.post(
            f"{INTERNAL}/tenants/initech/provisioned",
            json={"schema_name": "tenant-c; drop", "schema_version": 1},
            headers=auth,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_invalidate(self, client, auth):
        response = await client.post(f"{INTERNAL}/tenants/acme/invalidate", headers=auth)
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_drift_report(self, client, auth):
        response = await client.get(f"{INTERNAL}/drift", headers=auth)

        assert response.status_code == 200
        assert response.json()["drifted"] == ["initech"]

    @pytest.mark.asyncio
    async def test_pool_status(self, client, auth):
        response = await client.get(f"{INTERNAL}/pool", headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["checked_out"] == 0
        assert body["active_leases"] == 0
