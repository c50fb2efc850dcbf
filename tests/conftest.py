import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.rate_limit import limiter
from app.auth.utils import create_access_token
from app.config import XeroConfig
from app.database import build_engine, build_session_factory, get_async_session, init_db
from app.integrations.xero.data_fetcher import XeroDataFetcher
from app.integrations.xero.data_service import XeroDataService
from app.integrations.xero.oauth import XeroOAuth
from app.integrations.xero.router import get_xero_fetcher, get_xero_oauth
from app.integrations.xero.service import XeroService
from app.integrations.xero.token_cipher import SecretCipher
from app.integrations.xero.token_refresh_lock import TokenRefreshLock
from app.main import app
from app.models.xero_connection import ConnectionStatus, XeroConnection

TENANT_ID = "tenant-1"
TENANT_NAME = "Acme Pty Ltd"


class FakeXero:
    """
    In-process stand-in for Xero's identity and accounting endpoints.

    Every request is recorded in ``calls``. Token responses rotate both
    tokens on each grant. Accounting responses come from ``queued`` first
    (one-shot), then ``data``.
    """

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.grants: list[dict[str, str]] = []
        self.issued = 0
        self.exchange_error: Optional[str] = None
        self.refresh_error: Optional[str] = None
        self.connections: list[dict[str, Any]] = [
            {
                "id": "conn-1",
                "tenantId": TENANT_ID,
                "tenantName": TENANT_NAME,
                "tenantType": "ORGANISATION",
            },
        ]
        self.organisation_status = 200
        self.queued: dict[str, list[httpx.Response]] = {}
        self.data: dict[str, Any] = {}

    def queue(self, path: str, status_code: int, **kwargs) -> None:
        self.queued.setdefault(path, []).append(httpx.Response(status_code, **kwargs))

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [call for call in self.calls if call.url.path.endswith(f"/{path}")]

    @property
    def refresh_grants(self) -> list[dict[str, str]]:
        return [grant for grant in self.grants if grant["grant_type"] == "refresh_token"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)

        if request.url.host == "identity.xero.com":
            return self._token(request)
        if request.url.path == "/connections":
            return httpx.Response(200, json=self.connections)

        path = request.url.path.split("/api.xro/2.0/", 1)[-1]
        queued = self.queued.get(path)
        if queued:
            return queued.pop(0)

        if path == "Organisation":
            if self.organisation_status != 200:
                return httpx.Response(self.organisation_status, json={})
            tenant_id = request.headers.get("Xero-tenant-id")
            return httpx.Response(
                200,
                json={"Organisations": [{
                    "Name": f"Org {tenant_id}",
                    "LegalName": f"Org {tenant_id} Pty Ltd",
                    "CountryCode": "AU",
                    "ShortCode": "!abc",
                }]},
            )

        data = self.data.get(path, [])
        if callable(data):
            data = data(request)
        return httpx.Response(200, json={path: data})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.grants.append(form)

        error = (
            self.exchange_error
            if form["grant_type"] == "authorization_code"
            else self.refresh_error
        )
        if error:
            return httpx.Response(400, content=json.dumps({"error": error}))

        self.issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.issued}",
                "refresh_token": f"refresh-{self.issued}",
                "expires_in": 1800,
                "token_type": "Bearer",
            },
        )


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Locks are bound to an event loop; rate limiting is not under test."""
    TokenRefreshLock._locks.clear()
    limiter.enabled = False
    yield
    TokenRefreshLock._locks.clear()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_xero() -> FakeXero:
    return FakeXero()


@pytest.fixture
def xero_config() -> XeroConfig:
    # No fallback credentials, so configuration state is fully per-company
    return XeroConfig()


@pytest_asyncio.fixture
async def http_client(fake_xero):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_xero.handler)) as client:
        yield client


@pytest.fixture
def oauth(xero_config, http_client) -> XeroOAuth:
    return XeroOAuth(xero_config, http_client=http_client)


@pytest.fixture
def fetcher(xero_config, http_client) -> XeroDataFetcher:
    return XeroDataFetcher(xero_config, http_client=http_client)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher()


@pytest.fixture
def make_service(oauth, cipher) -> Callable[[AsyncSession], XeroService]:
    def factory(session: AsyncSession) -> XeroService:
        return XeroService(session, oauth=oauth, cipher=cipher)
    return factory


@pytest.fixture
def xero_service(db_session, make_service) -> XeroService:
    return make_service(db_session)


@pytest.fixture
def data_service(db_session, xero_service, fetcher) -> XeroDataService:
    return XeroDataService(db_session, xero_service=xero_service, fetcher=fetcher)


@pytest.fixture
def make_connection(cipher):
    """Insert a stored connection directly, bypassing the OAuth flow."""

    async def factory(
        session: AsyncSession,
        company_id: int = 1,
        *,
        access_token: Optional[str] = "access-0",
        refresh_token: Optional[str] = "refresh-0",
        expires_in: timedelta = timedelta(minutes=30),
        tenants: Optional[list[dict[str, Any]]] = None,
        tenant_id: Optional[str] = TENANT_ID,
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
    ) -> XeroConnection:
        connection = XeroConnection(
            company_id=company_id,
            client_id="client-id",
            client_secret=cipher.encrypt("client-secret"),
            redirect_uri="https://app.example.com/xero/callback",
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token),
            token_expires_at=(
                datetime.now(timezone.utc) + expires_in if access_token else None
            ),
            tenant_id=tenant_id if access_token else None,
            organization_name=TENANT_NAME if access_token else None,
            authorized_tenants=(
                tenants
                if tenants is not None
                else [{"id": TENANT_ID, "name": TENANT_NAME}] if access_token else []
            ),
            status=status.value,
        )
        session.add(connection)
        await session.commit()
        return connection

    return factory


def auth_headers(company_id: int = 1) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(company_id))}"}


@pytest_asyncio.fixture
async def client(session_factory, oauth, fetcher):
    """API client with the database and Xero endpoints swapped for test doubles."""

    async def override_get_async_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_xero_oauth] = lambda: oauth
    app.dependency_overrides[get_xero_fetcher] = lambda: fetcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
