import asyncio
import inspect
import json
import os
import sys
import tempfile
import time
from pathlib import Path
from urllib.parse import parse_qs

# Environment must be in place before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hcen_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# process-local state and blacklist keep tests independent of a running Redis
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("OIDC_MOBILE_CLIENT_ID", "hcen-mobile")
os.environ.setdefault("OIDC_WEB_PATIENT_CLIENT_ID", "hcen-web-patient")
os.environ.setdefault("OIDC_WEB_PATIENT_CLIENT_SECRET", "web-patient-secret")
os.environ.setdefault("OIDC_WEB_ADMIN_CLIENT_ID", "hcen-web-admin")
os.environ.setdefault("OIDC_WEB_ADMIN_CLIENT_SECRET", "web-admin-secret")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hcen_auth.service.federation import FederationConfig  # noqa: E402
from hcen_auth.service.idp import OidcClient  # noqa: E402
from hcen_auth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class FakeIdentityProvider:
    """In-process stand-in for the national OIDC provider.

    Serves the token, JWKS and userinfo endpoints through an
    ``httpx.MockTransport`` and signs ID tokens with its own RSA key.
    """

    def __init__(self, federation: FederationConfig):
        self.federation = federation
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = "idp-key-1"
        self.claims = {
            "uid": "45678912",
            "primer_nombre": "Ana",
            "primer_apellido": "Pereira",
        }
        self.userinfo = {"primer_nombre": "Ana", "primer_apellido": "Pereira"}
        self.token_status = 200
        self.token_requests = []
        self.jwks_requests = 0
        self.userinfo_requests = 0
        self.transport = httpx.MockTransport(self.handle)

    def jwk(self) -> dict:
        key = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        key.update({"kid": self.kid, "alg": "RS256", "use": "sig"})
        return key

    def mint_id_token(self, audience: str, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": self.federation.endpoints.issuer,
            "aud": audience,
            "sub": self.claims["uid"],
            "iat": now,
            "exp": now + 300,
            **self.claims,
        }
        claims.update(overrides)
        return jwt.encode(
            claims, self.private_key, algorithm="RS256", headers={"kid": self.kid}
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        endpoints = self.federation.endpoints
        path = request.url.path
        if path == httpx.URL(endpoints.token).path:
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "code expired"},
                )
            return httpx.Response(
                200,
                json={
                    "access_token": "idp-access-token",
                    "token_type": "Bearer",
                    "id_token": self.mint_id_token(form["client_id"]),
                },
            )
        if path == httpx.URL(endpoints.jwks).path:
            self.jwks_requests += 1
            return httpx.Response(200, json={"keys": [self.jwk()]})
        if path == httpx.URL(endpoints.userinfo).path:
            self.userinfo_requests += 1
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404, json={"error": "not_found"})

    def client(self) -> OidcClient:
        return OidcClient(self.federation, transport=self.transport)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def idp_provider(runtime):
    return FakeIdentityProvider(runtime.federation)


@pytest.fixture
def fake_idp(runtime, idp_provider):
    """Route the runtime's provider calls to a ``FakeIdentityProvider``."""
    provider = idp_provider
    client = provider.client()
    runtime.idp = client
    runtime.auth.idp = client
    return provider


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
