"""
Shared test fixtures.

``FakeVault`` stands in for ``VaultTransport``: it implements the same
``read``/``write``/``delete``/token surface against in-memory state and
records every call so tests can count network round-trips.
"""
import os
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from vault_dmcrypt.exceptions import StoreHTTPError
from vault_dmcrypt.vault import (
    RetryExecutor,
    RetryPolicy,
    RolePair,
    SecretStoreClient,
    SessionManager,
    StaticToken,
)

ROLE_ID = "role-1234"
SECRET_ID = "secret-5678"
ROOT_TOKEN = "s.static-token"
APPROLE_NAME = "dm-crypt"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVault:
    """In-memory Vault speaking the subset of the API the client uses."""

    def __init__(
        self,
        kv_version: int = 2,
        lease_duration: int = 3600,
        renewable: bool = True,
        renew_lease: int = 7200,
        static_ttl: int = 3600,
    ):
        self.kv_version = kv_version
        self.lease_duration = lease_duration
        self.renewable = renewable
        self.renew_lease = renew_lease
        self.static_ttl = static_ttl
        self.token = ""
        self.calls: list[tuple[str, str]] = []
        self.secrets: dict[str, dict] = {}
        self.valid_secret_ids = {SECRET_ID}
        self.valid_tokens = {ROOT_TOKEN}
        self.secret_id_expiration = ""
        self.fail_renew = False
        self.empty_renew = False
        self.failures: dict[str, list[Exception]] = {}
        self.closed = False
        self._token_seq = itertools.count(1)

    # -- token surface -------------------------------------------------

    def set_token(self, token: str) -> None:
        self.token = token or ""

    def clear_token(self) -> None:
        self.token = ""

    # -- helpers -------------------------------------------------------

    def fail(self, path: str, *errors: Exception) -> None:
        """Make the next calls on ``path`` raise ``errors`` in order."""
        self.failures.setdefault(path, []).extend(errors)

    def count(self, suffix: str) -> int:
        return sum(1 for _, path in self.calls if path.endswith(suffix))

    @property
    def logins(self) -> int:
        return self.count("/login")

    def _check_failure(self, path: str) -> None:
        pending = self.failures.get(path)
        if pending:
            raise pending.pop(0)

    def _require_token(self) -> None:
        if self.token not in self.valid_tokens:
            raise StoreHTTPError(403, ["permission denied"])

    # -- transport API -------------------------------------------------

    async def read(self, path: str):
        self.calls.append(("GET", path))
        self._check_failure(path)
        if path == "auth/token/lookup-self":
            self._require_token()
            return {
                "data": {
                    "ttl": self.static_ttl if self.token == ROOT_TOKEN else self.lease_duration,
                    "renewable": self.token != ROOT_TOKEN and self.renewable,
                    "creation_time": 1735732800,
                    "accessor": "acc-token",
                },
            }
        self._require_token()
        stored = self.secrets.get(path)
        if stored is None:
            return None
        if self.kv_version == 2:
            return {"data": {"data": dict(stored), "metadata": {"version": 1}}}
        return {"data": dict(stored)}

    async def write(self, path: str, payload=None):
        payload = payload or {}
        self.calls.append(("POST", path))
        self._check_failure(path)
        if path.endswith("/login"):
            if payload.get("role_id") != ROLE_ID or payload.get("secret_id") not in self.valid_secret_ids:
                raise StoreHTTPError(400, ["invalid role or secret ID"])
            token = f"s.session-{next(self._token_seq)}"
            self.valid_tokens.add(token)
            return {
                "auth": {
                    "client_token": token,
                    "lease_duration": self.lease_duration,
                    "renewable": self.renewable,
                    "policies": ["default", "dm-crypt"],
                    "accessor": "acc-session",
                },
            }
        self._require_token()
        if path == "auth/token/renew-self":
            if self.fail_renew:
                raise StoreHTTPError(403, ["token not renewable"])
            if self.empty_renew:
                return {}
            return {
                "auth": {
                    "client_token": self.token,
                    "lease_duration": self.renew_lease,
                    "renewable": True,
                },
            }
        if path.endswith("/secret-id/lookup"):
            return {
                "data": {
                    "secret_id_accessor": "acc-secret",
                    "expiration_time": self.secret_id_expiration,
                    "secret_id_ttl": 0 if not self.secret_id_expiration else 86400,
                    "creation_time": "2025-01-01T00:00:00Z",
                },
            }
        if path.endswith("/secret-id"):
            new_secret = f"secret-new-{next(self._token_seq)}"
            self.valid_secret_ids.add(new_secret)
            return {
                "data": {
                    "secret_id": new_secret,
                    "secret_id_accessor": "acc-new",
                    "secret_id_ttl": 86400,
                },
            }
        record = payload["data"] if self.kv_version == 2 else payload
        self.secrets[path] = dict(record)
        return {"data": {"version": 1}} if self.kv_version == 2 else {}

    async def delete(self, path: str):
        self.calls.append(("DELETE", path))
        self._check_failure(path)
        self._require_token()
        self.secrets.pop(path, None)
        return {}

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def role_pair():
    return RolePair(role_id=ROLE_ID, secret_id=SECRET_ID)


@pytest.fixture
def session(vault, role_pair, clock):
    return SessionManager(role_pair, vault, clock=clock)


def make_client(
    vault: FakeVault,
    proof=None,
    clock=None,
    kv_version: int = 2,
    approle_name: str = APPROLE_NAME,
    max_attempts: int = 2,
) -> SecretStoreClient:
    proof = proof or RolePair(role_id=ROLE_ID, secret_id=SECRET_ID)
    kwargs = {"clock": clock} if clock else {}
    return SecretStoreClient(
        vault,
        SessionManager(proof, vault, **kwargs),
        RetryExecutor(RetryPolicy(max_attempts=max_attempts, delay=0)),
        backend="secret",
        kv_version=kv_version,
        approle_name=approle_name,
    )


@pytest.fixture
def client(vault, clock):
    return make_client(vault, clock=clock)


@pytest.fixture
def token_client(vault, clock):
    return make_client(vault, proof=StaticToken(ROOT_TOKEN), clock=clock)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment variables that feed the configuration."""
    for name in (
        "VAULT_ADDR", "VAULT_CACERT", "VAULT_APPROLE", "VAULT_SECRET_ID",
        "VAULT_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("VAULT_DM_CRYPT_"):
            monkeypatch.delenv(name, raising=False)
