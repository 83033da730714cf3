"""
Secret Store Client — authenticated read/write/delete of Vault KV secrets.

Every call first makes sure the session is usable (``ensure_valid``), then
addresses the secret according to the KV engine version:

- KV v2 (versioned): ``<backend>/data/<path>``, payload ``{"data": record}``,
  record returned under ``data.data``.
- KV v1: ``<backend>/<path>``, payload is the record, returned under ``data``.

AppRole identity helpers (secret-id generation and lookup) are only
available when the session was obtained with a ``RolePair``.

Security Note:
    Never log secret values. Only log paths, accessors and expiry times.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..exceptions import (
    AuthMethodError,
    ConfigError,
    SecretNotFound,
    StoreDeleteError,
    StoreReadError,
    StoreWriteError,
    VaultDmCryptError,
)
from .auth import LOOKUP_SELF_PATH, RolePair, SessionManager, utcnow
from .retry import RetryExecutor, RetryPolicy
from .transport import VaultTransport

logger = logging.getLogger("vault_dmcrypt.vault")

T = TypeVar("T")

SecretRecord = dict[str, Any]


class _InvalidData(VaultDmCryptError):
    pass


class SecretStoreClient:
    """Vault client bound to one session and one KV mount.

    Usage::

        async with SecretStoreClient.from_settings(settings.vault) as client:
            await client.with_retry(lambda: client.write("vaultlocker/x", rec))
    """

    def __init__(
        self,
        transport: Any,
        session: SessionManager,
        retry: RetryExecutor,
        backend: str = "secret",
        kv_version: int = 2,
        approle_name: str = "",
    ):
        self._transport = transport
        self._session = session
        self._retry = retry
        self._backend = backend.strip("/")
        self._kv_version = kv_version
        self._approle_name = approle_name

    @classmethod
    def from_settings(cls, settings: Any, transport: Any = None) -> "SecretStoreClient":
        """Build a client from ``VaultSettings``."""
        if transport is None:
            transport = VaultTransport(
                settings.url,
                timeout=settings.timeout,
                ca_bundle=settings.ca_bundle or None,
            )
        session = SessionManager(settings.credential_proof(), transport)
        return cls(
            transport,
            session,
            RetryExecutor(settings.retry_policy()),
            backend=settings.backend,
            kv_version=settings.kv_version,
            approle_name=settings.approle_name,
        )

    async def __aenter__(self) -> "SecretStoreClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry.policy

    @property
    def approle_name(self) -> str:
        """AppRole role name used for secret-id management ("" if unset)."""
        return self._approle_name

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def data_path(self, path: str) -> str:
        """Full API path of a secret for the configured engine version."""
        path = path.strip("/")
        if self._kv_version == 2:
            return f"{self._backend}/data/{path}"
        return f"{self._backend}/{path}"

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def write(self, path: str, record: SecretRecord) -> None:
        """Store ``record`` at ``path``.

        Raises:
            StoreWriteError: Wrapping the underlying failure.
        """
        await self._session.ensure_valid()
        full_path = self.data_path(path)
        payload = {"data": dict(record)} if self._kv_version == 2 else dict(record)
        logger.debug("Writing secret to Vault (path=%s)", full_path)
        try:
            await self._transport.write(full_path, payload)
        except Exception as err:
            raise StoreWriteError(full_path, err) from err
        logger.info("Successfully wrote secret to Vault (path=%s)", full_path)

    async def read(self, path: str) -> SecretRecord:
        """Return the record stored at ``path``.

        Raises:
            StoreReadError: If the secret is missing, malformed or the
                request failed. No partial record is ever returned.
        """
        await self._session.ensure_valid()
        full_path = self.data_path(path)
        logger.debug("Reading secret from Vault (path=%s)", full_path)
        try:
            response = await self._transport.read(full_path)
        except Exception as err:
            raise StoreReadError(full_path, err) from err

        if response is None:
            raise StoreReadError(full_path, SecretNotFound())
        data = response.get("data")
        if not isinstance(data, dict):
            raise StoreReadError(full_path, _InvalidData("no data in secret"))
        if self._kv_version == 2:
            data = data.get("data")
            if not isinstance(data, dict):
                raise StoreReadError(
                    full_path, _InvalidData("invalid data format in secret"),
                )
        logger.debug("Successfully read secret from Vault (path=%s)", full_path)
        return dict(data)

    async def delete(self, path: str) -> None:
        """Delete the secret at ``path``; absent secrets are not an error.

        Raises:
            StoreDeleteError: Wrapping the underlying failure.
        """
        await self._session.ensure_valid()
        full_path = self.data_path(path)
        logger.debug("Deleting secret from Vault (path=%s)", full_path)
        try:
            await self._transport.delete(full_path)
        except Exception as err:
            raise StoreDeleteError(full_path, err) from err
        logger.info("Successfully deleted secret from Vault (path=%s)", full_path)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel: asyncio.Event | None = None,
    ) -> T:
        return await self._retry.run(operation, cancel=cancel)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def _require_role_pair(self, what: str) -> RolePair:
        proof = self._session.proof
        if not isinstance(proof, RolePair):
            raise AuthMethodError(
                f"{what} is not applicable for the {proof.name} authentication method"
            )
        if not self._approle_name:
            raise ConfigError(
                f"approle_name not configured - required for {what}",
                field="vault.approle_name",
            )
        return proof

    async def token_info(self) -> dict[str, Any]:
        """Metadata of the current session token (``lookup-self``)."""
        await self._session.ensure_valid()
        try:
            response = await self._transport.read(LOOKUP_SELF_PATH)
        except Exception as err:
            raise VaultDmCryptError("failed to lookup token info", err) from err
        if not response or not response.get("data"):
            raise VaultDmCryptError("empty token info response")
        return response["data"]

    async def generate_secret_id(self) -> str:
        """Generate a new secret ID for the configured AppRole."""
        proof = self._require_role_pair("secret ID generation")
        await self._session.ensure_valid()
        path = f"auth/{proof.mount}/role/{self._approle_name}/secret-id"
        try:
            response = await self._transport.write(path, {})
        except Exception as err:
            raise VaultDmCryptError(
                f"failed to generate new secret ID (role name: {self._approle_name})", err,
            ) from err
        data = (response or {}).get("data")
        if not data:
            raise VaultDmCryptError("empty response when generating secret ID")
        secret_id = data.get("secret_id")
        if not isinstance(secret_id, str) or not secret_id:
            raise VaultDmCryptError("invalid secret_id in response")
        logger.info(
            "Successfully generated new secret ID (role_name=%s, secret_id_accessor=%s)",
            self._approle_name, data.get("secret_id_accessor"),
        )
        return secret_id

    async def secret_id_info(self, secret_id: str | None = None) -> dict[str, Any]:
        """Look up a secret ID (the configured one by default)."""
        proof = self._require_role_pair("secret ID lookup")
        await self._session.ensure_valid()
        path = f"auth/{proof.mount}/role/{self._approle_name}/secret-id/lookup"
        try:
            response = await self._transport.write(
                path, {"secret_id": secret_id or proof.secret_id},
            )
        except Exception as err:
            raise VaultDmCryptError(
                f"failed to lookup secret ID info (role name: {self._approle_name})", err,
            ) from err
        data = (response or {}).get("data")
        if not data:
            raise VaultDmCryptError("empty response from secret ID lookup")
        return data

    async def is_secret_id_expiring_within(
        self,
        threshold: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """True if the configured secret ID expires within ``threshold``.

        A secret ID without an expiration time (or with ``secret_id_ttl`` 0)
        never expires.
        """
        info = await self.secret_id_info()
        expiration = info.get("expiration_time")
        if not expiration or str(expiration).startswith("0001-01-01"):
            logger.debug("Secret ID has no expiration (ttl=%s)", info.get("secret_id_ttl"))
            return False
        try:
            expires_at = parse_rfc3339(str(expiration))
        except ValueError as err:
            raise VaultDmCryptError(
                "failed to parse secret ID expiration time", err,
            ) from err
        now = now or utcnow()
        expiring = expires_at < now + threshold
        logger.debug(
            "Secret ID expiry check (expiration_time=%s, threshold_minutes=%.1f, is_expiring=%s)",
            expires_at.isoformat(), threshold.total_seconds() / 60, expiring,
        )
        return expiring

    async def close(self) -> None:
        self._session.clear()
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()
        logger.debug("Vault client closed")


def parse_rfc3339(value: str) -> datetime:
    """Parse Vault's RFC3339 timestamps (nanoseconds and ``Z`` included)."""
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    if "." in value:
        head, rest = value.split(".", 1)
        idx = next((i for i, c in enumerate(rest) if not c.isdigit()), len(rest))
        value = f"{head}.{rest[:idx][:6].ljust(6, '0')}{rest[idx:]}"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
