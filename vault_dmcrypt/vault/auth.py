"""
Vault Authentication — credential proofs and session lifecycle.

Two proofs are supported:
- ``RolePair``: AppRole ``role_id`` + ``secret_id`` exchanged at
  ``auth/<mount>/login`` for a session token.
- ``StaticToken``: a pre-issued token, validated against the store with
  ``auth/token/lookup-self`` the first time it is used.

``SessionManager`` owns the resulting ``SessionCredential`` and decides
between renewing it (cheap) and logging in again (always works).

Security Note:
    Never log tokens or secret IDs. Only log TTLs, renewability and
    accessors.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from collections.abc import Callable
from typing import Any

from ..exceptions import (
    EmptyRoleID,
    EmptySecretID,
    EmptyToken,
    ExchangeFailed,
    NoTokenToRenew,
    VaultDmCryptError,
)

logger = logging.getLogger("vault_dmcrypt.vault")

# Credentials expiring within this margin are treated as already expired.
SAFETY_BUFFER = timedelta(seconds=30)

RENEW_SELF_PATH = "auth/token/renew-self"
LOOKUP_SELF_PATH = "auth/token/lookup-self"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Credential proofs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RolePair:
    """AppRole credentials."""

    role_id: str
    secret_id: str
    mount: str = "approle"

    @property
    def name(self) -> str:
        return "approle"

    def __repr__(self) -> str:
        return f"RolePair(mount={self.mount!r})"


@dataclass(frozen=True)
class StaticToken:
    """A pre-issued Vault token."""

    token: str

    @property
    def name(self) -> str:
        return "token"

    def __repr__(self) -> str:
        return "StaticToken()"


CredentialProof = RolePair | StaticToken


@dataclass
class SessionCredential:
    """A session token and its lifetime.

    ``expires_at`` is ``None`` when the store reported no TTL; such a
    credential is never considered valid.
    """

    token: str
    renewable: bool
    ttl: timedelta
    issued_at: datetime
    expires_at: datetime | None = None

    @classmethod
    def issue(
        cls,
        token: str,
        renewable: bool,
        ttl_seconds: Any,
        now: datetime,
    ) -> "SessionCredential":
        ttl = timedelta(seconds=int(ttl_seconds or 0))
        expires_at = now + ttl if ttl > timedelta(0) else None
        return cls(
            token=token,
            renewable=bool(renewable),
            ttl=ttl,
            issued_at=now,
            expires_at=expires_at,
        )

    def extend(self, ttl_seconds: Any, now: datetime) -> None:
        """Apply a renewal: only the lifetime changes."""
        self.ttl = timedelta(seconds=int(ttl_seconds or 0))
        self.issued_at = now
        self.expires_at = now + self.ttl if self.ttl > timedelta(0) else None

    def clear(self) -> None:
        self.token = ""
        self.renewable = False
        self.ttl = timedelta(0)
        self.expires_at = None

    def __repr__(self) -> str:
        return (
            f"<SessionCredential renewable={self.renewable} "
            f"ttl={self.ttl} expires_at={self.expires_at}>"
        )


def _auth_section(response: dict[str, Any] | None, what: str) -> dict[str, Any]:
    if not response:
        raise ExchangeFailed(f"empty response from {what}")
    auth = response.get("auth")
    if not auth:
        raise ExchangeFailed(f"no authentication data in {what} response")
    return auth


async def authenticate(
    proof: CredentialProof,
    transport: Any,
    now: datetime | None = None,
) -> SessionCredential:
    """Exchange a credential proof for a session credential.

    Args:
        proof: ``RolePair`` or ``StaticToken``.
        transport: A ``VaultTransport`` (or compatible) used for the exchange.
        now: Issue time, defaults to the current UTC time.

    Returns:
        The new SessionCredential. The transport is left without a token;
        installing it is the caller's job.

    Raises:
        EmptyRoleID, EmptySecretID, EmptyToken: Before any network call.
        ExchangeFailed: On any failure of the exchange itself.
    """
    now = now or utcnow()
    match proof:
        case RolePair(role_id=role_id, secret_id=secret_id, mount=mount):
            if not role_id:
                raise EmptyRoleID()
            if not secret_id:
                raise EmptySecretID()
            logger.debug("Authenticating with AppRole at auth/%s", mount)
            try:
                response = await transport.write(
                    f"auth/{mount}/login",
                    {"role_id": role_id, "secret_id": secret_id},
                )
            except Exception as err:
                raise ExchangeFailed("AppRole login failed", err) from err
            auth = _auth_section(response, "AppRole authentication")
            if not auth.get("client_token"):
                raise ExchangeFailed("no client token in AppRole response")
            logger.info(
                "AppRole authentication successful (policies=%s, lease_duration=%s, "
                "renewable=%s, accessor=%s)",
                auth.get("policies"), auth.get("lease_duration"),
                auth.get("renewable"), auth.get("accessor"),
            )
            return SessionCredential.issue(
                auth["client_token"],
                auth.get("renewable", False),
                auth.get("lease_duration", 0),
                now,
            )
        case StaticToken(token=token):
            if not token:
                raise EmptyToken()
            logger.debug("Validating static token with lookup-self")
            previous = transport.token
            transport.set_token(token)
            try:
                response = await transport.read(LOOKUP_SELF_PATH)
            except Exception as err:
                raise ExchangeFailed("token validation failed", err) from err
            finally:
                transport.set_token(previous)
            if not response or not response.get("data"):
                raise ExchangeFailed("no token data in lookup-self response")
            data = response["data"]
            logger.info(
                "Static token validated (ttl=%s, renewable=%s, accessor=%s)",
                data.get("ttl"), data.get("renewable"), data.get("accessor"),
            )
            return SessionCredential.issue(
                token, data.get("renewable", False), data.get("ttl", 0), now,
            )
        case _:
            raise TypeError(f"unsupported credential proof: {type(proof).__name__}")


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------

class SessionManager:
    """Holds the current session credential and keeps it usable.

    Call ``ensure_valid()`` before each store request; it is a no-op while the
    credential is outside the safety buffer, renews it when renewable, and
    logs in again otherwise (or when renewal fails).
    """

    def __init__(
        self,
        proof: CredentialProof,
        transport: Any,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._proof = proof
        self._transport = transport
        self._clock = clock
        self._credential: SessionCredential | None = None

    @property
    def proof(self) -> CredentialProof:
        return self._proof

    @proof.setter
    def proof(self, value: CredentialProof) -> None:
        """Swap the proof (e.g. after a secret-id rotation)."""
        self._proof = value

    @property
    def credential(self) -> SessionCredential | None:
        return self._credential

    @property
    def token(self) -> str:
        return self._credential.token if self._credential else ""

    @property
    def renewable(self) -> bool:
        return bool(self._credential and self._credential.renewable)

    @property
    def ttl(self) -> timedelta:
        return self._credential.ttl if self._credential else timedelta(0)

    @property
    def expires_at(self) -> datetime | None:
        return self._credential.expires_at if self._credential else None

    def is_valid(self) -> bool:
        """True if a token is held and outlives the safety buffer."""
        if not self.token:
            return False
        expires_at = self.expires_at
        if expires_at is None:
            return False
        if not self._clock() + SAFETY_BUFFER < expires_at:
            logger.debug("Token is near expiration")
            return False
        return True

    def is_expiring_within(self, threshold: timedelta) -> bool:
        """True if the token expires within ``threshold`` (or has no expiry)."""
        expires_at = self.expires_at
        if expires_at is None:
            return True
        return expires_at < self._clock() + threshold

    def _install(self, credential: SessionCredential) -> None:
        self._credential = credential
        self._transport.set_token(credential.token)
        logger.info(
            "Token set (renewable=%s, ttl_seconds=%d, expires_at=%s)",
            credential.renewable,
            credential.ttl.total_seconds(),
            credential.expires_at.isoformat() if credential.expires_at else "unset",
        )

    async def authenticate(self) -> None:
        """Log in with the credential proof and replace the held session."""
        logger.debug("Starting authentication (auth_method=%s)", self._proof.name)
        credential = await authenticate(self._proof, self._transport, self._clock())
        self._install(credential)

    async def renew(self) -> None:
        """Extend the held session, falling back to a fresh login.

        Raises:
            NoTokenToRenew: If no session is held.
        """
        if self._credential is None or not self._credential.token:
            raise NoTokenToRenew()

        if not self._credential.renewable:
            logger.debug("Token is not renewable, will re-authenticate")
            await self.authenticate()
            return

        logger.debug("Renewing token")
        try:
            response = await self._transport.write(RENEW_SELF_PATH, {})
        except Exception as err:
            logger.warning("Token renewal failed, will re-authenticate: %s", err)
            await self.authenticate()
            return

        auth = (response or {}).get("auth")
        if not auth:
            logger.warning("Empty renewal response, will re-authenticate")
            await self.authenticate()
            return

        self._credential.extend(auth.get("lease_duration", 0), self._clock())
        logger.info(
            "Token renewed (new_ttl_seconds=%d, new_expires_at=%s)",
            self._credential.ttl.total_seconds(),
            self._credential.expires_at.isoformat()
            if self._credential.expires_at else "unset",
        )

    async def ensure_valid(self) -> None:
        """Guarantee a usable session, renewing or logging in as needed."""
        if self.is_valid():
            return
        if self.token and self.renewable:
            try:
                await self.renew()
                return
            except VaultDmCryptError as err:
                logger.debug("Renewal path failed, re-authenticating: %s", err)
        logger.debug("Re-authenticating due to invalid token")
        await self.authenticate()

    def clear(self) -> None:
        """Forget the session and remove the token from the transport."""
        if self._credential is not None:
            self._credential.clear()
        self._credential = None
        if self._transport is not None:
            self._transport.clear_token()
        logger.debug("Session manager cleared")
