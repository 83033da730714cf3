"""Vault access — credential proofs, session lifecycle and KV secrets.

Security Note (Threat Model):
    The session token lives in process memory for the lifetime of one
    command. Nothing here persists tokens or secret values to disk.
"""

from .auth import (
    SAFETY_BUFFER,
    CredentialProof,
    RolePair,
    SessionCredential,
    SessionManager,
    StaticToken,
    authenticate,
)
from .retry import RetryExecutor, RetryPolicy
from .transport import VaultTransport
from .client import SecretRecord, SecretStoreClient

__all__ = [
    "SAFETY_BUFFER",
    "CredentialProof",
    "RolePair",
    "StaticToken",
    "SessionCredential",
    "SessionManager",
    "authenticate",
    "RetryExecutor",
    "RetryPolicy",
    "VaultTransport",
    "SecretRecord",
    "SecretStoreClient",
]
