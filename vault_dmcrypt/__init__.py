"""Vault DM-Crypt — dm-crypt/LUKS keys kept in HashiCorp Vault.

Security Note:
    Key material is only ever written to disk inside a temporary,
    owner-only file for the lifetime of a single ``cryptsetup`` call.
    Secret values are never logged.
"""
from .version import __version__

__all__ = ["__version__"]
