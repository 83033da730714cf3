"""Vault DM-Crypt Meta information.
   Vault DM-Crypt keeps dm-crypt/LUKS keys in HashiCorp Vault.
"""
__title__ = 'vault_dmcrypt'
__description__ = (
   'Store and retrieve dm-crypt/LUKS encryption keys '
   'in HashiCorp Vault.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 AxonOps'
__author__ = 'AxonOps'
__author_email__ = 'info@axonops.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/axonops/vault-dm-crypt'
