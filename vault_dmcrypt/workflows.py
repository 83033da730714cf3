"""
Workflows — encrypt, decrypt and refresh-auth.

Each workflow composes the secret store client with the dm-crypt
collaborators. Store access is retried under the client's retry policy and
the whole retry loop is bounded by ``timeout`` seconds.

Key record stored at ``vaultlocker/<uuid>``::

    {"dmcrypt_key": <base64>, "created_at": <RFC3339>,
     "device": <path>, "hostname": <name>}
"""
import os
import asyncio
import socket
import uuid as uuidlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .conf import update_secret_id
from .dmcrypt import (
    DeviceResolver,
    LUKSManager,
    SystemValidator,
    device_mapper_name,
    generate_key,
    mapped_device_path,
    staged_key,
    validate_key_format,
)
from .exceptions import ConfigError, KeyFormatError, VaultDmCryptError
from .systemd import ServiceSupervisor
from .vault import RolePair, SecretStoreClient

logger = logging.getLogger("vault_dmcrypt.workflows")

KEY_PATH_PREFIX = "vaultlocker"


def key_path(uuid: str) -> str:
    return f"{KEY_PATH_PREFIX}/{uuid}"


@dataclass
class EncryptResult:
    uuid: str
    device: str
    mapped_device: str
    vault_path: str
    service_enabled: bool


@dataclass
class DecryptResult:
    uuid: str
    device: str
    mapped_device: str
    already_open: bool = False


@dataclass
class AuthReport:
    token_expires_at: datetime | None = None
    token_info: dict[str, Any] = field(default_factory=dict)
    secret_id_info: dict[str, Any] = field(default_factory=dict)
    secret_id_expiring: bool | None = None
    new_secret_id: str = ""
    config_updated: bool = False
    verified: bool = False
    warnings: list[str] = field(default_factory=list)


class Workflows:
    """The user-facing operations of vault-dm-crypt."""

    def __init__(
        self,
        client: SecretStoreClient,
        luks: LUKSManager | None = None,
        devices: DeviceResolver | None = None,
        supervisor: ServiceSupervisor | None = None,
        validator: SystemValidator | None = None,
        timeout: float = 30,
        staging_dir: str | None = None,
    ):
        self.client = client
        self.luks = luks or LUKSManager()
        self.devices = devices or DeviceResolver()
        self.supervisor = supervisor or ServiceSupervisor()
        self.validator = validator or SystemValidator()
        self.timeout = timeout
        self.staging_dir = staging_dir

    async def _store_key(
        self, uuid: str, key: str, device: str, cancel: asyncio.Event | None,
    ) -> None:
        record = {
            "dmcrypt_key": key,
            "created_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "device": device,
        }
        hostname = socket.gethostname()
        if hostname:
            record["hostname"] = hostname
        path = key_path(uuid)
        async with asyncio.timeout(self.timeout):
            await self.client.with_retry(
                lambda: self.client.write(path, record), cancel=cancel,
            )

    async def _fetch_key(self, uuid: str, cancel: asyncio.Event | None) -> str:
        path = key_path(uuid)

        async def fetch() -> str:
            record = await self.client.read(path)
            key = record.get("dmcrypt_key")
            if key is None:
                raise KeyFormatError("dmcrypt_key not found in secret")
            if not isinstance(key, str):
                raise KeyFormatError("dmcrypt_key is not a string")
            return key

        async with asyncio.timeout(self.timeout):
            return await self.client.with_retry(fetch, cancel=cancel)

    async def _settle(self) -> None:
        try:
            await self.devices.wait_for_settle()
        except VaultDmCryptError as err:
            logger.warning("udev did not settle, continuing: %s", err)

    async def encrypt(
        self,
        device: str,
        force: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> EncryptResult:
        """Generate a key, store it in Vault, format and open ``device``."""
        logger.info("Starting device encryption (device=%s, force=%s)", device, force)
        self.validator.validate()
        self.devices.validate_device(device)
        if self.devices.is_mounted(device) and not force:
            raise VaultDmCryptError(
                f"device {device} is currently mounted. Use --force to encrypt anyway"
            )

        key = generate_key()
        uuid = str(uuidlib.uuid4())
        logger.debug("Generated UUID %s for device %s", uuid, device)

        try:
            await self._store_key(uuid, key, device, cancel)
        except VaultDmCryptError as err:
            raise VaultDmCryptError("failed to store key in Vault", err) from err
        logger.info("Encryption key stored in Vault (path=%s)", key_path(uuid))

        name = device_mapper_name(uuid)
        try:
            with staged_key(key, self.staging_dir) as key_file:
                await self.luks.format_device(device, key_file, uuid)
        except VaultDmCryptError as err:
            raise VaultDmCryptError("failed to format device with LUKS", err) from err
        await self._settle()
        try:
            with staged_key(key, self.staging_dir) as key_file:
                mapped = await self.luks.open_device(device, key_file, name)
        except VaultDmCryptError as err:
            raise VaultDmCryptError("failed to open LUKS device", err) from err

        service_enabled = True
        try:
            await self.supervisor.enable_decrypt_service(uuid)
        except VaultDmCryptError as err:
            service_enabled = False
            logger.warning(
                "Failed to enable systemd service - device will need manual "
                "decryption on boot: %s", err,
            )

        logger.info(
            "Device encryption completed (device=%s, uuid=%s, mapped_device=%s)",
            device, uuid, mapped,
        )
        return EncryptResult(
            uuid=uuid,
            device=device,
            mapped_device=mapped,
            vault_path=self.client.data_path(key_path(uuid)),
            service_enabled=service_enabled,
        )

    async def decrypt(
        self,
        uuid: str,
        name: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> DecryptResult:
        """Fetch the key for ``uuid`` from Vault and open the device."""
        logger.info("Starting device decryption (uuid=%s, name=%s)", uuid, name)
        self.validator.validate()

        try:
            key = await self._fetch_key(uuid, cancel)
        except VaultDmCryptError as err:
            raise VaultDmCryptError("failed to retrieve key from Vault", err) from err
        logger.info("Encryption key retrieved from Vault")

        try:
            validate_key_format(key)
        except KeyFormatError as err:
            raise VaultDmCryptError("invalid key format", err) from err

        name = name or device_mapper_name(uuid)
        await self._settle()
        try:
            device = await self.devices.resolve(uuid)
        except VaultDmCryptError as err:
            raise VaultDmCryptError(f"failed to find device with UUID {uuid}", err) from err

        mapped = mapped_device_path(name)
        if os.path.exists(mapped):
            logger.info("Device is already decrypted at %s", mapped)
            return DecryptResult(uuid=uuid, device=device, mapped_device=mapped, already_open=True)

        try:
            with staged_key(key, self.staging_dir) as key_file:
                mapped = await self.luks.open_device(device, key_file, name)
        except VaultDmCryptError as err:
            raise VaultDmCryptError("failed to open LUKS device", err) from err

        logger.info(
            "Device decryption completed (device=%s, uuid=%s, mapped_device=%s)",
            device, uuid, mapped,
        )
        return DecryptResult(uuid=uuid, device=device, mapped_device=mapped)

    async def refresh_auth(
        self,
        threshold: timedelta = timedelta(minutes=60),
        refresh_secret_id: bool = False,
        refresh_if_expiring: bool = False,
        update_config: bool = False,
        status_only: bool = False,
        config_path: str | None = None,
    ) -> AuthReport:
        """Report token and secret-id lifetimes and optionally rotate the secret-id.

        Raises:
            ConfigError: On conflicting flags, when rotation is requested
                without an AppRole role name, or when ``update_config`` is
                set and there is no config file to write. All of these are
                raised before Vault is contacted.
        """
        if refresh_secret_id and refresh_if_expiring:
            raise ConfigError(
                "cannot use both --refresh-secret-id and --refresh-if-expiring together"
            )
        if not status_only and (refresh_secret_id or refresh_if_expiring):
            if not self.client.approle_name:
                raise ConfigError(
                    "approle_name not configured - required for generating new secret IDs; "
                    "add 'approle_name = \"your-role-name\"' to the [vault] section",
                    field="vault.approle_name",
                )
            if update_config and not config_path:
                raise ConfigError(
                    "no config file was loaded, cannot update secret_id",
                    field="vault.secret_id",
                )
        client = self.client
        session = client.session
        report = AuthReport()

        async with asyncio.timeout(self.timeout):
            await session.authenticate()
            report.token_expires_at = session.expires_at
            try:
                report.token_info = await client.token_info()
            except VaultDmCryptError as err:
                logger.warning("Failed to get token info: %s", err)
                report.warnings.append(f"could not retrieve token information: {err}")

            role_pair = isinstance(session.proof, RolePair)
            if role_pair:
                try:
                    report.secret_id_info = await client.secret_id_info()
                    report.secret_id_expiring = await client.is_secret_id_expiring_within(threshold)
                except VaultDmCryptError as err:
                    logger.warning("Failed to get secret ID info: %s", err)
                    report.warnings.append(f"could not retrieve secret ID information: {err}")

            if status_only:
                return report

            needs_refresh = refresh_secret_id
            if refresh_if_expiring:
                if report.secret_id_expiring is None:
                    report.secret_id_expiring = await client.is_secret_id_expiring_within(threshold)
                needs_refresh = report.secret_id_expiring
            if not needs_refresh:
                return report

            new_secret_id = await client.generate_secret_id()
            report.new_secret_id = new_secret_id
            if update_config:
                update_secret_id(config_path, new_secret_id)
                report.config_updated = True

            proof = session.proof
            session.proof = RolePair(
                role_id=proof.role_id, secret_id=new_secret_id, mount=proof.mount,
            )
            logger.info("Testing new secret ID by re-authenticating")
            await session.authenticate()
            report.verified = True
        return report
