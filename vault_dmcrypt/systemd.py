"""
Service Supervisor — boot-time decrypt units managed through systemctl.
"""
import logging

from .exceptions import CommandError, VaultDmCryptError
from .shell import CommandExecutor

logger = logging.getLogger("vault_dmcrypt.systemd")

DECRYPT_SERVICE_TEMPLATE = "vault-dm-crypt-decrypt@{}.service"


class ServiceSupervisor:
    """Enables and disables the per-device decrypt service."""

    def __init__(self, executor: CommandExecutor | None = None):
        self._executor = executor or CommandExecutor()

    @staticmethod
    def decrypt_service_name(uuid: str) -> str:
        return DECRYPT_SERVICE_TEMPLATE.format(uuid.strip().lower())

    async def _systemctl(self, action: str, service: str) -> None:
        try:
            await self._executor.execute("systemctl", action, service)
        except CommandError as err:
            raise VaultDmCryptError(f"failed to {action} service {service}", err) from err

    async def enable_decrypt_service(self, uuid: str) -> None:
        service = self.decrypt_service_name(uuid)
        logger.info("Enabling systemd service %s", service)
        await self._systemctl("enable", service)

    async def disable_decrypt_service(self, uuid: str) -> None:
        service = self.decrypt_service_name(uuid)
        logger.info("Disabling systemd service %s", service)
        await self._systemctl("disable", service)
