"""
LUKS Manager — ``cryptsetup`` format/open/close of block devices.

The manager never sees key material: it receives the path of a staged key
file (see ``staging.staged_key``) and passes it to ``cryptsetup``.
"""
import os
import logging

from ..exceptions import CommandError, LUKSFailure
from ..shell import CommandExecutor
from .keys import mapped_device_path

logger = logging.getLogger("vault_dmcrypt.dmcrypt")

CRYPTSETUP = "cryptsetup"

FORMAT_OPTIONS = (
    "--type", "luks2",
    "--cipher", "aes-xts-plain64",
    "--key-size", "512",
    "--hash", "sha256",
    "--iter-time", "2000",
)


class LUKSManager:
    """Thin wrapper around the ``cryptsetup`` command."""

    def __init__(self, executor: CommandExecutor | None = None):
        self._executor = executor or CommandExecutor(timeout=120)

    async def _cryptsetup(self, device: str, operation: str, *args: str) -> str:
        try:
            return await self._executor.execute(CRYPTSETUP, *args)
        except CommandError as err:
            raise LUKSFailure(device, operation, err) from err

    async def format_device(self, device: str, key_file: str, uuid: str) -> None:
        """Format ``device`` as LUKS2 with ``uuid`` using the staged key file."""
        logger.info("Formatting device %s with LUKS (uuid=%s)", device, uuid)
        await self._cryptsetup(
            device, "format",
            "luksFormat", *FORMAT_OPTIONS,
            "--uuid", uuid,
            "--key-file", key_file,
            "--batch-mode",
            device,
        )
        logger.info("Device %s successfully formatted with LUKS", device)

    async def open_device(self, device: str, key_file: str, name: str) -> str:
        """Open ``device`` as ``/dev/mapper/<name>``; returns the mapped path.

        An already open mapping is left alone.
        """
        mapped = mapped_device_path(name)
        if os.path.exists(mapped):
            logger.info("Device is already open at %s", mapped)
            return mapped
        logger.info("Opening LUKS device %s as %s", device, name)
        await self._cryptsetup(
            device, "open", "luksOpen", "--key-file", key_file, device, name,
        )
        if not os.path.exists(mapped):
            raise LUKSFailure(
                device, "open", CommandError(CRYPTSETUP, f"mapped device not created: {mapped}"),
            )
        logger.info("LUKS device opened at %s", mapped)
        return mapped

    async def close_device(self, name: str) -> None:
        mapped = mapped_device_path(name)
        if not os.path.exists(mapped):
            logger.debug("Device %s is not open", name)
            return
        await self._cryptsetup(mapped, "close", "luksClose", name)
        logger.info("LUKS device %s closed", name)

    async def is_luks(self, device: str) -> bool:
        try:
            await self._executor.execute(CRYPTSETUP, "isLuks", device)
        except CommandError:
            return False
        return True
