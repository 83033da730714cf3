"""
Device discovery and host checks for dm-crypt operations.
"""
import os
import stat
import logging

from ..exceptions import (
    CommandError,
    DeviceNotFound,
    LUKSFailure,
    SystemRequirementError,
)
from ..shell import CommandExecutor

logger = logging.getLogger("vault_dmcrypt.dmcrypt")

BY_UUID_DIR = "/dev/disk/by-uuid"
PROC_MOUNTS = "/proc/mounts"

REQUIRED_COMMANDS = ("cryptsetup", "blkid", "udevadm")


class DeviceResolver:
    """Resolves LUKS UUIDs to block devices and inspects device state."""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        by_uuid_dir: str = BY_UUID_DIR,
        mounts_file: str = PROC_MOUNTS,
    ):
        self._executor = executor or CommandExecutor()
        self._by_uuid_dir = by_uuid_dir
        self._mounts_file = mounts_file

    async def resolve(self, uuid: str) -> str:
        """Return the device path for ``uuid``.

        Tries the ``/dev/disk/by-uuid`` symlink first, then ``blkid -U``.

        Raises:
            DeviceNotFound: If neither lookup finds the device.
        """
        link = os.path.join(self._by_uuid_dir, uuid)
        if os.path.islink(link) or os.path.exists(link):
            path = os.path.realpath(link)
            logger.debug("Found device %s via UUID symlink %s", path, link)
            return path
        try:
            output = await self._executor.execute("blkid", "-U", uuid)
        except CommandError as err:
            raise DeviceNotFound(uuid) from err
        path = output.strip()
        if not path:
            raise DeviceNotFound(uuid)
        logger.debug("Found device %s via blkid", path)
        return path

    def validate_device(self, device: str) -> None:
        """Check that ``device`` exists and is a block or character device.

        Raises:
            LUKSFailure: If it does not.
        """
        try:
            mode = os.stat(device).st_mode
        except FileNotFoundError as err:
            raise LUKSFailure(device, "validate", DeviceNotFound(device)) from err
        except OSError as err:
            raise LUKSFailure(device, "validate", err) from err
        if not (stat.S_ISBLK(mode) or stat.S_ISCHR(mode)):
            raise LUKSFailure(
                device, "validate", SystemRequirementError("path is not a device"),
            )
        logger.debug("Device validation passed for %s", device)

    def is_mounted(self, device: str) -> bool:
        """True if ``device`` (or the path it links to) appears in the mount table."""
        real = os.path.realpath(device)
        try:
            with open(self._mounts_file, encoding="utf-8") as fp:
                for line in fp:
                    fields = line.split()
                    if len(fields) >= 2 and fields[0] in (device, real):
                        logger.debug("Device %s is mounted at %s", device, fields[1])
                        return True
        except OSError as err:
            raise SystemRequirementError(f"failed to read {self._mounts_file}", err) from err
        return False

    async def wait_for_settle(self, timeout: int = 10) -> None:
        """Wait for udev to finish processing device events."""
        await self._executor.execute(
            "udevadm", "settle", f"--timeout={timeout}", timeout=timeout + 5,
        )


class SystemValidator:
    """Checks that the host can run dm-crypt operations."""

    def __init__(self, executor: CommandExecutor | None = None):
        self._executor = executor or CommandExecutor()

    def validate(self) -> None:
        """Raises SystemRequirementError unless running as root with the tools on PATH."""
        if os.geteuid() != 0:
            raise SystemRequirementError("dm-crypt operations require root privileges")
        try:
            self._executor.validate_commands(REQUIRED_COMMANDS)
        except CommandError as err:
            raise SystemRequirementError("required commands validation failed", err) from err
        logger.debug("System requirements validated")
