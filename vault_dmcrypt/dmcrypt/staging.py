"""
Key Staging — hand key material to an external tool through a temporary file.

``cryptsetup`` reads keys from a file, so the decoded key has to touch the
disk briefly. The staging protocol keeps that window as small as possible:

1. Create a uniquely named file and restrict it to owner read/write
   **before** writing anything.
2. Write the key, fsync, close.
3. Hand the path to the tool.
4. On every exit path: overwrite the file's full extent with random bytes,
   fsync, close, unlink. Each of these steps is best effort; failures are
   logged and never raised, so they cannot mask the tool's own result.

Security Note:
    Never log key material. Only log staged file paths.
"""
import os
import stat
import secrets
import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from collections.abc import Iterator

from ..exceptions import StagingError
from .keys import decode_key, wipe

logger = logging.getLogger("vault_dmcrypt.dmcrypt")

KEY_FILE_PREFIX = "vault-dm-crypt-key-"
KEY_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0600


@dataclass(frozen=True)
class StagedKeyFile:
    path: str
    mode: int = KEY_FILE_MODE


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


def stage(key: bytes, directory: str | None = None) -> StagedKeyFile:
    """Write ``key`` to a new owner-only temporary file.

    Args:
        key: Raw key bytes.
        directory: Where to create the file (default: the system temp dir).

    Returns:
        The staged file, to be passed to ``destroy`` on every exit path.

    Raises:
        StagingError: If the file cannot be created, restricted or written.
            Anything created before the failure is removed.
    """
    try:
        fd, path = tempfile.mkstemp(prefix=KEY_FILE_PREFIX, dir=directory)
    except OSError as err:
        raise StagingError("failed to create temporary key file", err) from err

    try:
        os.fchmod(fd, KEY_FILE_MODE)
    except OSError as err:
        os.close(fd)
        _discard(path)
        raise StagingError("failed to set key file permissions", err) from err

    try:
        view = memoryview(key)
        while view:
            written = os.write(fd, view)
            view = view[written:]
        os.fsync(fd)
    except OSError as err:
        os.close(fd)
        _discard(path)
        raise StagingError("failed to write key to file", err) from err

    try:
        os.close(fd)
    except OSError as err:
        _discard(path)
        raise StagingError("failed to close key file", err) from err

    logger.debug("Created temporary key file %s", path)
    return StagedKeyFile(path=path)


def destroy(staged: StagedKeyFile) -> None:
    """Overwrite the staged file with random bytes, then unlink it.

    Never raises: a failed overwrite still leads to the unlink attempt, and a
    failed unlink is only logged.
    """
    path = staged.path
    logger.debug("Cleaning up temporary key file %s", path)
    try:
        with open(path, "r+b", buffering=0) as fp:
            size = os.fstat(fp.fileno()).st_size
            if size > 0:
                fp.seek(0)
                fp.write(secrets.token_bytes(size))
                fp.flush()
                os.fsync(fp.fileno())
    except OSError as err:
        logger.warning("Failed to overwrite temporary key file %s: %s", path, err)

    try:
        os.unlink(path)
    except FileNotFoundError:
        logger.debug("Temporary key file %s already removed", path)
    except OSError as err:
        logger.warning("Failed to remove temporary key file %s: %s", path, err)
    else:
        logger.debug("Temporary key file %s removed", path)


@contextmanager
def staged_key(encoded: str, directory: str | None = None) -> Iterator[str]:
    """Decode ``encoded``, stage it and yield the key file path.

    The key is decoded before any file is created, so malformed input never
    touches the disk. The file is destroyed and the in-memory copy wiped when
    the block exits, however it exits.

    Raises:
        KeyFormatError: If ``encoded`` is not a valid key.
        StagingError: If the key file cannot be staged.
    """
    raw = decode_key(encoded)
    try:
        staged = stage(bytes(raw), directory=directory)
    finally:
        wipe(raw)
    try:
        yield staged.path
    finally:
        destroy(staged)
