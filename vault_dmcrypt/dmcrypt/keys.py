"""
Key Material — generation, validation and decoding of dm-crypt keys.

Keys are 512 random bytes (4096 bits). They travel through Vault
base64-encoded and are decoded to raw bytes only immediately before being
staged for ``cryptsetup``.

Security Note:
    Never log key material. Only log key lengths.
"""
import base64
import binascii
import secrets
import logging

from ..exceptions import KeyFormatError

logger = logging.getLogger("vault_dmcrypt.dmcrypt")

KEY_SIZE = 512  # bytes

MAPPER_PREFIX = "vaultlocker"
MAPPER_DIR = "/dev/mapper"


def generate_key() -> str:
    """Generate a random 512-byte key and return it base64-encoded."""
    key = base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")
    logger.debug("Encryption key generated (key_length=%d)", KEY_SIZE)
    return key


def decode_key(encoded: str) -> bytearray:
    """Decode a base64 key into a mutable buffer the caller can wipe.

    Raises:
        KeyFormatError: If ``encoded`` is not valid base64 or does not
            decode to exactly 512 bytes.
    """
    if not isinstance(encoded, str) or not encoded:
        raise KeyFormatError("key is empty or not a string")
    try:
        raw = bytearray(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as err:
        raise KeyFormatError("key is not valid base64", err) from err
    if len(raw) != KEY_SIZE:
        size = len(raw)
        wipe(raw)
        raise KeyFormatError(
            f"key length is {size} bytes, expected {KEY_SIZE} bytes (4096 bits)"
        )
    return raw


def validate_key_format(encoded: str) -> None:
    """Check that ``encoded`` is a well-formed key without keeping it."""
    wipe(decode_key(encoded))


def wipe(buffer: bytearray) -> None:
    """Overwrite a key buffer with zeros in place."""
    for idx in range(len(buffer)):
        buffer[idx] = 0


def device_mapper_name(uuid: str) -> str:
    """Device-mapper name for a LUKS UUID, e.g. ``vaultlocker-<hex>``."""
    return f"{MAPPER_PREFIX}-{uuid.lower().replace('-', '')}"


def mapped_device_path(name: str) -> str:
    return f"{MAPPER_DIR}/{name}"
