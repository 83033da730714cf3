"""dm-crypt support — key material, key staging and the LUKS/udev collaborators."""

from .keys import (
    KEY_SIZE,
    decode_key,
    device_mapper_name,
    generate_key,
    mapped_device_path,
    validate_key_format,
)
from .staging import StagedKeyFile, destroy, stage, staged_key
from .luks import LUKSManager
from .devices import DeviceResolver, SystemValidator

__all__ = [
    "KEY_SIZE",
    "generate_key",
    "decode_key",
    "validate_key_format",
    "device_mapper_name",
    "mapped_device_path",
    "StagedKeyFile",
    "stage",
    "destroy",
    "staged_key",
    "LUKSManager",
    "DeviceResolver",
    "SystemValidator",
]
