"""
Configuration — TOML file, environment overrides and validated settings.

Reads the ``[vault]`` and ``[logging]`` tables of a TOML file and lets
environment variables override them, e.g.:
    VAULT_ADDR = https://vault.example.com:8200
    VAULT_APPROLE = <role_id>
    VAULT_SECRET_ID = <secret_id>
    VAULT_DM_CRYPT_VAULT_RETRY_MAX = 5

Security Note:
    Never log ``secret_id`` or ``token``. Only log URLs, backends and
    role names.
"""
import os
import tempfile
import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigError
from .vault.auth import CredentialProof, RolePair, StaticToken
from .vault.retry import RetryPolicy

logger = logging.getLogger("vault_dmcrypt.conf")

DEFAULT_CONFIG_PATH = "/etc/vault-dm-crypt/config.toml"

CONFIG_SEARCH_PATHS = (
    Path("/etc/vault-dm-crypt/config.toml"),
    Path("/etc/vaultlocker/config.toml"),
    Path("configs/config.toml"),
    Path("config.toml"),
)

# (section, key) -> environment variables, first one set wins
ENV_BINDINGS: dict[tuple[str, str], tuple[str, ...]] = {
    ("vault", "url"): ("VAULT_ADDR", "VAULT_DM_CRYPT_VAULT_URL"),
    ("vault", "ca_bundle"): ("VAULT_CACERT", "VAULT_DM_CRYPT_VAULT_CA_BUNDLE"),
    ("vault", "approle"): ("VAULT_APPROLE", "VAULT_DM_CRYPT_VAULT_APPROLE"),
    ("vault", "secret_id"): ("VAULT_SECRET_ID", "VAULT_DM_CRYPT_VAULT_SECRET_ID"),
    ("vault", "token"): ("VAULT_TOKEN", "VAULT_DM_CRYPT_VAULT_TOKEN"),
    ("vault", "approle_name"): ("VAULT_DM_CRYPT_VAULT_APPROLE_NAME",),
    ("vault", "auth_mount"): ("VAULT_DM_CRYPT_VAULT_AUTH_MOUNT",),
    ("vault", "backend"): ("VAULT_DM_CRYPT_VAULT_BACKEND",),
    ("vault", "kv_version"): ("VAULT_DM_CRYPT_VAULT_KV_VERSION",),
    ("vault", "timeout"): ("VAULT_DM_CRYPT_VAULT_TIMEOUT",),
    ("vault", "retry_max"): ("VAULT_DM_CRYPT_VAULT_RETRY_MAX",),
    ("vault", "retry_delay"): ("VAULT_DM_CRYPT_VAULT_RETRY_DELAY",),
    ("logging", "level"): ("VAULT_DM_CRYPT_LOG_LEVEL",),
    ("logging", "format"): ("VAULT_DM_CRYPT_LOG_FORMAT",),
    ("logging", "output"): ("VAULT_DM_CRYPT_LOG_OUTPUT",),
}

_LOG_LEVELS = ("debug", "info", "warn", "warning", "error", "fatal", "critical")
_LOG_FORMATS = ("text", "json")


class VaultSettings(BaseModel):
    """Connection, authentication and retry settings for Vault."""

    url: str = "http://127.0.0.1:8200"
    backend: str = "secret"
    kv_version: int = Field(default=2)
    auth_mount: str = "approle"
    approle: str = ""
    approle_name: str = ""
    secret_id: str = ""
    token: str = ""
    ca_bundle: str = ""
    timeout: int = Field(default=30)
    retry_max: int = Field(default=3)
    retry_delay: float = Field(default=5)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v:
            raise ValueError("URL cannot be empty")
        return v.rstrip("/")

    @field_validator("backend", "auth_mount")
    @classmethod
    def validate_mount(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("mount path cannot be empty")
        return v

    @field_validator("kv_version")
    @classmethod
    def validate_kv_version(cls, v: int) -> int:
        if v not in (1, 2):
            raise ValueError(f"unsupported KV engine version: {v}")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("retry_max", "retry_delay")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("cannot be negative")
        return v

    @field_validator("ca_bundle")
    @classmethod
    def validate_ca_bundle(cls, v: str) -> str:
        if v and not os.path.isfile(v):
            raise ValueError(f"CA bundle file not found: {v}")
        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> "VaultSettings":
        """Require either an AppRole pair or a static token."""
        if self.token and not (self.approle or self.secret_id):
            return self
        if not self.approle:
            raise ValueError("AppRole ID is required for authentication")
        if not self.secret_id:
            raise ValueError("Secret ID is required for authentication")
        return self

    def credential_proof(self) -> CredentialProof:
        """Build the credential proof for the configured auth method."""
        if self.approle or self.secret_id:
            return RolePair(
                role_id=self.approle,
                secret_id=self.secret_id,
                mount=self.auth_mount,
            )
        return StaticToken(token=self.token)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.retry_max, delay=self.retry_delay)


class LoggingSettings(BaseModel):
    """Log level, format and destination."""

    level: str = "info"
    format: str = "text"
    output: str = "stdout"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.lower() not in _LOG_LEVELS:
            raise ValueError(f"invalid log level: {v}")
        return v.lower()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in _LOG_FORMATS:
            raise ValueError(f"invalid log format: {v}")
        return v.lower()

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        if v in ("", "stdout", "stderr"):
            return v or "stdout"
        directory = os.path.dirname(os.path.abspath(v))
        if not os.path.isdir(directory):
            raise ValueError(f"log output directory does not exist: {directory}")
        return v


class Settings(BaseModel):
    """Validated vault-dm-crypt configuration."""

    vault: VaultSettings = Field(default_factory=VaultSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    # absolute path of the file the settings were read from, if any
    source_path: str | None = Field(default=None, exclude=True)

    @classmethod
    def load(
        cls,
        path: str | None = None,
        environ: dict[str, str] | None = None,
    ) -> "Settings":
        """Load settings from a TOML file and the environment.

        Args:
            path: Explicit config file. Must exist when given; when omitted the
                standard locations are searched and a missing file is fine.
            environ: Environment mapping (defaults to ``os.environ``).

        Returns:
            Validated Settings, with ``source_path`` set to the file that
            was actually read.

        Raises:
            ConfigError: On an unreadable file or any invalid value.
        """
        target = resolve_config_path(path)
        raw = read_config_file(target)
        apply_environment(raw, os.environ if environ is None else environ)
        settings = cls.from_mapping(raw)
        if target is not None:
            settings.source_path = os.path.abspath(target)
        return settings

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "Settings":
        try:
            return cls.model_validate(raw)
        except ValidationError as err:
            first = err.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            message = first.get("msg", str(err)).removeprefix("Value error, ")
            raise ConfigError(message, field=field, cause=err) from err


def find_config_file() -> Path | None:
    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.is_file():
            return candidate
    return None


def resolve_config_path(path: str | None = None) -> Path | None:
    """Return the explicit path, or the first standard location that exists."""
    if path:
        return Path(path)
    return find_config_file()


def read_config_file(target: Path | None) -> dict[str, Any]:
    """Parse the TOML config file into nested dicts.

    Raises:
        ConfigError: If the file cannot be read or is not valid TOML.
    """
    if target is None:
        logger.debug("No config file found, using defaults and environment")
        return {}
    try:
        with target.open("rb") as fp:
            data = tomllib.load(fp)
    except (OSError, tomllib.TOMLDecodeError) as err:
        raise ConfigError(f"failed to read config file {target}", cause=err) from err
    logger.debug("Loaded config file %s", target)
    return {
        section: dict(data.get(section) or {}) for section in ("vault", "logging")
    }


def apply_environment(raw: dict[str, Any], environ) -> dict[str, Any]:
    """Overlay bound environment variables onto the raw config mapping."""
    for (section, key), names in ENV_BINDINGS.items():
        for name in names:
            value = environ.get(name)
            if value:
                raw.setdefault(section, {})[key] = value
                break
    return raw


def update_secret_id(config_path: str, new_secret_id: str) -> None:
    """Replace the ``secret_id`` of the ``[vault]`` table in place.

    Only that line is rewritten; indentation, quoting style and every other
    line are preserved. The file is replaced atomically and keeps its mode.

    Raises:
        ConfigError: If the file cannot be read or written, or has no
            ``secret_id`` in its ``[vault]`` table.
    """
    try:
        with open(config_path, encoding="utf-8") as fp:
            lines = fp.read().split("\n")
        mode = os.stat(config_path).st_mode
    except OSError as err:
        raise ConfigError("failed to read config file", cause=err) from err

    in_vault = False
    found = False
    for idx, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("["):
            in_vault = stripped == "[vault]"
            continue
        if not in_vault or "=" not in stripped:
            continue
        key, value = line.split("=", 1)
        if key.strip() != "secret_id":
            continue
        indent = line[: len(line) - len(line.lstrip())]
        quote = '"' if value.strip().startswith('"') else "'"
        lines[idx] = f"{indent}secret_id = {quote}{new_secret_id}{quote}"
        found = True
        break

    if not found:
        raise ConfigError(
            "secret_id not found in [vault] section of config file",
            field="vault.secret_id",
        )

    directory = os.path.dirname(os.path.abspath(config_path))
    fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".toml", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write("\n".join(lines))
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, config_path)
    except OSError as err:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise ConfigError("failed to replace config file", cause=err) from err
    logger.info("Updated secret_id in %s", config_path)
