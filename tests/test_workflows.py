"""
Tests for the encrypt, decrypt and refresh-auth workflows.

The LUKS, device, systemd and host collaborators are replaced by fakes;
Vault is the in-memory ``FakeVault`` and key staging uses a temporary
directory, so every test also checks that no key file is left behind.
"""
import asyncio
import base64
import os
from datetime import datetime, timedelta, timezone

import pytest

from vault_dmcrypt.dmcrypt import generate_key
from vault_dmcrypt.dmcrypt.staging import KEY_FILE_PREFIX
from vault_dmcrypt.exceptions import (
    AuthMethodError,
    CancellationError,
    CommandError,
    ConfigError,
    DeviceNotFound,
    KeyFormatError,
    LUKSFailure,
    RetryExhausted,
    StoreHTTPError,
    SystemRequirementError,
    VaultDmCryptError,
)
from vault_dmcrypt.vault import RolePair, StaticToken
from vault_dmcrypt.workflows import Workflows, key_path

from conftest import ROLE_ID, ROOT_TOKEN, make_client


class FakeLUKS:
    def __init__(self, fail_format: bool = False, fail_open: bool = False):
        self.fail_format = fail_format
        self.fail_open = fail_open
        self.formatted = []
        self.opened = []

    @staticmethod
    def _snapshot(key_file: str) -> bytes:
        assert os.path.exists(key_file)
        with open(key_file, "rb") as fp:
            return fp.read()

    async def format_device(self, device, key_file, uuid):
        self.formatted.append((device, uuid, self._snapshot(key_file)))
        if self.fail_format:
            raise LUKSFailure(device, "format", CommandError("cryptsetup", "exit status 1"))

    async def open_device(self, device, key_file, name):
        self.opened.append((device, name, self._snapshot(key_file)))
        if self.fail_open:
            raise LUKSFailure(device, "open", CommandError("cryptsetup", "exit status 2"))
        return f"/dev/mapper/{name}"


class FakeDevices:
    def __init__(
        self, mounted: bool = False, device: str = "/dev/sdb", settle_error: Exception = None,
    ):
        self.mounted = mounted
        self.device = device
        self.settle_error = settle_error
        self.settled = 0

    def validate_device(self, device):
        pass

    def is_mounted(self, device):
        return self.mounted

    async def resolve(self, uuid):
        if not self.device:
            raise DeviceNotFound(uuid)
        return self.device

    async def wait_for_settle(self, timeout=10):
        self.settled += 1
        if self.settle_error:
            raise self.settle_error


class FakeSupervisor:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.enabled = []

    async def enable_decrypt_service(self, uuid):
        if self.fail:
            raise VaultDmCryptError("failed to enable service", CommandError("systemctl", "exit status 1"))
        self.enabled.append(uuid)


class FakeValidator:
    def __init__(self, error: Exception = None):
        self.error = error

    def validate(self):
        if self.error:
            raise self.error


@pytest.fixture
def luks():
    return FakeLUKS()


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def workflows_factory(vault, clock, luks, devices, supervisor, tmp_path):
    def factory(client=None, **overrides):
        options = {
            "luks": luks,
            "devices": devices,
            "supervisor": supervisor,
            "validator": FakeValidator(),
            "staging_dir": str(tmp_path),
        }
        options.update(overrides)
        return Workflows(client or make_client(vault, clock=clock), **options)
    return factory


@pytest.fixture
def workflows(workflows_factory):
    return workflows_factory()


def leftover_key_files(directory) -> list:
    return [n for n in os.listdir(directory) if n.startswith(KEY_FILE_PREFIX)]


# --- Encrypt ---

class TestEncrypt:

    @pytest.mark.asyncio
    async def test_encrypt(self, workflows, vault, luks, supervisor, tmp_path):
        """Test a full encryption of a device."""
        result = await workflows.encrypt("/dev/sdb")

        stored = vault.secrets[f"secret/data/vaultlocker/{result.uuid}"]
        assert stored["device"] == "/dev/sdb"
        assert "created_at" in stored
        raw_key = base64.b64decode(stored["dmcrypt_key"])
        assert len(raw_key) == 512

        assert luks.formatted == [("/dev/sdb", result.uuid, raw_key)]
        name = "vaultlocker-" + result.uuid.replace("-", "")
        assert luks.opened == [("/dev/sdb", name, raw_key)]
        assert result.mapped_device == f"/dev/mapper/{name}"
        assert result.vault_path == f"secret/data/vaultlocker/{result.uuid}"
        assert result.service_enabled is True
        assert supervisor.enabled == [result.uuid]
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_mounted_device_refused(self, workflows_factory, vault, luks):
        """Test that a mounted device is not encrypted."""
        workflows = workflows_factory(devices=FakeDevices(mounted=True))
        with pytest.raises(VaultDmCryptError, match="currently mounted"):
            await workflows.encrypt("/dev/sdb")
        assert vault.calls == []
        assert luks.formatted == []

    @pytest.mark.asyncio
    async def test_mounted_device_forced(self, workflows_factory, luks):
        """Test that --force encrypts a mounted device."""
        workflows = workflows_factory(devices=FakeDevices(mounted=True))
        await workflows.encrypt("/dev/sdb", force=True)
        assert len(luks.formatted) == 1

    @pytest.mark.asyncio
    async def test_system_requirements_checked_first(self, workflows_factory, vault):
        """Test that host checks run before Vault is used."""
        workflows = workflows_factory(
            validator=FakeValidator(SystemRequirementError("dm-crypt operations require root privileges")),
        )
        with pytest.raises(SystemRequirementError):
            await workflows.encrypt("/dev/sdb")
        assert vault.calls == []

    @pytest.mark.asyncio
    async def test_store_failure_prevents_format(self, workflows_factory, vault, clock, luks):
        """Test that the device is untouched when the key is not stored."""
        client = make_client(vault, proof=RolePair(role_id=ROLE_ID, secret_id="wrong"), clock=clock)
        workflows = workflows_factory(client=client)
        with pytest.raises(VaultDmCryptError, match="failed to store key in Vault") as excinfo:
            await workflows.encrypt("/dev/sdb")
        assert isinstance(excinfo.value.cause, RetryExhausted)
        assert vault.logins == 3
        assert luks.formatted == []

    @pytest.mark.asyncio
    async def test_format_failure_removes_key_file(self, workflows_factory, tmp_path):
        """Test that a failed format leaves no key file."""
        workflows = workflows_factory(luks=FakeLUKS(fail_format=True))
        with pytest.raises(VaultDmCryptError, match="failed to format device with LUKS"):
            await workflows.encrypt("/dev/sdb")
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_open_failure_removes_key_file(self, workflows_factory, tmp_path):
        """Test that a failed open leaves no key file."""
        workflows = workflows_factory(luks=FakeLUKS(fail_open=True))
        with pytest.raises(VaultDmCryptError, match="failed to open LUKS device"):
            await workflows.encrypt("/dev/sdb")
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_service_failure_is_not_fatal(self, workflows_factory):
        """Test that a service failure only disables boot decrypt."""
        workflows = workflows_factory(supervisor=FakeSupervisor(fail=True))
        result = await workflows.encrypt("/dev/sdb")
        assert result.service_enabled is False

    @pytest.mark.asyncio
    async def test_udev_settled_after_format(self, workflows, devices, luks):
        """Test that udev is settled once the new LUKS header is written."""
        await workflows.encrypt("/dev/sdb")
        assert devices.settled == 1
        assert len(luks.opened) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_store(self, workflows, vault, luks):
        """Test that a cancelled encrypt never writes the key."""
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(VaultDmCryptError, match="failed to store key in Vault") as excinfo:
            await workflows.encrypt("/dev/sdb", cancel=cancel)
        assert isinstance(excinfo.value.cause, CancellationError)
        assert vault.calls == []
        assert luks.formatted == []


# --- Decrypt ---

UUID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
MAPPER = "vaultlocker-3f2504e04f8911d39a0c0305e82c3301"


@pytest.fixture
def stored_key(vault):
    key = generate_key()
    vault.secrets[f"secret/data/{key_path(UUID)}"] = {"dmcrypt_key": key, "device": "/dev/sdb"}
    return key


class TestDecrypt:

    @pytest.mark.asyncio
    async def test_decrypt(self, workflows, stored_key, luks, tmp_path):
        """Test a full decryption of a device."""
        result = await workflows.decrypt(UUID)
        assert result.device == "/dev/sdb"
        assert result.mapped_device == f"/dev/mapper/{MAPPER}"
        assert result.already_open is False
        assert luks.opened == [("/dev/sdb", MAPPER, base64.b64decode(stored_key))]
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_custom_name(self, workflows, stored_key, luks):
        """Test decrypting under a custom mapper name."""
        result = await workflows.decrypt(UUID, name="data")
        assert result.mapped_device == "/dev/mapper/data"
        assert luks.opened[0][1] == "data"

    @pytest.mark.asyncio
    async def test_already_open(self, workflows, stored_key, luks, monkeypatch):
        """Test that an open mapping is reported without using the key."""
        mapped = f"/dev/mapper/{MAPPER}"
        real_exists = os.path.exists
        monkeypatch.setattr(os.path, "exists", lambda p: p == mapped or real_exists(p))
        result = await workflows.decrypt(UUID)
        assert result.already_open is True
        assert result.mapped_device == mapped
        assert luks.opened == []

    @pytest.mark.asyncio
    async def test_missing_key(self, workflows, vault, luks):
        """Test decrypting a UUID with no stored key."""
        with pytest.raises(VaultDmCryptError, match="failed to retrieve key from Vault") as excinfo:
            await workflows.decrypt(UUID)
        assert "secret not found" in str(excinfo.value)
        assert vault.count(key_path(UUID)) == 3
        assert luks.opened == []

    @pytest.mark.asyncio
    async def test_record_without_key_is_not_retried(self, workflows, vault):
        """Test that a record without dmcrypt_key is not retried."""
        vault.secrets[f"secret/data/{key_path(UUID)}"] = {"device": "/dev/sdb"}
        with pytest.raises(VaultDmCryptError, match="dmcrypt_key not found in secret") as excinfo:
            await workflows.decrypt(UUID)
        assert isinstance(excinfo.value.cause, KeyFormatError)
        assert vault.count(key_path(UUID)) == 1

    @pytest.mark.asyncio
    async def test_malformed_key(self, workflows, vault, luks, tmp_path):
        """Test that a malformed key never reaches cryptsetup."""
        vault.secrets[f"secret/data/{key_path(UUID)}"] = {"dmcrypt_key": "c2hvcnQ="}
        with pytest.raises(VaultDmCryptError, match="invalid key format"):
            await workflows.decrypt(UUID)
        assert luks.opened == []
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_device_not_found(self, workflows_factory, stored_key):
        """Test decrypting when the device cannot be found."""
        workflows = workflows_factory(devices=FakeDevices(device=""))
        with pytest.raises(VaultDmCryptError, match=f"failed to find device with UUID {UUID}"):
            await workflows.decrypt(UUID)

    @pytest.mark.asyncio
    async def test_udev_settled_before_resolve(self, workflows, devices, stored_key):
        """Test that udev is settled before the UUID is looked up."""
        await workflows.decrypt(UUID)
        assert devices.settled == 1

    @pytest.mark.asyncio
    async def test_settle_failure_is_not_fatal(self, workflows_factory, stored_key, luks):
        """Test that a udevadm failure only logs a warning."""
        devices = FakeDevices(settle_error=CommandError("udevadm", "exit status 1"))
        workflows = workflows_factory(devices=devices)
        result = await workflows.decrypt(UUID)
        assert devices.settled == 1
        assert result.device == "/dev/sdb"
        assert len(luks.opened) == 1

    @pytest.mark.asyncio
    async def test_open_failure(self, workflows_factory, stored_key, tmp_path):
        """Test that a failed open leaves no key file."""
        workflows = workflows_factory(luks=FakeLUKS(fail_open=True))
        with pytest.raises(VaultDmCryptError, match="failed to open LUKS device"):
            await workflows.decrypt(UUID)
        assert leftover_key_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self, workflows, vault, stored_key, luks):
        """Test that a transient store failure is retried."""
        vault.fail(f"secret/data/{key_path(UUID)}", StoreHTTPError(503, ["sealed"]))
        await workflows.decrypt(UUID)
        assert len(luks.opened) == 1


# --- Refresh auth ---

class TestRefreshAuth:

    @pytest.mark.asyncio
    async def test_conflicting_flags(self, workflows):
        """Test that conflicting refresh flags are refused."""
        with pytest.raises(ConfigError, match="cannot use both"):
            await workflows.refresh_auth(refresh_secret_id=True, refresh_if_expiring=True)

    @pytest.mark.asyncio
    async def test_status_only(self, workflows, vault, clock):
        """Test a status-only report."""
        report = await workflows.refresh_auth(status_only=True, refresh_secret_id=True)
        assert report.token_expires_at == clock() + timedelta(seconds=3600)
        assert report.token_info["accessor"] == "acc-token"
        assert report.secret_id_info["secret_id_accessor"] == "acc-secret"
        assert report.secret_id_expiring is False
        assert report.new_secret_id == ""
        assert vault.count("/secret-id") == 0

    @pytest.mark.asyncio
    async def test_refresh_and_update_config(self, workflows, vault, tmp_path):
        """Test rotating the secret ID and saving it."""
        config = tmp_path / "config.toml"
        config.write_text('[vault]\napprole = "role-1234"\nsecret_id = "secret-5678"\n', encoding="utf-8")
        report = await workflows.refresh_auth(
            refresh_secret_id=True, update_config=True, config_path=str(config),
        )
        assert report.new_secret_id.startswith("secret-new-")
        assert report.config_updated is True
        assert report.verified is True
        assert f'secret_id = "{report.new_secret_id}"' in config.read_text(encoding="utf-8")
        assert workflows.client.session.proof.secret_id == report.new_secret_id
        assert vault.logins == 2

    @pytest.mark.asyncio
    async def test_refresh_without_update(self, workflows):
        """Test rotating the secret ID without saving it."""
        report = await workflows.refresh_auth(refresh_secret_id=True)
        assert report.new_secret_id
        assert report.config_updated is False
        assert report.verified is True

    @pytest.mark.asyncio
    async def test_refresh_if_expiring_not_needed(self, workflows, vault):
        """Test that a healthy secret ID is not rotated."""
        report = await workflows.refresh_auth(refresh_if_expiring=True)
        assert report.secret_id_expiring is False
        assert report.new_secret_id == ""
        assert vault.count("/secret-id") == 0

    @pytest.mark.asyncio
    async def test_refresh_if_expiring(self, workflows, vault):
        """Test that an expiring secret ID is rotated."""
        soon = datetime.now(timezone.utc) + timedelta(minutes=10)
        vault.secret_id_expiration = soon.isoformat()
        report = await workflows.refresh_auth(
            threshold=timedelta(minutes=60), refresh_if_expiring=True,
        )
        assert report.secret_id_expiring is True
        assert report.new_secret_id
        assert report.verified is True

    @pytest.mark.asyncio
    async def test_token_info_failure_is_a_warning(self, workflows, vault):
        """Test that a token lookup failure becomes a warning."""
        vault.fail("auth/token/lookup-self", StoreHTTPError(500, ["boom"]))
        report = await workflows.refresh_auth(status_only=True)
        assert report.token_info == {}
        assert any("token information" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_static_token_status(self, workflows_factory, vault, clock):
        """Test the status report for a static token."""
        client = make_client(vault, proof=StaticToken(ROOT_TOKEN), clock=clock)
        workflows = workflows_factory(client=client)
        report = await workflows.refresh_auth(status_only=True)
        assert report.secret_id_info == {}
        assert report.secret_id_expiring is None

    @pytest.mark.asyncio
    async def test_static_token_cannot_rotate(self, workflows_factory, vault, clock):
        """Test that a static token cannot rotate a secret ID."""
        client = make_client(vault, proof=StaticToken(ROOT_TOKEN), clock=clock)
        workflows = workflows_factory(client=client)
        with pytest.raises(AuthMethodError):
            await workflows.refresh_auth(refresh_secret_id=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", ["refresh_secret_id", "refresh_if_expiring"])
    async def test_rotation_requires_approle_name(self, workflows_factory, vault, clock, flag):
        """Test that a missing approle_name is reported before Vault is contacted."""
        workflows = workflows_factory(client=make_client(vault, clock=clock, approle_name=""))
        with pytest.raises(ConfigError, match="approle_name not configured") as excinfo:
            await workflows.refresh_auth(**{flag: True})
        assert excinfo.value.field == "vault.approle_name"
        assert vault.calls == []
        assert vault.logins == 0

    @pytest.mark.asyncio
    async def test_status_only_without_approle_name(self, workflows_factory, vault, clock):
        """Test that status checks still work without approle_name."""
        workflows = workflows_factory(client=make_client(vault, clock=clock, approle_name=""))
        report = await workflows.refresh_auth(status_only=True)
        assert report.token_expires_at is not None
        assert any("secret ID information" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_update_config_requires_config_file(self, workflows, vault):
        """Test that update_config without a loaded file fails before rotating."""
        with pytest.raises(ConfigError, match="no config file was loaded"):
            await workflows.refresh_auth(refresh_secret_id=True, update_config=True)
        assert vault.calls == []
        assert vault.count("/secret-id") == 0
