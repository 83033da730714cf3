"""
vault-dm-crypt CLI — entry point for all operations.

Usage:
    vault-dm-crypt encrypt <device> [--force]
    vault-dm-crypt decrypt <uuid> [--name NAME]
    vault-dm-crypt refresh-auth [--refresh-secret-id | --refresh-if-expiring]
                                [--update-config] [--status-only]
"""

import os
import sys
import asyncio
import argparse
import logging
from datetime import timedelta

from .conf import DEFAULT_CONFIG_PATH, Settings
from .exceptions import VaultDmCryptError
from .log import configure_logging
from .vault import SecretStoreClient
from .version import __version__
from .workflows import AuthReport, Workflows

logger = logging.getLogger("vault_dmcrypt.cli")

THRESHOLD_ENV = "VAULT_DM_CRYPT_REFRESH_THRESHOLD_MINUTES"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-dm-crypt",
        description="Store and retrieve dm-crypt keys in HashiCorp Vault.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c", "--config", default=None,
        help=f"config file path (default: search, starting with {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable verbose output")
    parser.add_argument("--debug", action="store_true", help="enable debug output")
    parser.add_argument(
        "--retry", type=int, default=None,
        help="number of retries for Vault operations (overrides config)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # encrypt
    encrypt_parser = subparsers.add_parser("encrypt", help="Encrypt a block device")
    encrypt_parser.add_argument("device", help="block device to encrypt")
    encrypt_parser.add_argument(
        "-f", "--force", action="store_true",
        help="encrypt even if the device is mounted",
    )

    # decrypt
    decrypt_parser = subparsers.add_parser(
        "decrypt", help="Decrypt and open an encrypted device",
    )
    decrypt_parser.add_argument("uuid", help="LUKS UUID of the device")
    decrypt_parser.add_argument("-n", "--name", default="", help="custom device-mapper name")

    # refresh-auth
    refresh_parser = subparsers.add_parser(
        "refresh-auth",
        help="Check AppRole authentication status and refresh the secret ID",
    )
    refresh_parser.add_argument(
        "-t", "--threshold-minutes", type=float, default=None,
        help="minutes before expiry that count as expiring (default: 60)",
    )
    group = refresh_parser.add_mutually_exclusive_group()
    group.add_argument(
        "-s", "--refresh-secret-id", action="store_true",
        help="always generate a new secret ID (requires approle_name)",
    )
    group.add_argument(
        "-r", "--refresh-if-expiring", action="store_true",
        help="generate a new secret ID only if the current one is expiring",
    )
    refresh_parser.add_argument(
        "-u", "--update-config", action="store_true",
        help="write the new secret ID back to the config file",
    )
    refresh_parser.add_argument(
        "--status-only", action="store_true",
        help="only show authentication status",
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.load(args.config)
    if args.debug:
        settings.logging.level = "debug"
    elif args.verbose:
        settings.logging.level = "info"
    if args.retry is not None and args.retry >= 0:
        settings.vault.retry_max = args.retry
    return settings


def _threshold(args: argparse.Namespace) -> timedelta:
    minutes = args.threshold_minutes
    if minutes is None:
        try:
            minutes = float(os.environ.get(THRESHOLD_ENV, "60"))
        except ValueError:
            minutes = 60.0
    return timedelta(minutes=minutes)


def _print_report(report: AuthReport, args: argparse.Namespace, config_path: str | None) -> None:
    if report.token_expires_at is not None:
        print(f"Token expires at: {report.token_expires_at.isoformat()}")
    for warning in report.warnings:
        print(f"Warning: {warning}")
    info = report.secret_id_info
    if info:
        if info.get("expiration_time"):
            print(f"Secret ID expires at: {info['expiration_time']}")
        else:
            print(f"Secret ID TTL: {info.get('secret_id_ttl', 0)} seconds (no expiration time available)")
        if report.secret_id_expiring:
            print("Secret ID is expiring within the threshold. Consider using --refresh-secret-id")
    if args.status_only:
        print("\nStatus check completed.")
        return
    if report.new_secret_id:
        if report.config_updated:
            print(f"New secret ID saved to config: {config_path}")
        else:
            print(f"New secret ID generated:\n{report.new_secret_id}")
            print("To save it to the config file, use --update-config")
        if report.verified:
            print("New secret ID verified successfully")
    elif args.refresh_if_expiring:
        print("Secret ID is not expiring within the threshold, no refresh needed")
    print("\nAuthentication management completed successfully.")


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    async with SecretStoreClient.from_settings(settings.vault) as client:
        workflows = Workflows(client, timeout=settings.vault.timeout)

        if args.command == "encrypt":
            result = await workflows.encrypt(args.device, force=args.force)
            print("Device encrypted successfully:")
            print(f"  UUID: {result.uuid}")
            print(f"  Mapped device: {result.mapped_device}")
            print(f"  Vault path: {result.vault_path}")
            return 0

        if args.command == "decrypt":
            result = await workflows.decrypt(args.uuid, name=args.name or None)
            if result.already_open:
                print(f"Device already decrypted: {result.mapped_device}")
                return 0
            print("Device decrypted successfully:")
            print(f"  UUID: {result.uuid}")
            print(f"  Device: {result.device}")
            print(f"  Mapped device: {result.mapped_device}")
            return 0

        config_path = settings.source_path
        report = await workflows.refresh_auth(
            threshold=_threshold(args),
            refresh_secret_id=args.refresh_secret_id,
            refresh_if_expiring=args.refresh_if_expiring,
            update_config=args.update_config,
            status_only=args.status_only,
            config_path=config_path,
        )
        _print_report(report, args, config_path)
        return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    try:
        settings = load_settings(args)
        configure_logging(settings.logging)
        logger.debug(
            "Configuration loaded (vault_url=%s, vault_backend=%s)",
            settings.vault.url, settings.vault.backend,
        )
        return asyncio.run(_run(args, settings))
    except VaultDmCryptError as err:
        print(f"Error: {err}", file=sys.stderr)
    except TimeoutError:
        print("Error: timed out waiting for Vault", file=sys.stderr)
    except KeyboardInterrupt:
        print("Error: interrupted", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
