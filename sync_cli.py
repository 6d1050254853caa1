"""Command line helper for the OrderSync synchronisation engine."""

from __future__ import annotations

import argparse
import getpass
import sys

from ordersync.errors import GatewayError
from ordersync.gateway import RemoteGateway
from ordersync.logging_config import configure_logging, get_log_path
from ordersync.session import SyncSession
from ordersync.version import __version__
import settings as sync_settings


def _configured_settings() -> sync_settings.SyncSettings:
    settings = sync_settings.load_sync_settings(sync_settings.SYNC_SETTINGS_PATH)
    if not settings.configured:
        raise GatewayError("No endpoint configured; run 'set-endpoint' first")
    return settings


def command_pull(args: argparse.Namespace) -> int:
    try:
        settings = _configured_settings()
        if args.days:
            settings.pull_window_days = args.days
        with SyncSession(settings) as session:
            dataset = session.start(background=False)
    except GatewayError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    counts = dataset.counts()
    print(f"Customers: {counts['customers']}")
    print(f"Products : {counts['products']}")
    print(f"Orders   : {counts['orders']}")
    return 0


def command_login(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    try:
        settings = _configured_settings()
        gateway = RemoteGateway(settings.endpoint, timeout=settings.request_timeout_seconds)
        try:
            accepted = gateway.login(password)
        finally:
            gateway.close()
    except GatewayError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not accepted:
        print("Error: password rejected", file=sys.stderr)
        return 1
    print("Login successful.")
    return 0


def command_change_password(args: argparse.Namespace) -> int:
    old_password = args.old or getpass.getpass("Current password: ")
    new_password = args.new or getpass.getpass("New password: ")
    if not new_password:
        print("Error: the new password cannot be empty", file=sys.stderr)
        return 1
    try:
        settings = _configured_settings()
        gateway = RemoteGateway(settings.endpoint, timeout=settings.request_timeout_seconds)
        try:
            changed = gateway.change_password(old_password, new_password)
        finally:
            gateway.close()
    except GatewayError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not changed:
        print("Error: password change rejected", file=sys.stderr)
        return 1
    print("Password changed.")
    return 0


def command_show_settings(args: argparse.Namespace) -> int:
    settings = sync_settings.load_sync_settings(sync_settings.SYNC_SETTINGS_PATH)
    print(f"Settings file          : {sync_settings.SYNC_SETTINGS_PATH}")
    print(f"Endpoint               : {settings.endpoint or '(not set)'}")
    print(f"Pull window (days)     : {settings.pull_window_days}")
    print(f"Sync interval (s)      : {settings.sync_interval_seconds}")
    print(f"Status debounce (s)    : {settings.status_debounce_seconds}")
    print(f"Request timeout (s)    : {settings.request_timeout_seconds}")
    print(f"Log file               : {get_log_path()}")
    return 0


def command_set_endpoint(args: argparse.Namespace) -> int:
    endpoint = args.url.strip()
    if not endpoint.lower().startswith(("http://", "https://")):
        print("Error: the endpoint must be an http(s) URL", file=sys.stderr)
        return 1
    settings = sync_settings.load_sync_settings(sync_settings.SYNC_SETTINGS_PATH)
    settings.endpoint = endpoint
    sync_settings.save_sync_settings(settings, sync_settings.SYNC_SETTINGS_PATH)
    print(f"Endpoint saved to {sync_settings.SYNC_SETTINGS_PATH}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OrderSync synchronisation tool")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    pull_parser = subparsers.add_parser("pull", help="Download the dataset and print collection counts")
    pull_parser.add_argument("--days", type=int, help="Only include orders from the last N days")
    pull_parser.set_defaults(func=command_pull)

    login_parser = subparsers.add_parser("login", help="Check a password against the remote store")
    login_parser.add_argument("--password", help="Password (prompted when omitted)")
    login_parser.set_defaults(func=command_login)

    change_parser = subparsers.add_parser("change-password", help="Change the remote store password")
    change_parser.add_argument("--old", help="Current password (prompted when omitted)")
    change_parser.add_argument("--new", help="New password (prompted when omitted)")
    change_parser.set_defaults(func=command_change_password)

    show_parser = subparsers.add_parser("show-settings", help="Display the effective settings")
    show_parser.set_defaults(func=command_show_settings)

    endpoint_parser = subparsers.add_parser("set-endpoint", help="Store the web app URL")
    endpoint_parser.add_argument("url", help="Deployed web app URL")
    endpoint_parser.set_defaults(func=command_set_endpoint)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
