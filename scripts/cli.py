"""Operator CLI for Gmail Sync: scheduler tick, account connection, archive outbox."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.auth import build_gmail_service, credentials_expiry, run_consent_flow
from gmail_sync.core.crypto import TokenCipher
from gmail_sync.core.exceptions import UnauthorizedError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.models import TickResult
from gmail_sync.pipeline.outbox import enqueue_archive_request
from gmail_sync.pipeline.sync import run_scheduled_tick
from gmail_sync.storage.archive_queue import ArchiveQueue
from gmail_sync.storage.credential_store import CredentialStore
from gmail_sync.storage.database import MailDatabase
from gmail_sync.storage.mail_store import MailStore

TICK_KEY_ENV = "GMAIL_SYNC_TICK_KEY"


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def format_tick(result: TickResult) -> str:
    return (
        f"[{result.current_stage}] "
        f"users={result.users_processed} "
        f"ok={result.users_succeeded} "
        f"failed={result.users_failed} "
        f"threads={result.threads_persisted} "
        f"thread_failures={result.threads_failed} "
        f"archived={result.archive.completed} "
        f"archive_failures={result.archive.failed}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Sync - incremental thread sync, enrichment and archive outbox"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    tick_parser = subparsers.add_parser("tick", help="Run one scheduler tick")
    tick_parser.add_argument(
        "--key",
        default=os.environ.get(TICK_KEY_ENV, ""),
        help=f"Scheduler service key (default: ${TICK_KEY_ENV})",
    )

    connect_parser = subparsers.add_parser("connect", help="Connect a Gmail account (OAuth consent)")
    connect_parser.add_argument("--user", "-u", required=True, help="Local user id")
    connect_parser.add_argument("--name", help="Display name used in prompts")

    disconnect_parser = subparsers.add_parser("disconnect", help="Remove a stored credential")
    disconnect_parser.add_argument("--user", "-u", required=True, help="Local user id")

    archive_parser = subparsers.add_parser("archive", help="Queue a thread for archiving")
    archive_parser.add_argument("--user", "-u", required=True, help="Local user id")
    archive_parser.add_argument("--thread", "-t", required=True, help="Gmail thread id")

    subparsers.add_parser("status", help="Show stored counts and the last sync run")
    subparsers.add_parser("requeue", help="Re-enqueue failed archive items that are due")
    subparsers.add_parser("generate-key", help="Print a new encryption key")

    return parser


def _open_database(settings: GmailSyncSettings) -> MailDatabase:
    settings.ensure_directories()
    db = MailDatabase(settings.database_path)
    db.connect()
    return db


def cmd_tick(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    result = run_scheduled_tick(settings, args.key)
    print(f"\nComplete: {format_tick(result)}")


def cmd_connect(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    cipher = TokenCipher(settings.encryption_key.get_secret_value())
    creds = run_consent_flow(settings.client_secrets_path)
    client = GmailClient(build_gmail_service(creds.token, settings.request_timeout_seconds))
    profile = client.get_profile()

    db = _open_database(settings)
    try:
        CredentialStore(db, cipher).store_credential(
            args.user,
            settings.provider,
            refresh_token=creds.refresh_token,
            access_token=creds.token,
            expires_at=credentials_expiry(creds),
            account_email=profile.get("emailAddress", ""),
            display_name=args.name,
        )
    finally:
        db.close()
    print(f"\nConnected {profile.get('emailAddress', '?')} as user {args.user}")


def cmd_disconnect(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    cipher = TokenCipher(settings.encryption_key.get_secret_value())
    db = _open_database(settings)
    try:
        removed = CredentialStore(db, cipher).delete_credential(args.user, settings.provider)
    finally:
        db.close()
    print(f"\n{'Disconnected' if removed else 'No credential stored for'} user {args.user}")


def cmd_archive(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    db = _open_database(settings)
    try:
        item_id = enqueue_archive_request(ArchiveQueue(db), MailStore(db), args.user, args.thread)
    finally:
        db.close()
    print(f"\nQueued archive item {item_id}")


def cmd_status(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    db = _open_database(settings)
    try:
        store = MailStore(db)
        counts = ArchiveQueue(db).count_by_status()
        last_run = store.get_last_run()
        print(f"\nThreads:  {store.count_threads()}")
        print(f"Messages: {store.count_messages()}")
        print("\nArchive queue by status:")
        for status, count in sorted(counts.items()):
            print(f"  {status}: {count}")
        if last_run:
            print(
                f"\nLast run #{last_run['run_id']}: started {last_run['started_at']}, "
                f"completed {last_run['completed_at'] or '-'}, "
                f"users {last_run['users_processed']} ({last_run['users_failed']} failed), "
                f"threads {last_run['threads_persisted']}"
            )
    finally:
        db.close()


def cmd_requeue(settings: GmailSyncSettings, args: argparse.Namespace) -> None:
    db = _open_database(settings)
    try:
        count = ArchiveQueue(db).requeue_failed(settings.archive_max_attempts)
    finally:
        db.close()
    print(f"\nRe-enqueued {count} failed archive items")


COMMANDS = {
    "tick": cmd_tick,
    "connect": cmd_connect,
    "disconnect": cmd_disconnect,
    "archive": cmd_archive,
    "status": cmd_status,
    "requeue": cmd_requeue,
}


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "generate-key":
        print(TokenCipher.generate_key())
        return

    settings = GmailSyncSettings()
    setup_logging(settings.log_level)

    try:
        COMMANDS[args.command](settings, args)
    except UnauthorizedError as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
