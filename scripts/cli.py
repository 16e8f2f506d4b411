"""Minimal CLI entry point for running mailsync by hand."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, datetime, timedelta

from mailsync.config.settings import MailSyncSettings
from mailsync.core.models import MessageMetadata, SyncProgress
from mailsync.pipeline.syncer import MailSync


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: SyncProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"responses={progress.responses_received} "
        f"completed={progress.records_completed} "
        f"stored={progress.messages_stored} "
        f"failed={progress.messages_failed} "
        f"malformed={progress.messages_malformed}",
        end="\r",
        flush=True,
    )


def _add_batch_arg(subparser: argparse.ArgumentParser) -> None:
    """Add the --batch-size flag to a subparser."""
    subparser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        dest="batch_size",
        help="Override the number of UIDs per FETCH command",
    )


def _validate_batch_arg(args: argparse.Namespace) -> None:
    """Reject non-positive batch sizes and listing limits."""
    if getattr(args, "batch_size", None) is not None and args.batch_size <= 0:
        print("Error: --batch-size must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "limit", None) is not None and args.limit <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)


def format_date(value: datetime | None, now: datetime | None = None) -> str:
    """Short date: time today, month and day this half-year, else ISO date."""
    if value is None:
        return "(no date)"
    value = value.astimezone(UTC)
    age = (now or datetime.now(UTC)) - value
    if age < timedelta(hours=24):
        return value.strftime("%H:%M")
    if age < timedelta(weeks=26):
        return f"{value:%b} {value.day:>2}"
    return value.strftime("%Y-%m-%d")


def format_subject(subject: str | None) -> str:
    if subject is None:
        return "(no subject)"
    return subject.removeprefix("Re: ")


def format_message(message: MessageMetadata, now: datetime | None = None) -> str:
    """One listing line: unread marker, sender, date, subject."""
    marker = "*" if message.unread else " "
    return (
        f"{marker} {message.sender_name[:30]:<30} "
        f"{format_date(message.date, now):>10}  {format_subject(message.subject)}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="mailsync - Fetch IMAP message metadata into a local store"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("sync", help="Fetch messages newer than the stored ones")
    _add_batch_arg(sync_parser)

    refresh_parser = subparsers.add_parser(
        "refresh", help="Update flags and change versions of stored messages"
    )
    _add_batch_arg(refresh_parser)

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Assign uids to stored messages imported without them"
    )
    _add_batch_arg(reconcile_parser)

    subparsers.add_parser("status", help="Show stored message counts")

    list_parser = subparsers.add_parser("list", help="Show the newest stored messages")
    list_parser.add_argument(
        "--limit", type=int, default=100, help="Number of messages to show (default: 100)"
    )
    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_batch_arg(args)

    settings = MailSyncSettings()
    setup_logging(settings.log_level)

    syncer = MailSync(settings=settings, on_progress=on_progress)

    try:
        if args.command == "sync":
            progress = syncer.run_sync(batch_size=args.batch_size)
            print(f"\n\nComplete: {progress}")

        elif args.command == "refresh":
            progress = syncer.run_refresh(batch_size=args.batch_size)
            print(f"\n\nComplete: {progress}")

        elif args.command == "reconcile":
            report = syncer.run_reconcile(batch_size=args.batch_size)
            print(
                f"\n\nMatched {len(report.matched)}, "
                f"unmatched {len(report.unmatched)}, "
                f"ambiguous {len(report.ambiguous)}"
            )

        elif args.command == "status":
            counts = syncer.get_status()
            print("\nStored messages:")
            for name, count in sorted(counts.items()):
                print(f"  {name}: {count}")

        elif args.command == "list":
            for message in syncer.recent_messages(args.limit):
                print(format_message(message))

        unknown = syncer.vocabulary.unknown_tokens
        if unknown:
            print("\nUnknown flags seen: " + ", ".join(f"{t} ({n})" for t, n in unknown.items()))

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        syncer.close()


if __name__ == "__main__":
    main()
