"""CLI entry point for the Gmail watch manager."""

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

from mailwatch.auth import run_consent_flow
from mailwatch.config import Settings
from mailwatch.exceptions import MailWatchError
from mailwatch.logging_config import configure_logging
from mailwatch.service import MailWatchService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gmail token lifecycle and push watch manager")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set logging level (overrides LOG_LEVEL env var)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the webhook server and renewal scheduler")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")

    commands.add_parser("renew-once", help="Run a single watch renewal pass")
    commands.add_parser("check-credentials", help="Check every connected account's grant")
    commands.add_parser("retry-syncs", help="Retry syncs left unfinished by earlier failures")

    ensure = commands.add_parser("ensure-watch", help="(Re)register the Gmail watch of an account")
    ensure.add_argument("account", help="Account ID")

    sync = commands.add_parser("sync", help="Process new mail for an account now")
    sync.add_argument("account", help="Account ID")

    connect = commands.add_parser("connect", help="Run the consent flow and start watching")
    connect.add_argument("account", help="Account ID")
    connect.add_argument(
        "--client-secrets",
        type=Path,
        default=Path("config/credentials.json"),
        help="OAuth client JSON (default: config/credentials.json)",
    )
    connect.add_argument(
        "--no-browser", action="store_true", help="Print the consent URL instead of opening it"
    )

    disconnect = commands.add_parser("disconnect", help="Stop watching and forget an account")
    disconnect.add_argument("account", help="Account ID")
    return parser


def _serve(service: MailWatchService, host: str, port: int) -> int:
    import uvicorn

    from mailwatch.webhook import create_app

    uvicorn.run(create_app(service), host=host, port=port, log_config=None)
    return 0


def main() -> int:
    load_dotenv()

    args = _build_parser().parse_args()
    configure_logging(level_override=args.log_level)

    try:
        settings = Settings.from_env()
    except MailWatchError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    service = MailWatchService(settings)

    if args.command == "serve":
        return _serve(service, args.host, args.port)

    try:
        if args.command == "renew-once":
            report = service.renew_once()
            print("\n--- Renewal Summary ---")
            print(f"  accounts checked: {report.checked}")
            for account, outcome in sorted(report.outcomes.items()):
                print(f"  {account}: {outcome.value}")
            for account in report.timed_out:
                print(f"  {account}: still running")
            for account in report.backlog_gaps:
                print(f"  {account}: renewed with unprocessed history (see log)")
            if report.pruned_ledger_entries:
                print(f"  ledger entries pruned: {report.pruned_ledger_entries}")
            failed = [
                account
                for account, outcome in report.outcomes.items()
                if outcome.value in ("deferred", "expired", "provider_rejected")
            ]
            return 1 if failed or report.timed_out or report.backlog_gaps else 0

        if args.command == "check-credentials":
            results = service.check_credentials()
            for account, status in sorted(results.items()):
                print(f"  {account}: {status}")
            return 0 if all(status == "ok" for status in results.values()) else 1

        if args.command == "retry-syncs":
            results = service.retry_pending_syncs()
            if not results:
                print("No pending syncs")
            for account, status in sorted(results.items()):
                print(f"  {account}: {status}")
            return 0 if all(status == "drained" for status in results.values()) else 1

        if args.command == "ensure-watch":
            subscription = service.ensure_watch(args.account)
            print(f"Watch active for {args.account}")
            print(f"  cursor: {subscription.cursor}")
            print(f"  expires: {subscription.expires_at.isoformat()}")
            return 0

        if args.command == "sync":
            result = service.sync_now(args.account)
            print(f"Synced {args.account}")
            print(f"  cursor: {result.previous_cursor} -> {result.new_cursor}")
            print(f"  processed: {len(result.processed_message_ids)}")
            print(f"  skipped: {len(result.skipped_message_ids)}")
            print(f"  filtered: {len(result.filtered_message_ids)}")
            if result.has_more:
                print("  more messages pending; run sync again")
            return 0

        if args.command == "connect":
            credential = run_consent_flow(
                args.client_secrets, settings.scopes, open_browser=not args.no_browser
            )
            subscription = service.connect_account(args.account, credential)
            print(f"Connected {args.account}; watching from history {subscription.cursor}")
            return 0

        if args.command == "disconnect":
            service.disconnect_account(args.account)
            print(f"Disconnected {args.account}")
            return 0
    except (MailWatchError, FileNotFoundError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        service.stop()

    return 1


if __name__ == "__main__":
    sys.exit(main())
