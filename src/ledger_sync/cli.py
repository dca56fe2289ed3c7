"""
Ledger Sync - Command Line Interface
Entry point for syncing, querying, reconciling and exporting an exchange ledger.
"""
import sys
import json
import logging
import argparse
from typing import Any, Dict, List

from ledger_sync import __version__
from ledger_sync.config import setup_logging, load_config
from ledger_sync.errors import LedgerSyncError
from ledger_sync.ledger_service import LedgerService


def create_argument_parser():
    """Create and configure argument parser"""
    parser = argparse.ArgumentParser(
        description="Crypto Ledger Sync - Synchronize and reconcile exchange account activity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sync                              # Incremental sync from the last cursor
  python main.py sync --since 2024-01-01 --pairs ETH/EUR
  python main.py query --status new --limit 20     # First page of unreviewed records
  python main.py tag reviewed <id> <id>            # Tag records
  python main.py export --output ledger.csv        # CSV export
        """
    )
    parser.add_argument("--config", type=str, help="Path to custom configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress console output except errors")
    parser.add_argument("--version", action="version", version=f"Crypto Ledger Sync v{__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Fetch new activity from the exchange")
    sync.add_argument("--since", help="Fetch activity from this date/time (default: resume from last sync)")
    sync.add_argument("--pairs", nargs="+", help="Only store records for these pairs, e.g. ETH/EUR")
    sync.add_argument("--json", action="store_true", help="Print the full run summary as JSON")
    sync.add_argument("--timeout", type=float, default=None, help="Stop waiting after this many seconds")

    status = commands.add_parser("status", help="Show a sync run summary")
    status.add_argument("run_id")

    cancel = commands.add_parser("cancel", help="Cancel a running sync")
    cancel.add_argument("run_id")

    query = commands.add_parser("query", help="List stored transactions")
    query.add_argument("--from", dest="from_", help="Inclusive start date/time")
    query.add_argument("--to", help="Exclusive end date/time")
    query.add_argument("--pair")
    query.add_argument("--type", choices=["buy", "sell", "deposit", "withdrawal", "staking", "fee"])
    query.add_argument("--status", choices=["new", "pending", "reconciled", "error"])
    query.add_argument("--search", dest="q", help="Case-insensitive text search")
    query.add_argument("--sort", help="timestamp, pair or amount; prefix with - for descending")
    query.add_argument("--limit", type=int)
    query.add_argument("--cursor", help="nextCursor from a previous page")
    query.add_argument("--json", action="store_true", help="Print the raw JSON result")

    for name, help_text in (
        ("reconcile", "Mark new/pending records as reconciled"),
        ("pending", "Mark new records as pending review"),
        ("reopen", "Move reconciled/error records back to pending"),
        ("delete", "Permanently delete records"),
    ):
        bulk = commands.add_parser(name, help=help_text)
        bulk.add_argument("ids", nargs="+")

    for name, help_text in (("tag", "Add a tag to records"), ("untag", "Remove a tag from records")):
        tagging = commands.add_parser(name, help=help_text)
        tagging.add_argument("label")
        tagging.add_argument("ids", nargs="+")

    annotate = commands.add_parser("annotate", help="Replace the notes of records")
    annotate.add_argument("notes")
    annotate.add_argument("ids", nargs="+")

    importer = commands.add_parser("import", help="Import records from a CSV file")
    importer.add_argument("path")

    export = commands.add_parser("export", help="Export transactions to CSV")
    export.add_argument("--output", "-o", help="Output file ('auto' for a timestamped file in the export directory)")
    export.add_argument("--from", dest="from_")
    export.add_argument("--to")
    export.add_argument("--pair")
    export.add_argument("--status", choices=["new", "pending", "reconciled", "error"])

    commands.add_parser("info", help="Show account and sync cursor details")
    commands.add_parser("test-connection", help="Test the exchange API connection")
    return parser


def _print_json(data: Dict[str, Any]):
    print(json.dumps(data, indent=2, default=str))


def _print_items(items: List[Dict[str, Any]]):
    if not items:
        print("No transactions found.")
        return
    print(f"{'TIMESTAMP':<26} {'PAIR':<10} {'TYPE':<10} {'AMOUNT':>18} {'TOTAL':>14} {'STATUS':<10} ID")
    for item in items:
        print(
            f"{item['timestamp'][:26]:<26} {item['pair']:<10} {item['type']:<10} "
            f"{item['amount']:>18} {item['total'] or '-':>14} {item['status']:<10} {item['id']}"
        )


def run_command(service: LedgerService, args) -> int:
    """Dispatch one parsed command. Returns the process exit code."""
    command = args.command
    if command == "sync":
        result = service.sync(since=args.since, pairs=args.pairs)
        if not result["started"]:
            print(f"⚠ A sync is already running (run {result['runId']}); joining it.")
        else:
            print(f"🔄 Sync started (run {result['runId']})")
        # The run thread dies with the process, so the CLI always waits.
        try:
            summary = service.wait_for_sync(result["runId"], args.timeout)
        except KeyboardInterrupt:
            if not result["started"]:
                raise
            print("\n⏹ Interrupted, stopping the sync after the current page...")
            service.cancel_sync(result["runId"])
            summary = service.wait_for_sync(result["runId"], args.timeout)
        if args.json:
            _print_json(summary)
        else:
            counts = summary["counts"]
            print(f"{summary['status']}: fetched {counts['fetched']}, created {counts['created']}, "
                  f"updated {counts['updated']}, duplicate {counts['duplicate']}, errored {counts['errored']}, "
                  f"filtered {counts['filtered']}")
            if summary["error"]:
                print(f"❌ {summary['error']}")
        return 0 if summary["status"] == "succeeded" else 1

    if command == "status":
        _print_json(service.sync_status(args.run_id))
    elif command == "cancel":
        if service.cancel_sync(args.run_id):
            print(f"Cancellation requested for run {args.run_id}")
        else:
            print(f"Run {args.run_id} already finished")
    elif command == "query":
        result = service.query(
            cursor=args.cursor, limit=args.limit, from_=args.from_, to=args.to, pair=args.pair,
            type=args.type, status=args.status, q=args.q, sort=args.sort,
        )
        if args.json:
            _print_json(result)
        else:
            _print_items(result["items"])
            metrics = result["metrics"]
            print(f"\n{metrics['count']} matching | buy volume {metrics['buyVolume']} | "
                  f"sell volume {metrics['sellVolume']} | fees {metrics['fees']}")
            if result["nextCursor"]:
                print(f"Next page: --cursor {result['nextCursor']}")
    elif command in ("reconcile", "pending", "reopen", "delete"):
        action = {"reconcile": service.reconcile, "pending": service.mark_pending,
                  "reopen": service.reopen, "delete": service.delete}[command]
        _print_json(action(args.ids))
    elif command == "tag":
        _print_json(service.tag(args.ids, args.label))
    elif command == "untag":
        _print_json(service.untag(args.ids, args.label))
    elif command == "annotate":
        _print_json(service.annotate(args.ids, args.notes))
    elif command == "import":
        result = service.import_csv(args.path)
        _print_json(result)
        return 0 if result["errored"] == 0 else 1
    elif command == "export":
        output = service.export_csv(args.output, from_=args.from_, to=args.to, pair=args.pair, status=args.status)
        if args.output:
            print(f"✅ Exported to {output}")
        else:
            sys.stdout.write(output)
    elif command == "info":
        _print_json(service.account_info())
    elif command == "test-connection":
        if service.test_connection():
            print("✅ Exchange Connection: SUCCESS")
        else:
            print("❌ Exchange Connection: FAILED")
            return 1
    return 0


def main(argv=None) -> int:
    """Main function"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    log_level_console = "DEBUG" if args.verbose else ("ERROR" if args.quiet else config.get("logging", {}).get("level", "INFO"))
    setup_logging(config=config.get("logging", {}), level=log_level_console)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting Crypto Ledger Sync ({args.command})")

    service = None
    try:
        service = LedgerService(config=config)
        return run_command(service, args)
    except KeyboardInterrupt:
        print("\n\n👋 Interrupted.")
        logger.info("Application interrupted by user")
        return 130
    except LedgerSyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"\n❌ {e}")
        return 2
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}", exc_info=True)
        print(f"\n💥 File Error: {e}")
        return 2
    except Exception as e:
        logger.error(f"Fatal error in main execution: {e}", exc_info=True)
        print(f"\n💥 A fatal error occurred: {e}")
        print("Please check logs for detailed error information.")
        return 1
    finally:
        if service is not None:
            service.close()
        logger.info("Application finished")


if __name__ == "__main__":
    sys.exit(main())
