import argparse
import asyncio
import json
import os
import sys

# Ensure the project root is on sys.path when running from a checkout
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from mindbody.config import settings  # noqa: E402
from mindbody.core.exceptions import MindbodyError  # noqa: E402
from mindbody.utils.logger import get_logger  # noqa: E402
from webhooks.store import CLEANUP_STATUSES  # noqa: E402

from . import api as api_cmd  # noqa: E402
from . import tokens as tokens_cmd  # noqa: E402
from . import webhooks as webhooks_cmd  # noqa: E402

logger = get_logger("cli")


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _print_results(results) -> None:
    for key, r in results.items():
        if r.get("success"):
            extra = r.get("subscription_id") or r.get("event_type") or ""
            print(f"  OK     {key} {extra}".rstrip())
        else:
            print(f"  FAILED {key}: {r.get('error')}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mindbody-cli", description="Mindbody webhook and token utilities")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # webhooks group
    wh_parser = subparsers.add_parser("webhooks", help="Webhook subscriptions and stored events")
    wh_sub = wh_parser.add_subparsers(dest="webhooks_cmd", required=True)

    w_subscribe = wh_sub.add_parser("subscribe", help="Subscribe to event types (default: all configured)")
    w_subscribe.add_argument("--event", dest="events", action="append", default=None, help="Event type, repeatable")
    w_subscribe.add_argument("--url", type=str, default=None, help="Receiver URL (default: MINDBODY_WEBHOOK_URL)")
    w_subscribe.add_argument("--json", action="store_true", help="Output JSON")

    w_unsubscribe = wh_sub.add_parser("unsubscribe", help="Delete subscriptions")
    w_unsubscribe.add_argument("--id", dest="ids", action="append", default=None, help="Subscription id, repeatable")
    w_unsubscribe.add_argument("--event", dest="events", action="append", default=None, help="Event type, repeatable")
    w_unsubscribe.add_argument("--all", dest="all", action="store_true", help="Delete every subscription")
    w_unsubscribe.add_argument("--json", action="store_true", help="Output JSON")

    w_list = wh_sub.add_parser("list", help="List subscriptions")
    w_list.add_argument("--status", action="store_true", help="Show per-event subscription status")
    w_list.add_argument("--json", action="store_true", help="Output JSON")

    w_sync = wh_sub.add_parser("sync", help="Reconcile subscriptions with configured events")
    w_sync.add_argument("--url", type=str, default=None)
    w_sync.add_argument("--dry-run", dest="dry_run", action="store_true")
    w_sync.add_argument("--json", action="store_true", help="Output JSON")

    w_process = wh_sub.add_parser("process-pending", help="Process stored webhook events")
    w_process.add_argument("--limit", type=int, default=100)
    w_process.add_argument("--timeout", type=int, default=300, help="Wall-clock budget in seconds")
    w_process.add_argument("--retry-failed", dest="retry_failed", action="store_true")
    w_process.add_argument("--max-retries", dest="max_retries", type=int, default=None)
    w_process.add_argument("--dry-run", dest="dry_run", action="store_true")
    w_process.add_argument("--json", action="store_true", help="Output JSON")

    w_cleanup = wh_sub.add_parser("cleanup", help="Delete old webhook events")
    w_cleanup.add_argument("--days", type=int, default=None)
    w_cleanup.add_argument("--status", choices=CLEANUP_STATUSES, default=None)
    w_cleanup.add_argument("--batch-size", dest="batch_size", type=int, default=1000)
    w_cleanup.add_argument("--dry-run", dest="dry_run", action="store_true")
    w_cleanup.add_argument("--json", action="store_true", help="Output JSON")

    w_stats = wh_sub.add_parser("stats", help="Processing statistics")
    w_stats.add_argument("--json", action="store_true", help="Output JSON")

    w_test = wh_sub.add_parser("test-endpoint", help="Send a test delivery to the receiver URL")
    w_test.add_argument("--url", type=str, default=None)
    w_test.add_argument("--json", action="store_true", help="Output JSON")

    # tokens group
    tk_parser = subparsers.add_parser("tokens", help="Persisted API tokens")
    tk_sub = tk_parser.add_subparsers(dest="tokens_cmd", required=True)
    t_cleanup = tk_sub.add_parser("cleanup", help="Delete revoked and long-expired tokens")
    t_cleanup.add_argument("--days", type=int, default=None)
    t_cleanup.add_argument("--json", action="store_true", help="Output JSON")
    t_stats = tk_sub.add_parser("stats", help="Token statistics")
    t_stats.add_argument("--json", action="store_true", help="Output JSON")

    # api group
    api_parser = subparsers.add_parser("api", help="Public API checks")
    api_sub = api_parser.add_subparsers(dest="api_cmd", required=True)
    a_test = api_sub.add_parser("test-connection", help="Check API key, site id and staff credentials")
    a_test.add_argument("--json", action="store_true", help="Output JSON")

    return parser


async def _run(args) -> int:
    """Execute one command and return the process exit code."""
    as_json = getattr(args, "json", False)

    if args.command == "webhooks":
        cmd = args.webhooks_cmd
        if cmd == "subscribe":
            result = await webhooks_cmd.subscribe(settings, args.events, args.url)
            if as_json:
                _print_json(result)
            else:
                print(f"Subscribed: {result['succeeded']}, failed: {result['failed']}")
                _print_results(result["results"])
            return 1 if result["failed"] else 0

        if cmd == "unsubscribe":
            if not args.ids and not args.events and not args.all:
                print("unsubscribe requires --id, --event or --all", file=sys.stderr)
                return 1
            result = await webhooks_cmd.unsubscribe(settings, args.ids, args.events)
            if as_json:
                _print_json(result)
            else:
                print(f"Unsubscribed: {result['succeeded']}, failed: {result['failed']}")
                _print_results(result["results"])
            return 1 if result["failed"] else 0

        if cmd == "list":
            result = await webhooks_cmd.list_all(settings, status=args.status)
            if as_json:
                _print_json(result)
            elif args.status:
                for event_type, s in result["status"].items():
                    flag = "subscribed" if s["subscribed"] else "missing"
                    scope = "" if s["configured"] else " (not configured)"
                    print(f"{event_type} | {flag}{scope} | id={s['subscription_id']} | active={s['is_active']}")
            else:
                for s in result["subscriptions"]:
                    print(f"{s['subscription_id']} | {s['event_type']} | {s['webhook_url']} | active={s['is_active']}")
                print(f"Total: {result['count']}")
            return 0

        if cmd == "sync":
            result = await webhooks_cmd.sync(settings, args.url, args.dry_run)
            if as_json:
                _print_json(result)
            else:
                plan = result["plan"]
                print(f"Sync plan for {result['webhook_url']}{' (dry run)' if args.dry_run else ''}:")
                print(f"  To add:    {len(plan['to_add'])}")
                print(f"  To remove: {len(plan['to_remove'])}")
                print(f"  To update: {len(plan['to_update'])}")
                if plan["unmanaged"]:
                    print(f"  Unmanaged: {', '.join(s['event_type'] for s in plan['unmanaged'])}")
                if not args.dry_run:
                    print(f"Added {len(result['added'])}, removed {len(result['removed'])}, updated {len(result['updated'])}")
                for err in result["errors"]:
                    print(f"  FAILED {err['action']} {err['event_type']}: {err['error']}")
            return 1 if result["failed"] else 0

        if cmd == "process-pending":
            result = await webhooks_cmd.process_pending(
                settings,
                limit=args.limit,
                timeout=args.timeout,
                retry_failed=args.retry_failed,
                max_retries=args.max_retries,
                dry_run=args.dry_run,
            )
            if as_json:
                _print_json(result)
            elif args.dry_run:
                print(f"Found {result['found']} events to process")
                for e in result["events"]:
                    print(f"  {e['id']} | {e['event_type']} | {e['status']} | retries={e['retry_count']} | {e['created_at']}")
            else:
                print("Processing complete:")
                print(f"  Total processed: {result['processed']}")
                print(f"  Successful:      {result['successful']}")
                print(f"  Failed:          {result['failed']}")
                if result["timed_out"]:
                    print(f"  Timed out, left for next run: {result['skipped']}")
            return 1 if result["failed"] else 0

        if cmd == "cleanup":
            result = await webhooks_cmd.cleanup(
                settings,
                days=args.days,
                status=args.status,
                batch_size=args.batch_size,
                dry_run=args.dry_run,
            )
            if as_json:
                _print_json(result)
            else:
                verb = "Would delete" if args.dry_run else "Deleted"
                for r in result["results"]:
                    print(f"{verb} {r['deleted']} {r['status']} events older than {r['days']} days")
            return 0

        if cmd == "stats":
            result = await webhooks_cmd.stats(settings)
            if as_json:
                _print_json(result)
            else:
                print(f"Total:        {result['total']}")
                print(f"Processed:    {result['processed']}")
                print(f"Failed:       {result['failed']}")
                print(f"Pending:      {result['pending']}")
                print(f"Terminal:     {result['terminal']}")
                print(f"Success rate: {result['success_rate']}%")
                for event_type, count in result["failed_by_type"].items():
                    print(f"  {event_type}: {count} failed")
            return 0

        if cmd == "test-endpoint":
            result = await webhooks_cmd.test_endpoint(settings, args.url)
            if as_json:
                _print_json(result)
            elif result.get("success"):
                print(f"Endpoint {result['url']} reachable: status={result['status_code']} time={result['response_time']}s")
            else:
                print(f"Endpoint test failed: {result.get('error') or result.get('status_code')}")
            return 0 if result.get("success") else 1

    if args.command == "tokens":
        if args.tokens_cmd == "cleanup":
            result = await tokens_cmd.cleanup(settings, args.days)
            if as_json:
                _print_json(result)
            else:
                print(f"Deleted {result['deleted']} API tokens (retention {result['retention_days']} days)")
            return 0
        if args.tokens_cmd == "stats":
            result = await tokens_cmd.stats(settings)
            if as_json:
                _print_json(result)
            else:
                for key, value in result.items():
                    print(f"{key}: {value}")
            return 0

    if args.command == "api" and args.api_cmd == "test-connection":
        result = await api_cmd.test_connection(settings)
        if as_json:
            _print_json(result)
        elif result.get("success"):
            print(f"Connection to {result['base_url']} OK")
        else:
            print(f"Connection test failed: {result.get('error') or result.get('authentication_error') or 'see logs'}")
        return 0 if result.get("success") else 1

    return 1


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(_run(args))
    except (MindbodyError, ValueError) as e:
        logger.error(f"Command failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
