"""Command-line access to the activity feed.

Usage:
    python -m src.cli feed --limit 20 --action deployed
    python -m src.cli search postgres
    python -m src.cli stats
    python -m src.cli export --format csv > activity.csv

Reads the audit log configured by AUDIT_DB_PATH.
"""

import argparse
import asyncio
import json
import logging
import sys

from src.activity.feed import ActivityAggregator, create_aggregator
from src.activity.models import Activity, ActivityFeedOptions, ActivityFilter

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def _format_activity(activity: Activity) -> str:
    actor = activity["actor"]["name"]
    resource = activity["resource"]
    return f"{activity['timestamp']}  {actor:<16} {activity['action']:<16} {resource['type']}/{resource['name']}"


def _filter_from(args: argparse.Namespace) -> ActivityFilter:
    return ActivityFilter(
        action=args.action or None,
        resource_type=args.resource_type or None,
        actor_id=args.actor,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m src.cli", description="Query the activity feed")
    sub = parser.add_subparsers(dest="command", required=True)

    feed = sub.add_parser("feed", help="Show a page of recent activity")
    feed.add_argument("--limit", type=int, default=20)
    feed.add_argument("--cursor", default=None, help="Cursor printed by a previous page")
    feed.add_argument("--action", action="append", help="Filter by action (repeatable)")
    feed.add_argument("--resource-type", action="append", help="Filter by resource type (repeatable)")
    feed.add_argument("--actor", default=None, help="Filter by actor id")

    search = sub.add_parser("search", help="Search activity by action, actor or resource name")
    search.add_argument("term")

    sub.add_parser("stats", help="Show activity statistics")

    export = sub.add_parser("export", help="Export matching activity")
    export.add_argument("--format", choices=["json", "csv"], default="json")
    export.add_argument("--action", action="append")
    export.add_argument("--resource-type", action="append")
    export.add_argument("--actor", default=None)

    return parser


async def run(args: argparse.Namespace, aggregator: ActivityAggregator) -> None:
    """Execute one parsed command against ``aggregator`` and print the result."""
    if args.command == "feed":
        page = await aggregator.get_activity_feed(
            ActivityFeedOptions(limit=args.limit, cursor=args.cursor, filter=_filter_from(args))
        )
        for activity in page["activities"]:
            print(_format_activity(activity))
        print(f"\n{len(page['activities'])} of {page['total']} shown")
        if page["has_more"]:
            print(f"Next page: --cursor {page['next_cursor']}")
    elif args.command == "search":
        for activity in await aggregator.search_activity(args.term):
            print(_format_activity(activity))
    elif args.command == "stats":
        print(json.dumps(await aggregator.get_activity_stats(), indent=2))
    elif args.command == "export":
        sys.stdout.write(await aggregator.export_activity(_filter_from(args), args.format))


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        aggregator = create_aggregator()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        asyncio.run(run(args, aggregator))
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
