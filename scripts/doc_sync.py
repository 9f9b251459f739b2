#!/usr/bin/env python3
"""Docs "what's new" synchronization CLI.

Command-line tool for syncing and querying the local article mirror.

Usage:
    doc_sync.py --full                      # Full-tree sync
    doc_sync.py --incremental               # Commit-history sync (default)
    doc_sync.py --force --max-files 50      # Ignore the min interval, cap work
    doc_sync.py --status                    # Show checkpoint and store stats
    doc_sync.py --search copilot --category "power apps"
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from doc_updates.config import get_config
from doc_updates.search import SearchFilters
from doc_updates.service import UpdatesService


def show_status(service: UpdatesService) -> None:
    """Display checkpoint, watermarks and store statistics."""
    config = service.config
    checkpoint = service.store.get_checkpoint()
    stats = service.store.stats()

    print("Docs Sync Status")
    print("=" * 50)
    print(f"Database: {config.db_path}")
    print(f"Repositories tracked: {len(service.repositories)}")
    print(f"Status: {checkpoint.status.value}")
    print(f"Last successful sync: {checkpoint.last_successful_sync_at or 'never'}")
    print(f"Articles: {stats['article_count']} in {stats['category_count']} categories")
    print(f"Commits recorded: {stats['commit_count']}")
    if checkpoint.last_duration_ms is not None:
        print(f"Last run duration: {checkpoint.last_duration_ms / 1000:.1f}s")
    if checkpoint.last_error:
        print(f"Last error: {checkpoint.last_error}")
    print()

    watermarks = service.store.get_watermarks()
    if watermarks:
        print("Repository watermarks:")
        for repo_id, mark in sorted(watermarks.items()):
            print(f"  {repo_id}: {mark.latest_known_ref[:12]} ({mark.updated_at})")
    else:
        print("No repository watermarks (never synced)")


def show_search(service: UpdatesService, query: str | None, category: str | None, limit: int) -> None:
    """Print matching articles as JSON lines."""
    records = service.search(SearchFilters(query=query, category=category, limit=limit))
    for record in records:
        data = record.to_dict()
        data["docs_url"] = service.docs_url(record)
        print(json.dumps(data, ensure_ascii=False))
    print(f"\n{len(records)} result(s)", file=sys.stderr)


async def run_sync(service: UpdatesService, full: bool, force: bool, max_files: int | None) -> bool:
    """Run one sync and print the result."""
    mode = "full" if full else "incremental"
    print(f"Syncing {len(service.repositories)} repositories (mode={mode})...")
    try:
        result = await service.run_sync(force=force, max_files=max_files, incremental=not full)
    finally:
        await service.aclose()

    if result.skipped and result.success:
        print("  Skipped: last sync is within the minimum interval (use --force)")
        return True
    print(f"  Updated: {result.updated_count}, Unchanged: {result.unchanged_count}")
    print(f"  Failed: {result.failed_count}, Deferred: {result.deferred_count}")
    print(f"  Commits recorded: {result.commits_count}")
    print(f"  Duration: {result.duration_ms / 1000:.1f}s")
    if result.error:
        print(f"  Error: {result.error}")
    return result.success


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Sync Power Platform \"what's new\" articles from GitHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --full                    # List every file and diff change tokens
  %(prog)s --incremental             # Only files changed since the last sync
  %(prog)s --status                  # Display sync status
  %(prog)s --search "copilot"        # Search the local mirror

Configuration:
  Set in .env or the environment:
    GITHUB_TOKEN=ghp_your_token_here   (optional, raises the rate limit)
    DB_PATH=~/.doc-updates/doc-updates.db
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--full", action="store_true", help="Full-tree sync")
    mode_group.add_argument("--incremental", action="store_true", help="Incremental sync (default)")
    mode_group.add_argument("--status", action="store_true", help="Display sync status")
    mode_group.add_argument("--search", metavar="QUERY", help="Search stored articles")

    parser.add_argument("--force", action="store_true", help="Ignore the minimum sync interval")
    parser.add_argument("--max-files", type=int, default=None, help="Cap files processed this run")
    parser.add_argument("--category", help="Category filter for --search")
    parser.add_argument("--limit", type=int, default=20, help="Result limit for --search")

    args = parser.parse_args(argv)
    if args.max_files is not None and args.max_files < 1:
        parser.error("--max-files must be at least 1")

    config = get_config()
    service = UpdatesService(config)

    if args.status:
        show_status(service)
        service.store.close()
        return 0

    if args.search is not None or args.category:
        show_search(service, args.search, args.category, args.limit)
        service.store.close()
        return 0

    ok = asyncio.run(run_sync(service, full=args.full, force=args.force, max_files=args.max_files))
    print("\nDone.")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
