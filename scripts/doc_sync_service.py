#!/usr/bin/env python3
"""Docs sync service - container entrypoint.

Runs the incremental docs sync in a loop. Writes a health file after each
cycle for liveness checks.

Usage (Docker):
    CMD ["python3", "scripts/doc_sync_service.py"]

Usage (manual):
    python3 scripts/doc_sync_service.py

Environment:
    DOC_SYNC_ON_START=true      - Run sync immediately on start (default: true)
    DOC_SYNC_INTERVAL=3600      - Seconds between sync cycles (default: 1 hour)
    See config.py for all other settings.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from doc_updates.config import get_config
from doc_updates.connectors.github.sync import ArticleSyncEngine
from doc_updates.logging_config import configure_logging
from doc_updates.storage import ArticleStore

logger = logging.getLogger("doc_updates.service_loop")

HEALTH_FILE = Path("/tmp/doc_sync.health")
SHUTDOWN_REQUESTED = False


def handle_signal(signum, frame):
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global SHUTDOWN_REQUESTED
    logger.info("Shutdown signal received (signal=%d), finishing current cycle...", signum)
    SHUTDOWN_REQUESTED = True


async def run_sync_cycle(config) -> bool:
    """Run a single incremental sync cycle.

    Returns:
        True if the run succeeded, False otherwise.
    """
    try:
        store = ArticleStore.open(config.db_path)
    except Exception as e:
        logger.error("Cannot open store: %s", e)
        return False

    try:
        async with ArticleSyncEngine(store, config) as engine:
            result = await engine.run_sync(incremental=True)
        logger.info(
            "Sync cycle complete: updated=%d, failed=%d, deferred=%d, skipped=%s",
            result.updated_count,
            result.failed_count,
            result.deferred_count,
            result.skipped,
        )
        if result.error:
            logger.warning("Sync cycle reported: %s", result.error)
        return result.success
    except Exception as e:
        logger.error("Sync engine failed: %s", e)
        return False
    finally:
        store.close()


def write_health_file():
    """Write health file for Docker healthcheck."""
    try:
        HEALTH_FILE.write_text(str(int(time.time())))
    except OSError as e:
        logger.warning("Failed to write health file: %s", e)


def main():
    """Main service loop."""
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        config = get_config()
    except Exception as e:
        logging.basicConfig()
        logger.error("Failed to load config: %s", e)
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)

    interval = int(os.getenv("DOC_SYNC_INTERVAL", str(config.min_sync_interval_seconds or 3600)))
    sync_on_start = os.getenv("DOC_SYNC_ON_START", "true").lower() == "true"

    logger.info(
        "Docs sync service starting (interval=%ds, sync_on_start=%s, db=%s)",
        interval,
        sync_on_start,
        config.db_path,
    )

    first_run = True
    while not SHUTDOWN_REQUESTED:
        if first_run and not sync_on_start:
            logger.info("Skipping initial sync (DOC_SYNC_ON_START=false)")
        else:
            logger.info("Starting sync cycle...")
            if not asyncio.run(run_sync_cycle(config)):
                logger.warning("Sync cycle did not complete cleanly, retrying next interval")
            # Health means the loop is alive, not that the last cycle was clean
            write_health_file()
        first_run = False

        # Sleep in small increments to allow graceful shutdown
        for _ in range(interval):
            if SHUTDOWN_REQUESTED:
                break
            time.sleep(1)

    logger.info("Docs sync service shutting down gracefully")


if __name__ == "__main__":
    main()
