"""
scripts/queue_admin.py — CLI for queue maintenance outside the API.

Usage:
    python scripts/queue_admin.py stats --organization <org-id>
    python scripts/queue_admin.py renumber --organization <org-id>
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import structlog

from medqueue.config import get_settings
from medqueue.db.session import AsyncSessionLocal, engine
from medqueue.logging_config import configure_logging
from medqueue.queue.engine import QueueEngine
from medqueue.queue.locks import LocalLockTable
from medqueue.queue.read_model import QueueReadModel
from medqueue.queue.store import QueueStore

logger = structlog.get_logger(__name__)


async def _run(command: str, organization_id: str) -> int:
    settings = get_settings()
    store = QueueStore(AsyncSessionLocal)
    try:
        if command == "stats":
            stats = await QueueReadModel(AsyncSessionLocal, store).get_stats_by_organization(
                organization_id
            )
            logger.info("queue_stats", organization_id=organization_id, **vars(stats))
        else:
            queue = QueueEngine(
                store,
                LocalLockTable(),
                minutes_per_position=settings.queue_minutes_per_position,
            )
            count = await queue.renumber(organization_id)
            logger.info("queue_renumbered", organization_id=organization_id, waiting=count)
    finally:
        await engine.dispose()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Patient queue maintenance.")
    parser.add_argument("command", choices=["stats", "renumber"])
    parser.add_argument(
        "--organization",
        required=True,
        help="Organization whose queue to inspect or repair.",
    )
    args = parser.parse_args()

    configure_logging(get_settings().log_level, json_logs=False)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    sys.exit(asyncio.run(_run(args.command, args.organization)))


if __name__ == "__main__":
    main()
