"""
Command-line entrypoint.

FastAPI runs separately under uvicorn (sync triggers and the webhook).

Usage:
    python -m mottahub sync                          # full sync, all kinds
    python -m mottahub sync --incremental            # only records changed since the cursors
    python -m mottahub sync --entities contacts,work-items
    python -m mottahub serve-scheduler               # 15-minute incremental sync loop
    uvicorn mottahub.api.main:app --host 0.0.0.0 --port 8000
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


async def _run_sync(incremental: bool, entities: Optional[str]) -> int:
    from mottahub.config import get_settings
    from mottahub.db.engine import create_store_engine
    from mottahub.karbon.client import KarbonClient, KarbonCredentialsError
    from mottahub.karbon.sync_service import KarbonSyncService

    settings = get_settings()
    try:
        client = KarbonClient.from_settings(settings)
    except KarbonCredentialsError as exc:
        logger.error("%s", exc)
        return 2

    engine = create_store_engine(settings.database_url)
    kinds = entities.split(",") if entities else None
    async with client:
        service = KarbonSyncService(client=client, engine=engine, settings=settings)
        summary = await service.run(kinds=kinds, incremental=incremental, trigger="manual")

    print(json.dumps(summary.to_response(), indent=2, default=str))
    return 0 if summary.success else 1


async def _serve_scheduler() -> None:
    from mottahub.config import get_settings
    from mottahub.db.engine import create_store_engine
    from mottahub.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = create_store_engine(settings.database_url)

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (incremental Karbon sync every %d min)",
        settings.karbon_sync_interval_minutes,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mottahub", description="Karbon → Motta Hub sync")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run one sync now")
    sync.add_argument(
        "--incremental",
        action="store_true",
        help="Only write records modified since each kind's cursor (default: full)",
    )
    sync.add_argument(
        "--entities",
        default=None,
        help="Comma separated kinds, e.g. contacts,work-items (default: all)",
    )

    commands.add_parser("serve-scheduler", help="Run the periodic incremental sync")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from mottahub.config import get_settings

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    args = build_parser().parse_args(argv)

    if args.command == "sync":
        try:
            return asyncio.run(_run_sync(args.incremental, args.entities))
        except ValueError as exc:
            logger.error("%s", exc)
            return 2
    asyncio.run(_serve_scheduler())
    return 0


if __name__ == "__main__":
    sys.exit(main())
