from __future__ import annotations

import argparse
import asyncio

from integrationhub.core.logging import configure_logging
from integrationhub.persistence.store import SqlPipelineStore
from integrationhub.services.gateway import build_gateway
from integrationhub.workers.runtime import build_runtime


async def _replay(entry_ids: list[str], *, due: bool, limit: int, concurrency: int) -> None:
    # Replay specific entries, or every currently due entry, from the CLI.
    configure_logging()
    gateway = await build_gateway()
    try:
        dead_letters = build_runtime(store=SqlPipelineStore(), gateway=gateway).dead_letters
        if due:
            entry_ids = entry_ids + [entry.id for entry in await dead_letters.due_entries(limit=limit)]
        results = await dead_letters.bulk_replay(entry_ids, max_concurrency=concurrency)
    finally:
        await gateway.aclose()
    for entry_id, status in results.items():
        print(f"{entry_id}={status}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay dead-letter entries")
    parser.add_argument("entry_ids", nargs="*", help="dead-letter entry ids")
    parser.add_argument("--due", action="store_true", help="also replay entries whose retry time has passed")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=3)
    args = parser.parse_args()
    if not args.entry_ids and not args.due:
        parser.error("pass entry ids or --due")
    asyncio.run(_replay(args.entry_ids, due=args.due, limit=args.limit, concurrency=args.concurrency))


if __name__ == "__main__":
    main()
