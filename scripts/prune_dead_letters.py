from __future__ import annotations

import argparse
import asyncio

from integrationhub.core.logging import configure_logging
from integrationhub.persistence.store import SqlPipelineStore
from integrationhub.services.dead_letters import DeadLetterService


async def prune(retention_days: int | None) -> None:
    configure_logging()
    deleted = await DeadLetterService(SqlPipelineStore()).cleanup(retention_days=retention_days)
    print(f"pruned_dead_letters={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete resolved dead-letter entries past retention")
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(prune(args.retention_days))


if __name__ == "__main__":
    main()
