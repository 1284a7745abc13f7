from __future__ import annotations

import asyncio

from cinevault.persistence.db import SessionLocal
from cinevault.services.maintenance import prune_webhook_events


async def prune() -> None:
    # Forget processed webhook ids older than the redelivery window.
    async with SessionLocal() as session:
        deleted = await prune_webhook_events(session)
        print(f"pruned_webhook_events={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
