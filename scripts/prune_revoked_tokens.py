from __future__ import annotations

import asyncio

from cinevault.persistence.db import SessionLocal
from cinevault.services.maintenance import prune_revoked_tokens


async def prune() -> None:
    # Drop revocation records whose tokens have expired anyway.
    async with SessionLocal() as session:
        deleted = await prune_revoked_tokens(session)
        print(f"pruned_revoked_tokens={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
