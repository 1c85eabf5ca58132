"""Script to register palette seeds from a file (one per line) or stdin."""

import asyncio
import sys

sys.path.insert(0, ".")

from palette_tagging.db.session import async_session_maker, init_db
from palette_tagging.services.store import TagStore


def read_seeds(path: str | None) -> list[str]:
    if path and path != "-":
        with open(path, encoding="utf-8") as f:
            lines = f.readlines()
    else:
        lines = sys.stdin.readlines()
    return [line.strip() for line in lines if line.strip() and not line.startswith("#")]


async def main(path: str | None):
    """Register seeds for tagging."""
    seeds = read_seeds(path)
    if not seeds:
        print("No seeds given.")
        return

    print("Initializing database...")
    await init_db()

    async with async_session_maker() as db:
        store = TagStore(db)
        registered = await store.register_seeds(seeds)
        await db.commit()
        total = await store.count_seeds()

    print(f"Registered {registered} new seeds ({len(seeds) - registered} already known).")
    print(f"Total known seeds: {total}")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
