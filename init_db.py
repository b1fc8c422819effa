"""Initialize database schema for the price-matching service.

Creates the price list and job tables, and optionally seeds the price list
from a spreadsheet:

    python init_db.py [--reset] [--seed price_list.xlsx]

Run this before starting the API server.
"""

import argparse
import asyncio
import sys

from boq.config import settings
from boq.db import get_engine, get_session_factory
from boq.errors import MatchingError
from boq.models import Base
from boq.parsers import load_price_list_file
from boq.repository import SqlRepository


async def init_database(reset: bool = False, seed: str | None = None):
    """Create all database tables and optionally load a price list."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    engine = get_engine()
    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    if seed:
        entries = load_price_list_file(seed)
        count = await SqlRepository(get_session_factory()).replace_price_list(entries)
        print(f"✓ Seeded {count} price items from {seed}")

    await engine.dispose()
    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--reset", action="store_true", help="Drop existing tables first")
    parser.add_argument("--seed", metavar="FILE", help="Price list spreadsheet or CSV to import")
    args = parser.parse_args()

    try:
        await init_database(reset=args.reset, seed=args.seed)
    except MatchingError as e:
        print(f"\n❌ {e.classified}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
