#!/usr/bin/env python3
"""
Database Migration — Create tables from the SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Against a specific config file:
    OUTREACH_CONFIG=config/settings.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def existing_tables(db) -> list[str]:
    from sqlalchemy import inspect

    async with db.engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False):
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings()
    db = Database(settings.database)
    defined = list(Base.metadata.tables.keys())

    try:
        if check_only:
            url = str(db.engine.url)
            print(f"Database: {db.engine.dialect.name}")
            print(f"URL: {url.split('@')[-1] if '@' in url else url}")
            print(f"Tables defined: {', '.join(defined)}")

            existing = await existing_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = set(defined) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
            else:
                print("All tables exist. ✓")
            return

        print("Running database migration...")
        await db.init_db()
        print(f"Tables created/verified: {', '.join(await existing_tables(db))}")
        print("Migration complete. ✓")
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
