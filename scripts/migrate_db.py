#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Against another config file:
    BOOKING_JOBS_CONFIG=config/prod.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text  # noqa: E402


async def list_tables(db) -> list[str]:
    dialect = db.engine.dialect.name
    async with db.engine.connect() as conn:
        if dialect == "postgresql":
            result = await conn.execute(text(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
            ))
        else:  # sqlite
            result = await conn.execute(text(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            ))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings()
    db = Database(settings.database.url, echo=settings.database.echo)

    try:
        if check_only:
            url = str(db.engine.url)
            print(f"Database: {db.engine.dialect.name}")
            print(f"URL: {url.split('@')[-1] if '@' in url else url}")
            print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

            existing = await list_tables(db)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = set(Base.metadata.tables.keys()) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
            else:
                print("All tables exist. ✓")
            return

        print("Running database migration...")
        await db.init()
        print(f"Tables created/verified: {', '.join(await list_tables(db))}")
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
