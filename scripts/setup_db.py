#!/usr/bin/env python3
"""
Database setup script for the media generation pipeline.

Creates the graph store tables (projects, nodes, edges, assets, integrations)
and, optionally, an integration row per provider.

Usage:
    python scripts/setup_db.py
    python scripts/setup_db.py --database-url sqlite:///./data/mediagen.db
    python scripts/setup_db.py --relay-token <token> --google-api-key <key>
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from shared import database
from shared.credentials import MULTIMODAL_PROVIDER, RELAY_PROVIDER
from shared.models import Base, Integration


def ensure_sqlite_directory(url: str):
    """Create the parent directory of a file-based SQLite database."""
    if not url.startswith("sqlite") or ":memory:" in url:
        return
    path = url.split(":///", 1)[-1]
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        print(f"✓ Database directory: {Path(path).parent}")


async def create_tables():
    """Create all tables using SQLAlchemy models."""
    await database.init_db()

    print("✓ Created tables:")
    for table_name in Base.metadata.tables.keys():
        print(f"  - {table_name}")


async def upsert_integration(provider: str, name: str, config: dict):
    """Insert or refresh the integration row for a provider."""
    async with database.get_db_session() as db:
        result = await db.execute(
            select(Integration).where(Integration.provider == provider, Integration.name == name)
        )
        integration = result.scalar_one_or_none()

        if integration is None:
            db.add(Integration(provider=provider, name=name, config=config, enabled=True))
            print(f"✓ Created integration: {provider} ({name})")
        else:
            integration.config = {**(integration.config or {}), **config}
            integration.enabled = True
            print(f"✓ Updated integration: {provider} ({name})")


async def main():
    parser = argparse.ArgumentParser(description="Set up the media generation database")
    parser.add_argument("--database-url", help="Overrides MEDIAGEN_DATABASE_URL")
    parser.add_argument("--relay-token", help="Relay auth token")
    parser.add_argument("--relay-url", help="Relay base URL")
    parser.add_argument("--relay-mode", choices=["photo", "video"], default="photo")
    parser.add_argument("--google-api-key", help="Google AI Studio API key")
    parser.add_argument("--google-model", help="Google AI Studio model")
    args = parser.parse_args()

    print("=" * 60)
    print("MEDIAGEN DATABASE SETUP")
    print("=" * 60)
    print()

    if args.database_url:
        await database.configure_database(args.database_url)

    print("1. Preparing database location...")
    ensure_sqlite_directory(database.DATABASE_URL)
    if not await database.check_db_connection():
        print(f"✗ Cannot connect to {database.DATABASE_URL}")
        await database.engine.dispose()
        sys.exit(1)
    print("✓ Database reachable")
    print()

    print("2. Creating tables...")
    await create_tables()
    print()

    print("3. Registering integrations...")
    if args.relay_token:
        relay_config = {"apiKey": args.relay_token, "midjourney_mode": args.relay_mode}
        if args.relay_url:
            relay_config["baseUrl"] = args.relay_url
        await upsert_integration(RELAY_PROVIDER, "Midjourney relay", relay_config)
    if args.google_api_key:
        google_config = {"apiKey": args.google_api_key}
        if args.google_model:
            google_config["extra"] = {"model": args.google_model}
        await upsert_integration(MULTIMODAL_PROVIDER, "Google AI Studio", google_config)
    if not args.relay_token and not args.google_api_key:
        print("  (none requested)")
    print()

    await database.engine.dispose()

    print("=" * 60)
    print("✓ Setup complete!")
    print()
    print(f"Connection URL: {database.DATABASE_URL}")
    print()
    print("Add to your .env:")
    print(f"  MEDIAGEN_DATABASE_URL={database.DATABASE_URL}")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
