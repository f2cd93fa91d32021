"""Seed script to initialize the database with an admin API key"""
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from keyhub.core.config import settings  # noqa: E402
from keyhub.core.credentials import generate_api_key  # noqa: E402
from keyhub.db.session import Database  # noqa: E402
from keyhub.models.domain import KeyType  # noqa: E402
from keyhub.services.container import build_services, ensure_bootstrap_admin  # noqa: E402


async def seed() -> None:
    database = Database()
    await database.init()
    services = build_services(database)
    try:
        admins = await services.gateway.count_api_keys(key_type=KeyType.ADMIN)
        if admins:
            keys, _ = await services.gateway.list_api_keys(key_type=KeyType.ADMIN, limit=1)
            print("Admin API key already exists")
            print(f"   UID: {keys[0].uid}")
            return

        api_key = await ensure_bootstrap_admin(services, settings.BOOTSTRAP_ADMIN_KEY or generate_api_key())
        print("Admin API key created successfully")
        print(f"   UID: {api_key.uid}")
        print(f"   Key: {api_key.key_value}")
        print("\nIMPORTANT: this is the master key for the admin dashboard. Store it safely.")
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(seed())
