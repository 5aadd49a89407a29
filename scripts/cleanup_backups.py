from __future__ import annotations

import asyncio

from keywarden.core.logging import configure_logging
from keywarden.services.factory import build_default_services
from keywarden.services.maintenance import cleanup_expired_backups


async def cleanup() -> None:
    services = build_default_services()
    deleted = await cleanup_expired_backups(services.backups, services.audit)
    print(f"deleted_expired_backups={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(cleanup())
