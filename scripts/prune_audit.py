from __future__ import annotations

import asyncio

from keywarden.core.logging import configure_logging
from keywarden.services.factory import build_default_services
from keywarden.services.maintenance import prune_audit_entries


async def prune() -> None:
    services = build_default_services()
    purged = await prune_audit_entries(services.audit)
    print(f"pruned_audit_entries={purged}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(prune())
