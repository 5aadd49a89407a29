from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from keywarden.domain.entities import CredentialType


@dataclass(frozen=True)
class DiscoveredCredential:
    name: str
    type: CredentialType
    source: str
    external_ref: str
    last_rotated_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)
    environment: str = "production"
    description: str | None = None


class CredentialSource(Protocol):
    name: str

    async def discover(self) -> list[DiscoveredCredential]:
        ...


class StaticCredentialSource:
    # Fixed listing for tests and manual imports.
    def __init__(self, name: str, items: list[DiscoveredCredential], error: Exception | None = None) -> None:
        self.name = name
        self._items = list(items)
        self._error = error

    async def discover(self) -> list[DiscoveredCredential]:
        if self._error is not None:
            raise self._error
        return list(self._items)
