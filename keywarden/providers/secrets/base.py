from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from keywarden.domain.entities import Credential, StrategyResult


# Secret payloads that are not JSON objects travel under this single key.
PLAIN_SECRET_KEY = "value"


@dataclass(frozen=True)
class AccessKey:
    access_key_id: str
    secret_access_key: str
    status: str = "Active"


class SecretStoreClient(Protocol):
    store: str

    async def get_secret(self, secret_id: str) -> dict[str, Any]:
        ...

    async def put_secret(self, secret_id: str, value: dict[str, Any]) -> None:
        ...


class IamClient(Protocol):
    async def list_access_keys(self, user_name: str) -> list[AccessKey]:
        ...

    async def create_access_key(self, user_name: str) -> AccessKey:
        ...

    async def update_access_key_status(self, user_name: str, access_key_id: str, status: str) -> None:
        ...

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        ...

    async def verify_access_key(self, access_key: AccessKey) -> bool:
        ...


class SecretBackend(Protocol):
    async def current_value(self, credential: Credential) -> dict[str, Any]:
        ...

    async def rotate(self, credential: Credential) -> StrategyResult:
        ...

    async def restore(self, credential: Credential, value: dict[str, Any]) -> None:
        ...

    async def finalize(self, credential: Credential, result: StrategyResult) -> None:
        ...
