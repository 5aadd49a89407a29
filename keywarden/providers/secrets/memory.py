from __future__ import annotations

from itertools import count
from typing import Any

from keywarden.core.errors import PermanentPolicyFailure
from keywarden.providers.secrets.base import AccessKey


class InMemorySecretStore:
    # Deterministic secret store with queued failure injection for tests and local runs.
    def __init__(self, store: str = "secretsmanager", secrets: dict[str, dict[str, Any]] | None = None) -> None:
        self.store = store
        self._secrets = {key: dict(value) for key, value in (secrets or {}).items()}
        self._get_failures: list[BaseException] = []
        self._put_failures: list[BaseException] = []
        self.writes: list[tuple[str, dict[str, Any]]] = []

    def fail_next_gets(self, *errors: BaseException) -> None:
        self._get_failures.extend(errors)

    def fail_next_puts(self, *errors: BaseException) -> None:
        self._put_failures.extend(errors)

    def peek(self, secret_id: str) -> dict[str, Any] | None:
        value = self._secrets.get(secret_id)
        return dict(value) if value is not None else None

    async def get_secret(self, secret_id: str) -> dict[str, Any]:
        if self._get_failures:
            raise self._get_failures.pop(0)
        if secret_id not in self._secrets:
            raise PermanentPolicyFailure(f"secret not found: {secret_id}")
        return dict(self._secrets[secret_id])

    async def put_secret(self, secret_id: str, value: dict[str, Any]) -> None:
        if self._put_failures:
            raise self._put_failures.pop(0)
        self._secrets[secret_id] = dict(value)
        self.writes.append((secret_id, dict(value)))


class InMemoryIamClient:
    # Mirrors IAM's two-keys-per-user cap and the fact that deleted keys are gone for good.
    max_keys_per_user = 2

    def __init__(self) -> None:
        self._keys: dict[str, dict[str, AccessKey]] = {}
        self._sequence = count(1)
        self._create_failures: list[BaseException] = []
        self._update_failures: list[BaseException] = []
        self._delete_failures: list[BaseException] = []
        self.verify_results: list[bool] = []
        self.deleted: list[str] = []

    def add_key(self, user_name: str, access_key_id: str, *, secret: str = "initial", status: str = "Active") -> None:
        self._keys.setdefault(user_name, {})[access_key_id] = AccessKey(access_key_id, secret, status)

    def keys_for(self, user_name: str) -> dict[str, str]:
        return {key_id: key.status for key_id, key in self._keys.get(user_name, {}).items()}

    def fail_next_creates(self, *errors: BaseException) -> None:
        self._create_failures.extend(errors)

    def fail_next_updates(self, *errors: BaseException) -> None:
        self._update_failures.extend(errors)

    def fail_next_deletes(self, *errors: BaseException) -> None:
        self._delete_failures.extend(errors)

    async def list_access_keys(self, user_name: str) -> list[AccessKey]:
        return [AccessKey(key.access_key_id, "", key.status) for key in self._keys.get(user_name, {}).values()]

    async def create_access_key(self, user_name: str) -> AccessKey:
        if self._create_failures:
            raise self._create_failures.pop(0)
        keys = self._keys.setdefault(user_name, {})
        if len(keys) >= self.max_keys_per_user:
            raise PermanentPolicyFailure("iam.create_access_key: LimitExceeded")
        number = next(self._sequence)
        key = AccessKey(access_key_id=f"AKIAFAKE{number:08d}", secret_access_key=f"fake-secret-{number}")
        keys[key.access_key_id] = key
        return key

    async def update_access_key_status(self, user_name: str, access_key_id: str, status: str) -> None:
        if self._update_failures:
            raise self._update_failures.pop(0)
        keys = self._keys.get(user_name, {})
        if access_key_id not in keys:
            raise PermanentPolicyFailure("iam.update_access_key: NoSuchEntity")
        current = keys[access_key_id]
        keys[access_key_id] = AccessKey(current.access_key_id, current.secret_access_key, status)

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        if self._delete_failures:
            raise self._delete_failures.pop(0)
        keys = self._keys.get(user_name, {})
        if keys.pop(access_key_id, None) is None:
            raise PermanentPolicyFailure("iam.delete_access_key: NoSuchEntity")
        self.deleted.append(access_key_id)

    async def verify_access_key(self, access_key: AccessKey) -> bool:
        if self.verify_results:
            return self.verify_results.pop(0)
        return True
