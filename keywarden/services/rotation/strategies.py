from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
import logging
import secrets
from typing import Any, Awaitable, Callable, Mapping

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import (
    CredentialValidationError,
    RollbackError,
    TransientExternalFailure,
    UnsupportedCredentialType,
)
from keywarden.domain.entities import Credential, CredentialType, StrategyResult
from keywarden.providers.secrets.base import (
    PLAIN_SECRET_KEY,
    AccessKey,
    IamClient,
    SecretBackend,
    SecretStoreClient,
)


logger = logging.getLogger(__name__)


DEFAULT_STORE = "secretsmanager"


def generate_secure_password(length: int | None = None, charset: str | None = None) -> str:
    settings = get_settings()
    length = length or settings.password_length
    charset = charset or settings.password_charset
    if length <= 0 or not charset:
        raise ValueError("password length and charset must be non-empty")
    return "".join(secrets.choice(charset) for _ in range(length))


def generate_secure_token(nbytes: int | None = None) -> str:
    return secrets.token_hex(nbytes or get_settings().token_bytes)


@dataclass
class BackendDependencies:
    # Everything a strategy may touch is injected; nothing reaches for module-level clients.
    stores: Mapping[str, SecretStoreClient] = field(default_factory=dict)
    iam: IamClient | None = None
    settings: Settings | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


def secret_id_for(credential: Credential) -> str:
    return str(credential.metadata.get("secret_id") or credential.name)


class _StoreBackedStrategy:
    def __init__(self, deps: BackendDependencies) -> None:
        self._deps = deps
        self._settings = deps.settings or get_settings()

    def _store(self, credential: Credential) -> SecretStoreClient:
        name = str(credential.metadata.get("store") or DEFAULT_STORE)
        store = self._deps.stores.get(name)
        if store is None:
            raise CredentialValidationError(f"No secret store configured for '{name}'")
        return store

    async def finalize(self, credential: Credential, result: StrategyResult) -> None:
        return None


class _GeneratedSecretRotation(_StoreBackedStrategy, abc.ABC):
    value_key = "password"

    def _key(self, credential: Credential, current: dict[str, Any]) -> str:
        explicit = credential.metadata.get("secret_key")
        if explicit:
            return str(explicit)
        # A plain-string secret stays a plain string after rotation.
        if set(current) == {PLAIN_SECRET_KEY}:
            return PLAIN_SECRET_KEY
        return self.value_key

    @abc.abstractmethod
    def _generate(self) -> str:
        ...

    def _validate(self, credential: Credential, current: dict[str, Any]) -> None:
        return None

    async def current_value(self, credential: Credential) -> dict[str, Any]:
        return await self._store(credential).get_secret(secret_id_for(credential))

    async def rotate(self, credential: Credential) -> StrategyResult:
        store = self._store(credential)
        secret_id = secret_id_for(credential)
        current = await store.get_secret(secret_id)
        self._validate(credential, current)
        # Preserve sibling fields (host, username, port); only the secret field changes.
        new_value = dict(current)
        new_value[self._key(credential, current)] = self._generate()
        await store.put_secret(secret_id, new_value)
        logger.info(
            "secret_rotated credential_id=%s store=%s type=%s",
            credential.id,
            store.store,
            credential.type.value,
        )
        return StrategyResult(new_value=new_value)

    async def restore(self, credential: Credential, value: dict[str, Any]) -> None:
        # Verbatim write-back; repeating it leaves the store in the same state.
        await self._store(credential).put_secret(secret_id_for(credential), value)


class PasswordRotation(_GeneratedSecretRotation):
    def _generate(self) -> str:
        return generate_secure_password(self._settings.password_length, self._settings.password_charset)


class DatabasePasswordRotation(PasswordRotation):
    def _validate(self, credential: Credential, current: dict[str, Any]) -> None:
        if not current.get("username"):
            raise CredentialValidationError(
                f"Database secret for credential {credential.id} has no username"
            )


class TokenRotation(_GeneratedSecretRotation):
    value_key = "token"

    def _generate(self) -> str:
        return generate_secure_token(self._settings.token_bytes)


class IamKeyRotation(_StoreBackedStrategy):
    """Rotate an IAM access key without ever leaving the user keyless.

    The new key pair is always written to the credential's secret store; a
    credential without ``secret_id`` metadata is refused before any key is
    created. The old key is only deactivated during ``rotate`` and is deleted
    in ``finalize`` once the engine has recorded success. Until then
    ``restore`` can reactivate it. A deleted key cannot be brought back, so
    restoring after ``finalize`` raises ``RollbackError``.

    A superseded key that a failed ``finalize`` left behind is deleted before
    the next rotation creates a key, so IAM's two-keys cap is never hit by
    our own leftovers.
    """

    def _iam(self) -> IamClient:
        if self._deps.iam is None:
            raise CredentialValidationError("No IAM client configured")
        return self._deps.iam

    def _identity(self, credential: Credential) -> tuple[str, str]:
        user_name = credential.metadata.get("user_name")
        access_key_id = credential.metadata.get("access_key_id")
        if not user_name or not access_key_id:
            raise CredentialValidationError(
                f"IAM credential {credential.id} needs user_name and access_key_id metadata"
            )
        return str(user_name), str(access_key_id)

    def _key_store(self, credential: Credential) -> tuple[SecretStoreClient, str]:
        secret_id = credential.metadata.get("secret_id")
        if not secret_id:
            raise CredentialValidationError(
                f"IAM credential {credential.id} needs secret_id metadata to store the new key"
            )
        return self._store(credential), str(secret_id)

    async def current_value(self, credential: Credential) -> dict[str, Any]:
        user_name, access_key_id = self._identity(credential)
        store, secret_id = self._key_store(credential)
        stored = await store.get_secret(secret_id)
        return {"user_name": user_name, "access_key_id": access_key_id, "stored_secret": stored}

    async def _purge_superseded_key(self, iam: IamClient, credential: Credential, user_name: str) -> None:
        previous = credential.metadata.get("previous_access_key_id")
        if not previous or previous == credential.metadata.get("access_key_id"):
            return
        keys = {key.access_key_id: key.status for key in await iam.list_access_keys(user_name)}
        if keys.get(str(previous)) != "Inactive":
            return
        await iam.delete_access_key(user_name, str(previous))
        logger.info(
            "iam_superseded_key_deleted credential_id=%s access_key_id=%s",
            credential.id,
            previous,
        )

    async def rotate(self, credential: Credential) -> StrategyResult:
        iam = self._iam()
        user_name, old_key_id = self._identity(credential)
        store, secret_id = self._key_store(credential)
        await self._purge_superseded_key(iam, credential, user_name)
        new_key = await iam.create_access_key(user_name)
        new_value = {
            "access_key_id": new_key.access_key_id,
            "secret_access_key": new_key.secret_access_key,
        }
        completed = False
        try:
            await store.put_secret(secret_id, new_value)
            if self._settings.iam_verify_new_key and not await iam.verify_access_key(new_key):
                raise TransientExternalFailure(f"New access key {new_key.access_key_id} failed verification")
            await iam.update_access_key_status(user_name, old_key_id, "Inactive")
            completed = True
        finally:
            # Also runs when a deadline cancels this coroutine mid-call.
            if not completed:
                await self._discard_key(iam, user_name, new_key)
        logger.info(
            "iam_key_rotated credential_id=%s user=%s new_key=%s old_key=%s",
            credential.id,
            user_name,
            new_key.access_key_id,
            old_key_id,
        )
        return StrategyResult(
            new_value=new_value,
            metadata_patch={
                "access_key_id": new_key.access_key_id,
                "previous_access_key_id": old_key_id,
            },
            external_ref=new_key.access_key_id,
        )

    async def _discard_key(self, iam: IamClient, user_name: str, key: AccessKey) -> None:
        try:
            await iam.delete_access_key(user_name, key.access_key_id)
        except Exception as exc:  # noqa: BLE001 - the original failure is what the caller needs
            logger.warning(
                "iam_new_key_cleanup_failed user=%s access_key_id=%s",
                user_name,
                key.access_key_id,
                exc_info=exc,
            )

    async def restore(self, credential: Credential, value: dict[str, Any]) -> None:
        iam = self._iam()
        user_name = str(value.get("user_name") or "")
        access_key_id = str(value.get("access_key_id") or "")
        if not user_name or not access_key_id:
            raise RollbackError(f"Backup for credential {credential.id} has no IAM key identity")
        try:
            await iam.update_access_key_status(user_name, access_key_id, "Active")
        except TransientExternalFailure:
            raise
        except Exception as exc:
            raise RollbackError(
                f"Access key {access_key_id} cannot be reactivated; IAM keys are not recoverable once deleted"
            ) from exc
        stored = value.get("stored_secret")
        if stored is not None:
            store, secret_id = self._key_store(credential)
            await store.put_secret(secret_id, stored)

    async def finalize(self, credential: Credential, result: StrategyResult) -> None:
        old_key_id = result.metadata_patch.get("previous_access_key_id")
        if not old_key_id:
            return
        user_name, _ = self._identity(credential)
        delay = max(0.0, float(self._settings.iam_old_key_delete_delay_s))
        if delay:
            await self._deps.sleep(delay)
        await self._iam().delete_access_key(user_name, str(old_key_id))
        logger.info("iam_old_key_deleted credential_id=%s access_key_id=%s", credential.id, old_key_id)


STRATEGY_TYPES: dict[CredentialType, type[_StoreBackedStrategy]] = {
    CredentialType.IAM_KEY: IamKeyRotation,
    CredentialType.SECRETS_MANAGER_SECRET: PasswordRotation,
    CredentialType.DATABASE_PASSWORD: DatabasePasswordRotation,
    CredentialType.SMTP_PASSWORD: PasswordRotation,
    CredentialType.API_TOKEN: TokenRotation,
    CredentialType.GITHUB_TOKEN: TokenRotation,
}


class StrategyRegistry:
    def __init__(self, backends: Mapping[CredentialType, SecretBackend]) -> None:
        self._backends = dict(backends)

    def for_credential(self, credential: Credential) -> SecretBackend:
        backend = self._backends.get(credential.type)
        if backend is None:
            raise UnsupportedCredentialType(f"No rotation strategy for credential type {credential.type}")
        return backend

    def supported_types(self) -> frozenset[CredentialType]:
        return frozenset(self._backends)


def build_strategy_registry(
    deps: BackendDependencies,
    strategy_types: Mapping[CredentialType, type[_StoreBackedStrategy]] | None = None,
) -> StrategyRegistry:
    strategy_types = STRATEGY_TYPES if strategy_types is None else strategy_types
    # One instance per strategy class; types sharing a class share the instance.
    instances: dict[type[_StoreBackedStrategy], SecretBackend] = {}
    backends: dict[CredentialType, SecretBackend] = {}
    for credential_type, strategy_cls in strategy_types.items():
        if strategy_cls not in instances:
            instances[strategy_cls] = strategy_cls(deps)
        backends[credential_type] = instances[strategy_cls]
    return StrategyRegistry(backends)
