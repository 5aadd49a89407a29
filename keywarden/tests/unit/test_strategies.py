from __future__ import annotations

import string

import pytest

from keywarden.core.errors import CredentialValidationError, UnsupportedCredentialType
from keywarden.domain.entities import CredentialType
from keywarden.providers.secrets.memory import InMemorySecretStore
from keywarden.services.rotation.strategies import (
    BackendDependencies,
    IamKeyRotation,
    PasswordRotation,
    StrategyRegistry,
    TokenRotation,
    _GeneratedSecretRotation,
    build_strategy_registry,
    generate_secure_password,
    generate_secure_token,
    secret_id_for,
)
from keywarden.tests.utils.builders import build_settings, make_credential


def _deps(*stores: InMemorySecretStore) -> BackendDependencies:
    return BackendDependencies(stores={store.store: store for store in stores}, settings=build_settings())


def test_generate_secure_password_uses_charset_and_length() -> None:
    password = generate_secure_password(48, string.ascii_letters)
    assert len(password) == 48
    assert set(password) <= set(string.ascii_letters)
    assert generate_secure_password(48, string.ascii_letters) != password


def test_generate_secure_password_rejects_empty_charset() -> None:
    with pytest.raises(ValueError):
        generate_secure_password(16, "")


def test_generate_secure_token_is_hex_of_requested_bytes() -> None:
    token = generate_secure_token(16)
    assert len(token) == 32
    int(token, 16)


def test_secret_id_falls_back_to_credential_name() -> None:
    credential = make_credential("t-1", name="prod/db", metadata={})
    assert secret_id_for(credential) == "prod/db"


@pytest.mark.asyncio
async def test_token_rotation_preserves_sibling_fields() -> None:
    store = InMemorySecretStore(secrets={"svc/api": {"token": "old", "endpoint": "https://api"}})
    credential = make_credential(
        "t-1", credential_type=CredentialType.API_TOKEN, metadata={"secret_id": "svc/api"}
    )

    result = await TokenRotation(_deps(store)).rotate(credential)

    stored = store.peek("svc/api")
    assert stored["endpoint"] == "https://api"
    assert stored["token"] != "old"
    assert result.new_value == stored


@pytest.mark.asyncio
async def test_secret_key_and_store_come_from_metadata() -> None:
    secrets = InMemorySecretStore("secretsmanager")
    parameters = InMemorySecretStore("ssm", secrets={"/app/smtp_password": {"value": "plain-old"}})
    credential = make_credential(
        "t-1",
        credential_type=CredentialType.SMTP_PASSWORD,
        metadata={"secret_id": "/app/smtp_password", "store": "ssm", "secret_key": "value"},
    )

    await PasswordRotation(_deps(secrets, parameters)).rotate(credential)

    assert secrets.writes == []
    assert set(parameters.peek("/app/smtp_password")) == {"value"}
    assert parameters.peek("/app/smtp_password")["value"] != "plain-old"


@pytest.mark.asyncio
async def test_restore_writes_value_back_verbatim() -> None:
    store = InMemorySecretStore(secrets={"svc/api": {"token": "new"}})
    credential = make_credential(
        "t-1", credential_type=CredentialType.API_TOKEN, metadata={"secret_id": "svc/api"}
    )
    strategy = TokenRotation(_deps(store))

    await strategy.restore(credential, {"token": "old", "endpoint": "https://api"})
    await strategy.restore(credential, {"token": "old", "endpoint": "https://api"})

    assert store.peek("svc/api") == {"token": "old", "endpoint": "https://api"}


@pytest.mark.asyncio
async def test_unconfigured_store_is_a_validation_error() -> None:
    credential = make_credential(
        "t-1", credential_type=CredentialType.API_TOKEN, metadata={"secret_id": "x", "store": "vault"}
    )
    with pytest.raises(CredentialValidationError):
        await TokenRotation(_deps(InMemorySecretStore())).rotate(credential)


def test_registry_covers_every_credential_type_and_shares_instances() -> None:
    registry = build_strategy_registry(_deps(InMemorySecretStore()))

    assert registry.supported_types() == frozenset(CredentialType)
    smtp = registry.for_credential(make_credential("t-1", credential_type=CredentialType.SMTP_PASSWORD))
    generic = registry.for_credential(
        make_credential("t-1", credential_type=CredentialType.SECRETS_MANAGER_SECRET)
    )
    assert smtp is generic


def test_registry_rejects_unregistered_type() -> None:
    registry = StrategyRegistry({})
    with pytest.raises(UnsupportedCredentialType):
        registry.for_credential(make_credential("t-1"))


@pytest.mark.asyncio
async def test_plain_string_password_keeps_its_shape_unless_a_key_is_named() -> None:
    store = InMemorySecretStore(secrets={"smtp/relay": {"value": "old"}, "smtp/named": {"value": "old"}})
    strategy = PasswordRotation(_deps(store))

    await strategy.rotate(make_credential("t-1", metadata={"secret_id": "smtp/relay"}))
    await strategy.rotate(
        make_credential("t-1", metadata={"secret_id": "smtp/named", "secret_key": "password"})
    )

    relay = store.peek("smtp/relay")
    assert set(relay) == {"value"} and relay["value"] != "old"
    named = store.peek("smtp/named")
    assert named["value"] == "old" and len(named["password"]) == 32


def test_generated_secret_base_cannot_be_used_directly() -> None:
    with pytest.raises(TypeError):
        _GeneratedSecretRotation(_deps(InMemorySecretStore()))
    assert not isinstance(IamKeyRotation(_deps()), _GeneratedSecretRotation)
