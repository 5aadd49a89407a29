from __future__ import annotations

from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
import pytest

from keywarden.core.errors import PermanentPolicyFailure, TransientExternalFailure
from keywarden.providers.secrets.aws import (
    AwsIamClient,
    SecretsManagerClient,
    SsmParameterClient,
    classify_aws_error,
    decode_secret_string,
    encode_secret_string,
)
from keywarden.providers.secrets.base import AccessKey


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


def test_plain_string_secrets_survive_decode_and_encode() -> None:
    assert decode_secret_string("not-json") == {"value": "not-json"}
    assert encode_secret_string({"value": "not-json"}) == "not-json"
    assert decode_secret_string('{"password": "p"}') == {"password": "p"}
    assert decode_secret_string('["a"]') == {"value": '["a"]'}
    assert decode_secret_string(None) == {}


def test_classify_aws_error() -> None:
    assert isinstance(classify_aws_error(_client_error("ThrottlingException"), "op"), TransientExternalFailure)
    assert isinstance(classify_aws_error(_client_error("Weird", status=503), "op"), TransientExternalFailure)
    assert isinstance(classify_aws_error(_client_error("AccessDeniedException"), "op"), PermanentPolicyFailure)
    assert isinstance(classify_aws_error(NoCredentialsError(), "op"), PermanentPolicyFailure)
    assert isinstance(
        classify_aws_error(EndpointConnectionError(endpoint_url="https://x"), "op"), TransientExternalFailure
    )


class _FakeSecretsManager:
    def __init__(self) -> None:
        self.updates: list[dict] = []

    def get_secret_value(self, SecretId):
        return {"SecretString": '{"username": "app", "password": "p"}'}

    def update_secret(self, **kwargs):
        self.updates.append(kwargs)
        return {}


class _FakeSsm:
    def __init__(self) -> None:
        self.puts: list[dict] = []

    def get_parameter(self, Name, WithDecryption):
        assert WithDecryption is True
        return {"Parameter": {"Value": "plain-token"}}

    def put_parameter(self, **kwargs):
        self.puts.append(kwargs)
        return {}


@pytest.mark.asyncio
async def test_secrets_manager_client_round_trips_json() -> None:
    fake = _FakeSecretsManager()
    client = SecretsManagerClient("us-east-1", client=fake)

    value = await client.get_secret("prod/db")
    await client.put_secret("prod/db", {**value, "password": "new"})

    assert value == {"username": "app", "password": "p"}
    assert fake.updates[0]["SecretId"] == "prod/db"
    assert '"password":"new"' in fake.updates[0]["SecretString"]


@pytest.mark.asyncio
async def test_ssm_client_writes_secure_string() -> None:
    fake = _FakeSsm()
    client = SsmParameterClient("us-east-1", client=fake)

    value = await client.get_secret("/app/token")
    await client.put_secret("/app/token", {"value": "rotated"})

    assert value == {"value": "plain-token"}
    assert fake.puts == [{"Name": "/app/token", "Value": "rotated", "Type": "SecureString", "Overwrite": True}]


@pytest.mark.asyncio
async def test_iam_client_maps_errors_and_verifies_via_sts() -> None:
    class _FakeIam:
        def create_access_key(self, UserName):
            raise _client_error("LimitExceeded", status=409)

    class _RejectingSts:
        def get_caller_identity(self):
            raise _client_error("InvalidClientTokenId", status=403)

    client = AwsIamClient("us-east-1", client=_FakeIam(), sts_factory=lambda key: _RejectingSts())

    with pytest.raises(PermanentPolicyFailure):
        await client.create_access_key("deploy")
    assert await client.verify_access_key(AccessKey("AKIANEW", "secret")) is False


@pytest.mark.asyncio
async def test_iam_client_lists_key_metadata_without_secrets() -> None:
    class _FakeIam:
        def list_access_keys(self, UserName):
            assert UserName == "deploy"
            return {
                "AccessKeyMetadata": [
                    {"AccessKeyId": "AKIAOLD", "Status": "Inactive"},
                    {"AccessKeyId": "AKIANEW", "Status": "Active"},
                ]
            }

    client = AwsIamClient("us-east-1", client=_FakeIam())

    keys = await client.list_access_keys("deploy")

    assert [(key.access_key_id, key.status) for key in keys] == [("AKIAOLD", "Inactive"), ("AKIANEW", "Active")]
    assert all(key.secret_access_key == "" for key in keys)
