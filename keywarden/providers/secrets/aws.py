from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from keywarden.core.errors import PermanentPolicyFailure, RotationError, TransientExternalFailure
from keywarden.providers.secrets.base import PLAIN_SECRET_KEY, AccessKey


logger = logging.getLogger(__name__)


_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceFailure",
    "InternalFailure",
    "InternalServiceError",
    "InternalServerError",
}


def classify_aws_error(exc: Exception, operation: str) -> RotationError:
    # Map SDK failures onto the retry taxonomy: throttling/5xx/network retry, the rest does not.
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return PermanentPolicyFailure(f"{operation}: AWS credentials are not configured")
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _TRANSIENT_CODES or (isinstance(status, int) and status >= 500):
            return TransientExternalFailure(f"{operation}: {code}")
        return PermanentPolicyFailure(f"{operation}: {code}")
    if isinstance(exc, (BotoCoreError, ConnectionError, TimeoutError)):
        return TransientExternalFailure(f"{operation}: {exc.__class__.__name__}")
    return TransientExternalFailure(f"{operation}: {exc}")


async def call_aws(operation: str, method: Callable[..., Any], **kwargs: Any) -> Any:
    # boto3 is blocking; run it off the event loop and translate its errors.
    try:
        return await asyncio.to_thread(method, **kwargs)
    except (BotoCoreError, ClientError, ConnectionError, TimeoutError) as exc:
        raise classify_aws_error(exc, operation) from exc


def decode_secret_string(raw: str | None) -> dict[str, Any]:
    if raw is None:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {PLAIN_SECRET_KEY: raw}
    if isinstance(value, dict):
        return value
    return {PLAIN_SECRET_KEY: raw}


def encode_secret_string(value: dict[str, Any]) -> str:
    # Plain-string secrets are written back verbatim so restore stays byte-identical.
    if set(value) == {PLAIN_SECRET_KEY} and isinstance(value[PLAIN_SECRET_KEY], str):
        return value[PLAIN_SECRET_KEY]
    return json.dumps(value, separators=(",", ":"))


class SecretsManagerClient:
    store = "secretsmanager"

    def __init__(self, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    async def get_secret(self, secret_id: str) -> dict[str, Any]:
        response = await call_aws(
            "secretsmanager.get_secret_value", self._get_client().get_secret_value, SecretId=secret_id
        )
        return decode_secret_string(response.get("SecretString"))

    async def put_secret(self, secret_id: str, value: dict[str, Any]) -> None:
        await call_aws(
            "secretsmanager.update_secret",
            self._get_client().update_secret,
            SecretId=secret_id,
            SecretString=encode_secret_string(value),
        )


class SsmParameterClient:
    store = "ssm"

    def __init__(self, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self._region)
        return self._client

    async def get_secret(self, secret_id: str) -> dict[str, Any]:
        response = await call_aws(
            "ssm.get_parameter", self._get_client().get_parameter, Name=secret_id, WithDecryption=True
        )
        return decode_secret_string(response.get("Parameter", {}).get("Value"))

    async def put_secret(self, secret_id: str, value: dict[str, Any]) -> None:
        await call_aws(
            "ssm.put_parameter",
            self._get_client().put_parameter,
            Name=secret_id,
            Value=encode_secret_string(value),
            Type="SecureString",
            Overwrite=True,
        )


class AwsIamClient:
    def __init__(
        self,
        region: str,
        client: Any | None = None,
        sts_factory: Callable[[AccessKey], Any] | None = None,
    ) -> None:
        self._region = region
        self._client = client
        self._sts_factory = sts_factory or self._default_sts_client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("iam", region_name=self._region)
        return self._client

    def _default_sts_client(self, access_key: AccessKey) -> Any:
        return boto3.client(
            "sts",
            region_name=self._region,
            aws_access_key_id=access_key.access_key_id,
            aws_secret_access_key=access_key.secret_access_key,
        )

    async def list_access_keys(self, user_name: str) -> list[AccessKey]:
        # Metadata only; IAM never returns an existing key's secret.
        response = await call_aws("iam.list_access_keys", self._get_client().list_access_keys, UserName=user_name)
        return [
            AccessKey(access_key_id=item["AccessKeyId"], secret_access_key="", status=item.get("Status", "Active"))
            for item in response.get("AccessKeyMetadata", [])
        ]

    async def create_access_key(self, user_name: str) -> AccessKey:
        response = await call_aws("iam.create_access_key", self._get_client().create_access_key, UserName=user_name)
        key = response["AccessKey"]
        return AccessKey(
            access_key_id=key["AccessKeyId"],
            secret_access_key=key["SecretAccessKey"],
            status=key.get("Status", "Active"),
        )

    async def update_access_key_status(self, user_name: str, access_key_id: str, status: str) -> None:
        await call_aws(
            "iam.update_access_key",
            self._get_client().update_access_key,
            UserName=user_name,
            AccessKeyId=access_key_id,
            Status=status,
        )

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        await call_aws(
            "iam.delete_access_key",
            self._get_client().delete_access_key,
            UserName=user_name,
            AccessKeyId=access_key_id,
        )

    async def verify_access_key(self, access_key: AccessKey) -> bool:
        # A fresh key may take a few seconds to propagate; callers retry on False.
        sts = self._sts_factory(access_key)
        try:
            await asyncio.to_thread(sts.get_caller_identity)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            logger.info("iam_access_key_verification_failed access_key_id=%s code=%s", access_key.access_key_id, code)
            return False
        except BotoCoreError as exc:
            raise classify_aws_error(exc, "sts.get_caller_identity") from exc
        return True
