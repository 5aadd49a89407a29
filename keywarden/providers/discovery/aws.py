from __future__ import annotations

from typing import Any

import boto3

from keywarden.domain.entities import CredentialType
from keywarden.providers.discovery.base import DiscoveredCredential
from keywarden.providers.secrets.aws import call_aws


# Parameter names hinting at secret material; everything else in SSM is plain config.
_SSM_SECRET_HINTS = ("password", "token", "key")

_SECRET_NAME_TYPES = (
    ("database", CredentialType.DATABASE_PASSWORD),
    ("smtp", CredentialType.SMTP_PASSWORD),
    ("github", CredentialType.GITHUB_TOKEN),
)


def classify_secret_type(name: str) -> CredentialType:
    lowered = name.lower()
    for hint, credential_type in _SECRET_NAME_TYPES:
        if hint in lowered:
            return credential_type
    return CredentialType.API_TOKEN


def _paginate(client: Any, operation: str, result_key: str, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for page in client.get_paginator(operation).paginate(**kwargs):
        items.extend(page.get(result_key, []))
    return items


class IamAccessKeySource:
    name = "iam"

    def __init__(self, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("iam", region_name=self._region)
        return self._client

    def _collect(self) -> list[DiscoveredCredential]:
        client = self._get_client()
        found: list[DiscoveredCredential] = []
        for user in _paginate(client, "list_users", "Users"):
            user_name = user["UserName"]
            for key in _paginate(client, "list_access_keys", "AccessKeyMetadata", UserName=user_name):
                # Inactive keys are mid-rotation leftovers awaiting deletion.
                if key.get("Status") != "Active":
                    continue
                key_id = key["AccessKeyId"]
                found.append(
                    DiscoveredCredential(
                        name=f"{user_name} access key",
                        type=CredentialType.IAM_KEY,
                        source=self.name,
                        external_ref=key_id,
                        last_rotated_at=key.get("CreateDate"),
                        metadata={"user_name": user_name, "access_key_id": key_id},
                        description=f"IAM access key for {user_name}",
                    )
                )
        return found

    async def discover(self) -> list[DiscoveredCredential]:
        return await call_aws("iam.discover", self._collect)


class SecretsManagerSource:
    name = "secretsmanager"

    def __init__(self, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    def _collect(self) -> list[DiscoveredCredential]:
        found: list[DiscoveredCredential] = []
        for secret in _paginate(self._get_client(), "list_secrets", "SecretList"):
            name = secret["Name"]
            found.append(
                DiscoveredCredential(
                    name=name,
                    type=classify_secret_type(name),
                    source=self.name,
                    external_ref=secret.get("ARN") or name,
                    last_rotated_at=(
                        secret.get("LastRotatedDate") or secret.get("LastChangedDate") or secret.get("CreatedDate")
                    ),
                    metadata={"secret_id": secret.get("ARN") or name, "store": "secretsmanager"},
                    description=secret.get("Description"),
                )
            )
        return found

    async def discover(self) -> list[DiscoveredCredential]:
        return await call_aws("secretsmanager.discover", self._collect)


class SsmParameterSource:
    name = "ssm"

    def __init__(self, region: str, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self._region)
        return self._client

    def _collect(self) -> list[DiscoveredCredential]:
        found: list[DiscoveredCredential] = []
        for parameter in _paginate(self._get_client(), "describe_parameters", "Parameters"):
            name = parameter["Name"]
            if not any(hint in name.lower() for hint in _SSM_SECRET_HINTS):
                continue
            found.append(
                DiscoveredCredential(
                    name=name,
                    type=classify_secret_type(name),
                    source=self.name,
                    external_ref=name,
                    last_rotated_at=parameter.get("LastModifiedDate"),
                    metadata={"secret_id": name, "store": "ssm"},
                    description=parameter.get("Description"),
                )
            )
        return found

    async def discover(self) -> list[DiscoveredCredential]:
        return await call_aws("ssm.discover", self._collect)


def default_sources(region: str) -> list[Any]:
    return [IamAccessKeySource(region), SecretsManagerSource(region), SsmParameterSource(region)]
