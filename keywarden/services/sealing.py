from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from keywarden.core.config import Settings, get_settings


logger = logging.getLogger(__name__)


class SealingConfigurationError(RuntimeError):
    """Raised when backup sealing is required but no key is configured."""


class SealedPayloadError(RuntimeError):
    """Raised when a sealed payload cannot be opened with the configured key."""


class SecretSealer:
    # Fernet-seal JSON secret payloads so backups never sit in plaintext at rest.
    def __init__(self, key_material: str) -> None:
        digest = hashlib.sha256(key_material.encode("utf-8")).digest()
        self._fernet = Fernet(urlsafe_b64encode(digest))

    def seal(self, value: dict[str, Any]) -> str:
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return str(self._fernet.encrypt(payload).decode("utf-8"))

    def open(self, token: str) -> dict[str, Any]:
        try:
            payload = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise SealedPayloadError("sealed payload failed authentication") from exc
        return json.loads(payload.decode("utf-8"))


def build_sealer(settings: Settings | None = None) -> SecretSealer:
    settings = settings or get_settings()
    source = (settings.backup_encryption_key or "").strip()
    if not source:
        if settings.backup_encryption_required:
            raise SealingConfigurationError("BACKUP_ENCRYPTION_KEY is required for backup sealing")
        # Deterministic fallback for dev/test to avoid breaking local workflows.
        logger.warning("backup_sealing_dev_key_in_use app=%s", settings.app_name)
        source = f"{settings.app_name}-local-backup-seal"
    return SecretSealer(source)
