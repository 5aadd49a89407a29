from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import httpx

from keywarden.core.config import Settings, get_settings
from keywarden.core.errors import ProviderConfigError
from keywarden.services.resilience import RetryPolicy, retry_async
from keywarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class NotificationChannel(Protocol):
    async def publish(self, severity: AlertSeverity, subject: str, message: str) -> bool:
        ...


def format_subject(severity: AlertSeverity, subject: str) -> str:
    # Critical alerts carry a distinct prefix so operator filters can route them separately.
    if severity == AlertSeverity.CRITICAL:
        return f"[CRITICAL] {subject}"
    if severity == AlertSeverity.WARNING:
        return f"[WARNING] {subject}"
    return subject


def build_alert_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for alert webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class NoopNotificationChannel:
    async def publish(self, severity: AlertSeverity, subject: str, message: str) -> bool:
        logger.debug("notification_dropped severity=%s subject=%s", severity.value, subject)
        return False


class WebhookNotificationChannel:
    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        critical_url: str | None = None,
        timeout_s: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ProviderConfigError("Webhook notification channel requires a URL")
        self._url = url
        self._secret = secret
        self._critical_url = critical_url
        self._timeout_s = timeout_s
        self._transport = transport
        self._policy = RetryPolicy(max_attempts=2, backoff_base_s=0.5, timeout_s=timeout_s)

    def _destination(self, severity: AlertSeverity) -> str:
        if severity == AlertSeverity.CRITICAL and self._critical_url:
            return self._critical_url
        return self._url

    async def publish(self, severity: AlertSeverity, subject: str, message: str) -> bool:
        payload = {
            "severity": severity.value,
            "subject": format_subject(severity, subject),
            "message": message,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Keywarden-Severity": severity.value}
        if self._secret:
            headers["X-Keywarden-Signature"] = build_alert_signature(self._secret, body)
        destination = self._destination(severity)

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(destination, content=body, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        try:
            response = await retry_async(_call, policy=self._policy, retryable=_retryable)
        except Exception as exc:  # noqa: BLE001 - alert delivery failures are non-fatal
            increment_counter("notification_failures_total")
            logger.warning("alert_webhook_send_failed severity=%s", severity.value, exc_info=exc)
            return False
        if response.status_code >= 400:
            increment_counter("notification_failures_total")
            logger.warning(
                "alert_webhook_rejected severity=%s status=%s", severity.value, response.status_code
            )
            return False
        return True


class SnsNotificationChannel:
    def __init__(
        self,
        topic_arn: str,
        *,
        critical_topic_arn: str | None = None,
        region: str = "us-east-1",
        client: Any | None = None,
    ) -> None:
        if not topic_arn:
            raise ProviderConfigError("SNS notification channel requires a topic ARN")
        self._topic_arn = topic_arn
        self._critical_topic_arn = critical_topic_arn
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("sns", region_name=self._region)
        return self._client

    async def publish(self, severity: AlertSeverity, subject: str, message: str) -> bool:
        topic = self._topic_arn
        if severity == AlertSeverity.CRITICAL and self._critical_topic_arn:
            topic = self._critical_topic_arn
        try:
            await asyncio.to_thread(
                self._get_client().publish,
                TopicArn=topic,
                # SNS caps subjects at 100 characters.
                Subject=format_subject(severity, subject)[:100],
                Message=message,
                MessageAttributes={"severity": {"DataType": "String", "StringValue": severity.value}},
            )
        except (BotoCoreError, ClientError) as exc:
            increment_counter("notification_failures_total")
            logger.warning("alert_sns_publish_failed severity=%s topic=%s", severity.value, topic, exc_info=exc)
            return False
        return True


async def dispatch_alert(
    channel: NotificationChannel | None,
    severity: AlertSeverity,
    subject: str,
    message: str,
) -> bool:
    # Channels never break the caller; a critical alert that cannot be delivered still lands in the log.
    delivered = False
    if channel is not None:
        try:
            delivered = await channel.publish(severity, subject, message)
        except Exception as exc:  # noqa: BLE001 - notifications are a non-critical side effect
            logger.warning("alert_publish_failed severity=%s", severity.value, exc_info=exc)
    if severity == AlertSeverity.CRITICAL:
        logger.critical("critical_alert subject=%s delivered=%s message=%s", subject, delivered, message)
    return delivered


def _build_webhook(settings: Settings) -> NotificationChannel:
    return WebhookNotificationChannel(
        settings.notify_webhook_url or "",
        secret=settings.notify_webhook_secret,
        critical_url=settings.notify_critical_webhook_url,
        timeout_s=settings.notify_timeout_ms / 1000.0,
    )


def _build_sns(settings: Settings) -> NotificationChannel:
    return SnsNotificationChannel(
        settings.notify_sns_topic_arn or "",
        critical_topic_arn=settings.notify_critical_sns_topic_arn,
        region=settings.aws_region,
    )


def _build_noop(settings: Settings) -> NotificationChannel:
    return NoopNotificationChannel()


_CHANNEL_BUILDERS = {
    "none": _build_noop,
    "webhook": _build_webhook,
    "sns": _build_sns,
}


def get_notification_channel(settings: Settings | None = None) -> NotificationChannel:
    settings = settings or get_settings()
    name = (settings.notify_adapter or "none").lower()
    builder = _CHANNEL_BUILDERS.get(name)
    if builder is None:
        raise ProviderConfigError(f"Unsupported notification adapter: {name}")
    return builder(settings)
