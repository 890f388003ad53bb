from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pywebpush import WebPushException

from src.config import Settings, get_settings
from src.integrations.apns_client import ApnsClient, ApnsError
from src.integrations.expo_client import ExpoClient, ExpoError
from src.integrations.fcm_client import FcmClient, FcmError, load_service_account
from src.integrations.webpush_client import WebPushClient
from src.models.notification import DeviceToken, NotificationRequest
from src.notifications.payloads import (
    apns_priority,
    build_apns_payload,
    build_fcm_message,
    build_relay_message,
    build_web_payload,
)
from src.notifications.platforms import Platform

logger = logging.getLogger(__name__)

APNS_INVALID_REASONS = {"Unregistered", "BadDeviceToken", "DeviceTokenNotForTopic"}
FCM_INVALID_CODES = {"UNREGISTERED", "NOT_FOUND"}
EXPO_INVALID_ERRORS = {"DeviceNotRegistered"}
WEB_PUSH_GONE_STATUSES = {404, 410}


class TokenOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    INVALID = "invalid"


@dataclass(frozen=True)
class BatchResult:
    sent: int = 0
    failed: int = 0
    invalid_tokens: list[str] = field(default_factory=list)

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            invalid_tokens=[*self.invalid_tokens, *other.invalid_tokens],
        )

    @classmethod
    def from_outcomes(cls, tokens: list[DeviceToken], outcomes: list[TokenOutcome]) -> "BatchResult":
        sent = failed = 0
        invalid: list[str] = []
        for token, outcome in zip(tokens, outcomes, strict=True):
            if outcome is TokenOutcome.SENT:
                sent += 1
            elif outcome is TokenOutcome.INVALID:
                invalid.append(token.token)
            else:
                failed += 1
        return cls(sent=sent, failed=failed, invalid_tokens=invalid)


class BaseNotificationProvider(ABC):
    name: str = "base"
    platform: Platform

    def __init__(self, client: Any | None = None) -> None:
        self.client = client

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def send_batch(
        self,
        tokens: list[DeviceToken],
        notification: NotificationRequest,
        silent: bool,
    ) -> BatchResult:
        if not tokens:
            return BatchResult()
        if not self.configured:
            logger.warning(
                "Push provider not configured, counting tokens as failed",
                extra={"provider": self.name, "tokens": len(tokens)},
            )
            return BatchResult(failed=len(tokens))
        return await self._send(tokens, notification, silent)

    @abstractmethod
    async def _send(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> BatchResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        closer = getattr(self.client, "aclose", None)
        if closer is not None:
            await closer()


class PerTokenNotificationProvider(BaseNotificationProvider):
    """Provider without native multicast: one call per token, bounded fan-out."""

    def __init__(self, client: Any | None = None, concurrency: int = 20) -> None:
        super().__init__(client)
        self.concurrency = max(1, concurrency)

    @abstractmethod
    def build_payload(self, notification: NotificationRequest, silent: bool) -> Any:
        raise NotImplementedError

    @abstractmethod
    async def deliver(
        self,
        token: DeviceToken,
        payload: Any,
        notification: NotificationRequest,
        silent: bool,
    ) -> TokenOutcome:
        raise NotImplementedError

    async def _send(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> BatchResult:
        payload = self.build_payload(notification, silent)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(token: DeviceToken) -> TokenOutcome:
            async with semaphore:
                try:
                    return await self.deliver(token, payload, notification, silent)
                except Exception:
                    # Unclassified errors stay scoped to the one token.
                    logger.exception(
                        "Push delivery raised an unexpected error",
                        extra={"provider": self.name, "user_id": token.user_id},
                    )
                    return TokenOutcome.FAILED

        outcomes = await asyncio.gather(*(bounded(token) for token in tokens))
        return BatchResult.from_outcomes(tokens, list(outcomes))


class MulticastNotificationProvider(BaseNotificationProvider):
    """Provider with a batch endpoint returning one positional result per token."""

    batch_errors: tuple[type[BaseException], ...] = (httpx.HTTPError,)

    @property
    def max_batch_size(self) -> int:
        return int(getattr(self.client, "max_batch_size", 500))

    @abstractmethod
    async def call(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> list[dict]:
        raise NotImplementedError

    @abstractmethod
    def classify(self, result: dict) -> TokenOutcome:
        raise NotImplementedError

    def attribute(self, tokens: list[DeviceToken], results: list[dict]) -> BatchResult:
        """Zip provider results against the input order, position by position."""
        if len(results) != len(tokens):
            logger.warning(
                "Push provider returned a result count that does not match the batch",
                extra={"provider": self.name, "tokens": len(tokens), "results": len(results)},
            )
        outcomes: list[TokenOutcome] = []
        for index in range(len(tokens)):
            result = results[index] if index < len(results) else None
            outcomes.append(self.classify(result) if isinstance(result, dict) else TokenOutcome.FAILED)
        return BatchResult.from_outcomes(tokens, outcomes)

    async def _send(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> BatchResult:
        total = BatchResult()
        step = max(1, self.max_batch_size)
        for start in range(0, len(tokens), step):
            chunk = tokens[start : start + step]
            try:
                results = await self.call(chunk, notification, silent)
            except self.batch_errors as exc:
                logger.error(
                    "Push multicast call failed",
                    extra={"provider": self.name, "tokens": len(chunk), "error": str(exc)},
                )
                total = total + BatchResult(failed=len(chunk))
                continue
            total = total + self.attribute(chunk, results)
        return total


class APNSNotificationProvider(PerTokenNotificationProvider):
    name = "apns"
    platform = Platform.APPLE

    def build_payload(self, notification: NotificationRequest, silent: bool) -> dict:
        return build_apns_payload(notification, silent)

    async def deliver(
        self,
        token: DeviceToken,
        payload: dict,
        notification: NotificationRequest,
        silent: bool,
    ) -> TokenOutcome:
        expiration = int(time.time()) + notification.ttl if notification.ttl else 0
        try:
            await self.client.send(
                token.token,
                payload,
                push_type="background" if silent else "alert",
                priority=apns_priority(notification, silent),
                expiration=expiration,
                collapse_id=notification.collapse_key,
            )
        except ApnsError as exc:
            if exc.status_code == 410 or exc.reason in APNS_INVALID_REASONS:
                return TokenOutcome.INVALID
            logger.warning("APNs delivery failed", extra={"status": exc.status_code, "reason": exc.reason})
            return TokenOutcome.FAILED
        except httpx.HTTPError as exc:
            logger.warning("APNs request error", extra={"error": str(exc)})
            return TokenOutcome.FAILED
        return TokenOutcome.SENT


class WebPushNotificationProvider(PerTokenNotificationProvider):
    name = "webpush"
    platform = Platform.WEB

    def build_payload(self, notification: NotificationRequest, silent: bool) -> str:
        return build_web_payload(notification, silent)

    async def deliver(
        self,
        token: DeviceToken,
        payload: str,
        notification: NotificationRequest,
        silent: bool,
    ) -> TokenOutcome:
        if not token.auth_keys:
            logger.warning("Web push subscription has no auth keys", extra={"user_id": token.user_id})
            return TokenOutcome.FAILED
        try:
            await self.client.send(token.token, token.auth_keys, payload, ttl=notification.ttl)
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            status = getattr(response, "status_code", None)
            if status in WEB_PUSH_GONE_STATUSES:
                return TokenOutcome.INVALID
            logger.warning("Web push delivery failed", extra={"status": status, "error": str(exc)})
            return TokenOutcome.FAILED
        except (httpx.HTTPError, OSError) as exc:
            # requests' connection errors are OSError subclasses.
            logger.warning("Web push request error", extra={"error": str(exc)})
            return TokenOutcome.FAILED
        return TokenOutcome.SENT


class FCMNotificationProvider(MulticastNotificationProvider):
    name = "fcm"
    platform = Platform.FIREBASE
    batch_errors = (FcmError, httpx.HTTPError)

    async def call(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> list[dict]:
        message = build_fcm_message(notification, silent)
        return await self.client.send_multicast([t.token for t in tokens], message)

    def classify(self, result: dict) -> TokenOutcome:
        if result.get("success") is True:
            return TokenOutcome.SENT
        error = result.get("error")
        code = error.get("code") if isinstance(error, dict) else None
        if code in FCM_INVALID_CODES:
            return TokenOutcome.INVALID
        return TokenOutcome.FAILED


class ExpoNotificationProvider(MulticastNotificationProvider):
    name = "expo"
    platform = Platform.RELAY
    batch_errors = (ExpoError, httpx.HTTPError)

    async def call(self, tokens: list[DeviceToken], notification: NotificationRequest, silent: bool) -> list[dict]:
        messages = [build_relay_message(t.token, notification, silent) for t in tokens]
        return await self.client.send_batch(messages)

    def classify(self, result: dict) -> TokenOutcome:
        if result.get("status") == "ok":
            return TokenOutcome.SENT
        details = result.get("details")
        if isinstance(details, dict) and details.get("error") in EXPO_INVALID_ERRORS:
            return TokenOutcome.INVALID
        return TokenOutcome.FAILED


def build_providers(settings: Settings | None = None) -> dict[Platform, BaseNotificationProvider]:
    """Build one provider per platform; unconfigured ones get no client."""
    settings = settings or get_settings()
    timeout = settings.push_http_timeout_seconds

    apns_client = None
    if settings.apns_key_id and settings.apns_team_id and settings.apns_bundle_id and settings.apns_private_key:
        apns_client = ApnsClient(
            key_id=settings.apns_key_id,
            team_id=settings.apns_team_id,
            bundle_id=settings.apns_bundle_id,
            private_key=settings.apns_private_key,
            use_sandbox=settings.apns_use_sandbox,
            timeout_seconds=timeout,
        )

    fcm_client = None
    if settings.fcm_project_id and settings.fcm_service_account_file:
        if Path(settings.fcm_service_account_file).is_file():
            fcm_client = FcmClient(
                project_id=settings.fcm_project_id,
                service_account=load_service_account(settings.fcm_service_account_file),
                timeout_seconds=timeout,
            )
        else:
            logger.warning(
                "FCM service account file not found",
                extra={"path": settings.fcm_service_account_file},
            )

    web_client = None
    if settings.vapid_private_key:
        web_client = WebPushClient(settings.vapid_private_key, settings.vapid_subject, timeout_seconds=timeout)

    concurrency = settings.push_per_token_concurrency
    return {
        Platform.APPLE: APNSNotificationProvider(apns_client, concurrency=concurrency),
        Platform.FIREBASE: FCMNotificationProvider(fcm_client),
        # Expo accepts unauthenticated sends, so the relay is always available.
        Platform.RELAY: ExpoNotificationProvider(ExpoClient(settings.expo_access_token, timeout_seconds=timeout)),
        Platform.WEB: WebPushNotificationProvider(web_client, concurrency=concurrency),
    }
