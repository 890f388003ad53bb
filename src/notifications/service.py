from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from src.config import settings
from src.models.notification import DeviceToken, DispatchOptions, DispatchOutcome, NotificationRequest
from src.notifications.batching import partition, unique_in_order
from src.notifications.cleanup import InvalidTokenCollector
from src.notifications.platforms import Platform
from src.notifications.providers import BaseNotificationProvider, BatchResult, build_providers
from src.notifications.telemetry import DispatchEvent, PlatformSendEvent, TelemetryEmitter
from src.storage.repository import TokenRepository

logger = logging.getLogger(__name__)


def group_by_platform(tokens: Sequence[DeviceToken]) -> dict[Platform, list[DeviceToken]]:
    """Group tokens per platform, keeping their relative order."""
    grouped: dict[Platform, list[DeviceToken]] = {}
    for token in tokens:
        grouped.setdefault(token.platform, []).append(token)
    return grouped


class PushDispatcher:
    """Delivers a notification to every active device of the target users.

    Each call resolves tokens, groups them per platform and runs one task per
    platform concurrently under an overall deadline. A branch that raises or
    misses the deadline counts all of its tokens as failed and none as
    invalid. Invalid tokens are handed to the collector without waiting.
    """

    def __init__(
        self,
        repository: TokenRepository | None = None,
        providers: Mapping[Platform, BaseNotificationProvider] | None = None,
        collector: InvalidTokenCollector | None = None,
        telemetry: TelemetryEmitter | None = None,
        batch_size: int | None = None,
        batch_delay_ms: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.repository = repository or TokenRepository()
        self.providers = dict(providers if providers is not None else build_providers())
        missing = [p.value for p in Platform if p not in self.providers]
        if missing:
            raise ValueError(f"No push provider registered for: {', '.join(missing)}")
        self.collector = collector or InvalidTokenCollector(self.repository)
        self.telemetry = telemetry or TelemetryEmitter()
        self.batch_size = settings.push_batch_size if batch_size is None else batch_size
        self.batch_delay_ms = settings.push_batch_delay_ms if batch_delay_ms is None else batch_delay_ms
        self.timeout_seconds = settings.push_dispatch_timeout_seconds if timeout_seconds is None else timeout_seconds
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.batch_delay_ms < 0:
            raise ValueError("batch_delay_ms must not be negative")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @property
    def stats(self) -> dict:
        return self.telemetry.stats.snapshot()

    async def send(
        self,
        user_id: str,
        notification: NotificationRequest,
        options: DispatchOptions | None = None,
    ) -> DispatchOutcome:
        options = options or DispatchOptions()
        tokens = await asyncio.to_thread(
            self.repository.resolve,
            user_id,
            options.platforms,
            options.exclude_device_ids,
        )
        if not tokens:
            logger.debug("No push tokens for user", extra={"user_id": user_id})
        outcome = await self._fan_out(tokens, notification, self._is_silent(notification, options))
        self._finish(outcome)
        return outcome

    async def broadcast(
        self,
        user_ids: Sequence[str],
        notification: NotificationRequest,
        options: DispatchOptions | None = None,
    ) -> DispatchOutcome:
        options = options or DispatchOptions()
        silent = self._is_silent(notification, options)
        chunks = partition(unique_in_order(user_ids), self.batch_size)

        outcome = DispatchOutcome()
        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(self.batch_delay_ms / 1000)
            try:
                tokens = await asyncio.to_thread(
                    self.repository.resolve,
                    chunk,
                    options.platforms,
                    options.exclude_device_ids,
                )
            except SQLAlchemyError:
                logger.exception(
                    "Push token lookup failed for broadcast chunk",
                    extra={"chunk": index, "users": len(chunk)},
                )
                continue
            outcome = outcome.merge(await self._fan_out(tokens, notification, silent))

        self._finish(outcome)
        return outcome

    async def send_to_members(
        self,
        member_ids: Sequence[str],
        notification: NotificationRequest,
        options: DispatchOptions | None = None,
    ) -> DispatchOutcome:
        """Send to already resolved conversation or group members."""
        return await self.broadcast(member_ids, notification, options)

    async def send_silent(
        self,
        user_id: str,
        data: dict[str, Any],
        options: DispatchOptions | None = None,
    ) -> DispatchOutcome:
        options = (options or DispatchOptions()).model_copy(update={"silent": True})
        return await self.send(user_id, NotificationRequest.silent_data(data), options)

    @staticmethod
    def _is_silent(notification: NotificationRequest, options: DispatchOptions) -> bool:
        return options.silent or notification.silent

    def _finish(self, outcome: DispatchOutcome) -> None:
        if outcome.invalid_tokens:
            try:
                self.collector.cleanup(outcome.invalid_tokens)
            except Exception:
                logger.exception("Could not schedule invalid push token cleanup")
        self.telemetry.emit_dispatch(
            DispatchEvent(
                sent=outcome.sent,
                failed=outcome.failed,
                invalid=len(outcome.invalid_tokens),
                failed_platforms=tuple(outcome.failed_platforms),
            )
        )

    async def _run_platform(
        self,
        platform: Platform,
        tokens: list[DeviceToken],
        notification: NotificationRequest,
        silent: bool,
    ) -> tuple[BatchResult, str]:
        provider = self.providers[platform]
        started = time.perf_counter()
        try:
            result = await provider.send_batch(tokens, notification, silent)
            branch_outcome = "ok"
        except Exception:
            logger.exception(
                "Push platform batch failed",
                extra={"platform": platform.value, "tokens": len(tokens)},
            )
            result = BatchResult(failed=len(tokens))
            branch_outcome = "error"
        self._emit_platform(platform, result, started, branch_outcome)
        return result, branch_outcome

    def _emit_platform(self, platform: Platform, result: BatchResult, started: float, branch_outcome: str) -> None:
        self.telemetry.emit_platform(
            PlatformSendEvent(
                platform=platform.value,
                sent=result.sent,
                failed=result.failed,
                invalid=len(result.invalid_tokens),
                duration_ms=(time.perf_counter() - started) * 1000,
                outcome=branch_outcome,
            )
        )

    async def _fan_out(
        self,
        tokens: Sequence[DeviceToken],
        notification: NotificationRequest,
        silent: bool,
    ) -> DispatchOutcome:
        grouped = group_by_platform(tokens)
        if not grouped:
            return DispatchOutcome()

        started = time.perf_counter()
        tasks = {
            platform: asyncio.create_task(self._run_platform(platform, batch, notification, silent))
            for platform, batch in grouped.items()
        }
        done, pending = await asyncio.wait(tasks.values(), timeout=self.timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        sent = failed = 0
        invalid: list[str] = []
        failed_platforms: list[str] = []
        for platform, task in tasks.items():
            if task in done and not task.cancelled():
                result, branch_outcome = task.result()
                if branch_outcome != "ok":
                    failed_platforms.append(platform.value)
            else:
                logger.error(
                    "Push platform batch timed out",
                    extra={"platform": platform.value, "tokens": len(grouped[platform])},
                )
                result = BatchResult(failed=len(grouped[platform]))
                failed_platforms.append(platform.value)
                self._emit_platform(platform, result, started, "timeout")
            sent += result.sent
            failed += result.failed
            invalid.extend(result.invalid_tokens)

        return DispatchOutcome(
            sent=sent,
            failed=failed,
            invalid_tokens=list(dict.fromkeys(invalid)),
            failed_platforms=sorted(failed_platforms),
        )
