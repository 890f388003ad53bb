"""Dispatch telemetry.

Two event shapes leave this module: one ``DispatchEvent`` per top-level
dispatch call and one ``PlatformSendEvent`` per platform branch that ran.
Events are logged and handed to any registered sinks (for example a metrics
exporter). Running totals live in a ``PushStats`` object owned by whoever
builds the dispatcher.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

BranchOutcome = Literal["ok", "error", "timeout"]


@dataclass(frozen=True)
class DispatchEvent:
    sent: int
    failed: int
    invalid: int = 0
    failed_platforms: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlatformSendEvent:
    platform: str
    sent: int
    failed: int
    duration_ms: float
    invalid: int = 0
    outcome: BranchOutcome = "ok"


TelemetrySink = Callable[[str, dict], None]


@dataclass
class _PlatformCounters:
    sent: int = 0
    failed: int = 0
    invalid: int = 0
    platform_failures: int = 0


@dataclass
class PushStats:
    sent: int = 0
    failed: int = 0
    invalid: int = 0
    dispatches: int = 0
    by_platform: dict[str, _PlatformCounters] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_dispatch(self, event: DispatchEvent) -> None:
        with self._lock:
            self.dispatches += 1
            self.sent += event.sent
            self.failed += event.failed
            self.invalid += event.invalid

    def record_platform(self, event: PlatformSendEvent) -> None:
        with self._lock:
            counters = self.by_platform.setdefault(event.platform, _PlatformCounters())
            counters.sent += event.sent
            counters.failed += event.failed
            counters.invalid += event.invalid
            if event.outcome != "ok":
                counters.platform_failures += 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "dispatches": self.dispatches,
                "sent": self.sent,
                "failed": self.failed,
                "invalid": self.invalid,
                "by_platform": {name: asdict(c) for name, c in sorted(self.by_platform.items())},
            }


class TelemetryEmitter:
    def __init__(self, stats: PushStats | None = None, sinks: list[TelemetrySink] | None = None) -> None:
        self.stats = stats if stats is not None else PushStats()
        self.sinks: list[TelemetrySink] = list(sinks or [])

    def add_sink(self, sink: TelemetrySink) -> None:
        self.sinks.append(sink)

    def _forward(self, name: str, payload: dict) -> None:
        for sink in self.sinks:
            try:
                sink(name, payload)
            except Exception:
                logger.exception("Telemetry sink failed", extra={"event": name})

    def emit_dispatch(self, event: DispatchEvent) -> None:
        self.stats.record_dispatch(event)
        logger.info(
            "Push dispatch completed",
            extra={
                "sent": event.sent,
                "failed": event.failed,
                "invalid": event.invalid,
                "failed_platforms": list(event.failed_platforms),
            },
        )
        self._forward("push_sent", asdict(event))

    def emit_platform(self, event: PlatformSendEvent) -> None:
        self.stats.record_platform(event)
        log = logger.warning if event.outcome != "ok" else logger.info
        log(
            "Push platform branch finished",
            extra={
                "platform": event.platform,
                "sent": event.sent,
                "failed": event.failed,
                "invalid": event.invalid,
                "duration_ms": round(event.duration_ms, 2),
                "outcome": event.outcome,
            },
        )
        self._forward("platform_send", asdict(event))
