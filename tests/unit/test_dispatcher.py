from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from src.models.notification import DeviceToken, DispatchOptions, NotificationRequest
from src.notifications.batching import partition, unique_in_order
from src.notifications.platforms import Platform
from src.notifications.providers import BatchResult
from src.notifications.service import PushDispatcher
from src.notifications.telemetry import PushStats, TelemetryEmitter

HELLO = NotificationRequest(title="Hi", body="There")
WEB_KEYS = {"p256dh": "BPub", "auth": "secret"}


def _register_all_platforms(repository, user_id: str = "u1") -> None:
    repository.register(user_id, f"{user_id}-apple", "apple", device_id="phone")
    repository.register(user_id, f"{user_id}-fcm", "firebase", device_id="tablet")
    repository.register(user_id, f"ExponentPushToken[{user_id}]", "relay", device_id="expo")
    repository.register(user_id, f"https://push.example/{user_id}", "web", auth_keys=WEB_KEYS)


def test_send_to_apple_and_firebase_then_prune_unregistered_token(dispatcher, providers, repository, collector) -> None:
    repository.register("u1", "apple-token", "apple", device_id="phone")
    repository.register("u1", "fcm-token", "firebase", device_id="tablet")

    first = asyncio.run(dispatcher.send("u1", HELLO))
    assert (first.sent, first.failed, first.invalid_tokens) == (2, 0, [])

    providers[Platform.FIREBASE].script = lambda tokens, _: BatchResult(invalid_tokens=[t.token for t in tokens])
    second = asyncio.run(dispatcher.send("u1", HELLO))
    collector.join()

    assert (second.sent, second.failed) == (1, 0)
    assert second.invalid_tokens == ["fcm-token"]
    assert [t.token for t in repository.resolve("u1")] == ["apple-token"]


def test_sent_plus_failed_covers_every_token_without_invalid_detections(dispatcher, providers, repository) -> None:
    _register_all_platforms(repository)
    providers[Platform.APPLE].script = lambda tokens, _: BatchResult(failed=len(tokens))
    providers[Platform.WEB].script = lambda tokens, _: BatchResult(failed=len(tokens))

    outcome = asyncio.run(dispatcher.send("u1", HELLO))

    assert outcome.sent + outcome.failed == 4
    assert (outcome.sent, outcome.failed) == (2, 2)
    assert outcome.failed_platforms == []


def test_firebase_transport_error_does_not_affect_other_platforms(dispatcher, providers, repository) -> None:
    _register_all_platforms(repository)

    def explode(tokens, _):
        raise RuntimeError("connection reset by peer")

    providers[Platform.FIREBASE].script = explode

    outcome = asyncio.run(dispatcher.send("u1", HELLO))

    assert outcome.sent == 3
    assert outcome.failed == 1
    assert outcome.invalid_tokens == []
    assert outcome.failed_platforms == ["firebase"]
    for platform in (Platform.APPLE, Platform.RELAY, Platform.WEB):
        assert len(providers[platform].calls) == 1


def test_branch_past_the_deadline_counts_as_failed(repository, providers, collector, telemetry) -> None:
    _register_all_platforms(repository)
    providers[Platform.WEB].delay = 5.0
    events: list[tuple[str, dict]] = []
    telemetry.add_sink(lambda name, payload: events.append((name, payload)))
    dispatcher = PushDispatcher(
        repository=repository,
        providers=providers,
        collector=collector,
        telemetry=telemetry,
        timeout_seconds=0.2,
    )

    outcome = asyncio.run(dispatcher.send("u1", HELLO))

    assert (outcome.sent, outcome.failed, outcome.invalid_tokens) == (3, 1, [])
    assert outcome.failed_platforms == ["web"]
    timeouts = [payload for name, payload in events if name == "platform_send" and payload["outcome"] == "timeout"]
    assert [payload["platform"] for payload in timeouts] == ["web"]


def test_options_filter_platforms_and_devices(dispatcher, providers, repository) -> None:
    _register_all_platforms(repository)

    outcome = asyncio.run(
        dispatcher.send("u1", HELLO, DispatchOptions(platforms=["ios", "android"], exclude_device_ids=["tablet"]))
    )

    assert outcome.sent == 1
    assert len(providers[Platform.APPLE].calls) == 1
    assert providers[Platform.FIREBASE].calls == []


def test_send_silent_marks_every_branch_silent(dispatcher, providers, repository) -> None:
    _register_all_platforms(repository)

    outcome = asyncio.run(dispatcher.send_silent("u1", {"sync": "inbox"}))

    assert outcome.sent == 4
    for provider in providers.values():
        (tokens, notification, silent), = provider.calls
        assert silent is True
        assert notification.data == {"sync": "inbox"}


def test_user_without_tokens_gets_empty_outcome(dispatcher, providers, telemetry) -> None:
    outcome = asyncio.run(dispatcher.send("nobody", HELLO))

    assert (outcome.sent, outcome.failed) == (0, 0)
    assert all(provider.calls == [] for provider in providers.values())
    assert telemetry.stats.snapshot()["dispatches"] == 1


def test_telemetry_emits_one_aggregate_and_one_event_per_platform(dispatcher, repository, telemetry) -> None:
    repository.register("u1", "apple-token", "apple", device_id="phone")
    repository.register("u1", "fcm-token", "firebase", device_id="tablet")
    events: list[tuple[str, dict]] = []
    telemetry.add_sink(lambda name, payload: events.append((name, payload)))

    asyncio.run(dispatcher.send("u1", HELLO))

    names = [name for name, _ in events]
    assert names.count("push_sent") == 1
    assert sorted(p["platform"] for n, p in events if n == "platform_send") == ["apple", "firebase"]
    assert all(p["duration_ms"] >= 0 for n, p in events if n == "platform_send")
    snapshot = telemetry.stats.snapshot()
    assert snapshot["sent"] == 2
    assert snapshot["by_platform"]["apple"]["sent"] == 1


def test_failing_sink_does_not_break_dispatch(dispatcher, repository, telemetry) -> None:
    repository.register("u1", "apple-token", "apple", device_id="phone")

    def broken_sink(name, payload):
        raise RuntimeError("metrics backend down")

    telemetry.add_sink(broken_sink)

    assert asyncio.run(dispatcher.send("u1", HELLO)).sent == 1


class ChunkRepository:
    """Resolves one firebase token per user without touching a database."""

    def __init__(self) -> None:
        self.resolved_chunks: list[list[str]] = []

    def resolve(self, user_ids, platforms=None, exclude_device_ids=None):
        ids = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        self.resolved_chunks.append(ids)
        return [
            DeviceToken(
                id=index,
                user_id=user_id,
                token=f"fcm-{user_id}",
                platform=Platform.FIREBASE,
                device_id=None,
                auth_keys=None,
                active=True,
                updated_at=datetime(2026, 1, 1),
            )
            for index, user_id in enumerate(ids)
        ]

    def deactivate_many(self, tokens):
        return 0


def test_broadcast_chunks_targets_and_isolates_a_failed_chunk(providers, collector) -> None:
    repository = ChunkRepository()

    def second_call_fails(tokens, call_number):
        if call_number == 2:
            raise ConnectionError("provider unavailable")
        return BatchResult(sent=len(tokens))

    providers[Platform.FIREBASE].script = second_call_fails
    telemetry = TelemetryEmitter(PushStats())
    dispatcher = PushDispatcher(
        repository=repository,
        providers=providers,
        collector=collector,
        telemetry=telemetry,
        batch_size=500,
        batch_delay_ms=1,
    )
    user_ids = [f"user-{n}" for n in range(1200)]

    outcome = asyncio.run(dispatcher.broadcast(user_ids, HELLO))

    assert [len(chunk) for chunk in repository.resolved_chunks] == [500, 500, 200]
    assert outcome.sent == 700
    assert outcome.failed == 500
    assert outcome.failed_platforms == ["firebase"]
    assert telemetry.stats.snapshot()["dispatches"] == 1


def test_broadcast_deduplicates_targets(dispatcher, providers, repository) -> None:
    repository.register("u1", "apple-u1", "apple", device_id="phone")
    repository.register("u2", "apple-u2", "apple", device_id="phone")

    outcome = asyncio.run(dispatcher.send_to_members(["u1", "u2", "u1"], HELLO))

    assert outcome.sent == 2
    (tokens, _, _), = providers[Platform.APPLE].calls
    assert sorted(t.token for t in tokens) == ["apple-u1", "apple-u2"]


def test_dispatcher_requires_a_provider_for_every_platform(repository, providers) -> None:
    del providers[Platform.WEB]

    with pytest.raises(ValueError, match="web"):
        PushDispatcher(repository=repository, providers=providers)


def test_partition_keeps_order_and_rejects_bad_sizes() -> None:
    assert partition(["a", "b", "c"], 2) == [["a", "b"], ["c"]]
    assert partition([], 500) == []
    assert unique_in_order(["b", "a", "b", ""]) == ["b", "a"]
    with pytest.raises(ValueError):
        partition(["a"], 0)


@pytest.mark.parametrize(
    ("field", "value"),
    [("batch_size", 0), ("timeout_seconds", 0), ("batch_delay_ms", -1)],
)
def test_dispatcher_rejects_explicit_out_of_range_limits(repository, providers, field, value) -> None:
    with pytest.raises(ValueError, match=field):
        PushDispatcher(repository=repository, providers=providers, **{field: value})


def test_dispatcher_keeps_explicit_limits(repository, providers) -> None:
    dispatcher = PushDispatcher(
        repository=repository,
        providers=providers,
        batch_size=7,
        batch_delay_ms=0,
        timeout_seconds=0.5,
    )

    assert (dispatcher.batch_size, dispatcher.batch_delay_ms, dispatcher.timeout_seconds) == (7, 0, 0.5)
