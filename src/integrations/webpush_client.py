from __future__ import annotations

import asyncio

from pywebpush import webpush


class WebPushClient:
    """VAPID-authenticated Web Push sender built on pywebpush.

    pywebpush is synchronous, so each send runs in a worker thread.
    ``WebPushException`` propagates to the caller with its ``response``.
    """

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout_seconds: float = 10.0) -> None:
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject if vapid_subject.startswith(("mailto:", "https://")) else f"mailto:{vapid_subject}"
        self.timeout_seconds = timeout_seconds

    def _send_sync(self, endpoint: str, auth_keys: dict[str, str], payload: str, ttl: int) -> int:
        response = webpush(
            subscription_info={
                "endpoint": endpoint,
                "keys": {"p256dh": auth_keys["p256dh"], "auth": auth_keys["auth"]},
            },
            data=payload,
            vapid_private_key=self.vapid_private_key,
            vapid_claims={"sub": self.vapid_subject},
            ttl=ttl,
            timeout=self.timeout_seconds,
        )
        return int(getattr(response, "status_code", 201))

    async def send(self, endpoint: str, auth_keys: dict[str, str], payload: str, ttl: int = 86400) -> int:
        return await asyncio.to_thread(self._send_sync, endpoint, auth_keys, payload, ttl)
