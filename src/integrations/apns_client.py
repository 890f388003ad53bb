from __future__ import annotations

import threading
import time

import httpx
from jose import jwt

PRODUCTION_HOST = "https://api.push.apple.com"
SANDBOX_HOST = "https://api.sandbox.push.apple.com"

# Apple rejects provider tokens older than one hour.
TOKEN_REFRESH_SECONDS = 50 * 60


class ApnsError(Exception):
    def __init__(self, status_code: int, reason: str | None = None) -> None:
        super().__init__(f"APNs rejected notification ({status_code}): {reason or 'unknown'}")
        self.status_code = status_code
        self.reason = reason


class ApnsClient:
    """HTTP/2 client for the APNs provider API using token-based auth."""

    def __init__(
        self,
        key_id: str,
        team_id: str,
        bundle_id: str,
        private_key: str,
        use_sandbox: bool = False,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.key_id = key_id
        self.team_id = team_id
        self.bundle_id = bundle_id
        self.private_key = private_key
        self.base_url = SANDBOX_HOST if use_sandbox else PRODUCTION_HOST
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._token: str | None = None
        self._token_issued_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(http2=True, timeout=self.timeout_seconds)
        return self._http_client

    def provider_token(self) -> str:
        with self._token_lock:
            now = time.time()
            if self._token is None or now - self._token_issued_at >= TOKEN_REFRESH_SECONDS:
                self._token = jwt.encode(
                    {"iss": self.team_id, "iat": int(now)},
                    self.private_key,
                    algorithm="ES256",
                    headers={"kid": self.key_id},
                )
                self._token_issued_at = now
            return self._token

    async def send(
        self,
        device_token: str,
        payload: dict,
        *,
        push_type: str = "alert",
        priority: str = "10",
        expiration: int | None = None,
        collapse_id: str | None = None,
    ) -> str:
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": push_type,
            "apns-priority": priority,
        }
        if expiration is not None:
            headers["apns-expiration"] = str(expiration)
        if collapse_id:
            headers["apns-collapse-id"] = collapse_id[:64]

        resp = await self.http_client.post(
            f"{self.base_url}/3/device/{device_token}",
            json=payload,
            headers=headers,
        )
        if resp.status_code == 200:
            return resp.headers.get("apns-id", "")

        reason = None
        try:
            reason = resp.json().get("reason")
        except ValueError:
            pass
        if resp.status_code == 403 and reason == "ExpiredProviderToken":
            with self._token_lock:
                self._token = None
        raise ApnsError(resp.status_code, reason)

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
