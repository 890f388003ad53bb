from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import httpx
from jose import jwt

FCM_BASE_URL = "https://fcm.googleapis.com/v1/projects"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Refresh the OAuth access token this many seconds before Google expires it.
TOKEN_BUFFER_SECONDS = 300

FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"


class FcmError(Exception):
    pass


def load_service_account(path: str) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def error_code(body: dict, status_code: int) -> str:
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return f"HTTP_{status_code}"
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("@type") == FCM_ERROR_TYPE and detail.get("errorCode"):
            return str(detail["errorCode"])
    return str(error.get("status") or f"HTTP_{status_code}")


class FcmClient:
    """Firebase Cloud Messaging HTTP v1 client.

    The v1 API has no multicast endpoint, so ``send_multicast`` issues one
    ``messages:send`` call per token concurrently and returns the per-token
    results in the same order as the input tokens. A result is either
    ``{"success": True, "name": ...}`` or
    ``{"success": False, "error": {"code": ..., "message": ...}}``.
    """

    max_batch_size = 500

    def __init__(
        self,
        project_id: str,
        service_account: dict,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.project_id = project_id
        self.service_account = service_account
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    @property
    def send_url(self) -> str:
        return f"{FCM_BASE_URL}/{self.project_id}/messages:send"

    async def access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._expires_at:
                return self._access_token

            token_uri = self.service_account.get("token_uri") or DEFAULT_TOKEN_URI
            now = int(time.time())
            assertion = jwt.encode(
                {
                    "iss": self.service_account.get("client_email"),
                    "scope": FCM_SCOPE,
                    "aud": token_uri,
                    "iat": now,
                    "exp": now + 3600,
                },
                self.service_account.get("private_key"),
                algorithm="RS256",
                headers={"kid": self.service_account.get("private_key_id")},
            )
            resp = await self.http_client.post(
                token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
            if resp.status_code != 200:
                raise FcmError(f"OAuth token request failed ({resp.status_code}): {resp.text}")

            body = resp.json()
            expires_in = int(body.get("expires_in", 3600))
            self._access_token = body["access_token"]
            self._expires_at = time.monotonic() + max(0, expires_in - TOKEN_BUFFER_SECONDS)
            return self._access_token

    async def _send_one(self, token: str, message: dict, access_token: str) -> dict:
        body = {"message": {**message, "token": token}}
        try:
            resp = await self.http_client.post(
                self.send_url,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            return {"success": False, "error": {"code": "UNAVAILABLE", "message": str(exc)}}

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if resp.status_code == 200:
            return {"success": True, "name": payload.get("name")}
        error = payload.get("error")
        message_text = error.get("message") if isinstance(error, dict) else None
        return {
            "success": False,
            "error": {"code": error_code(payload, resp.status_code), "message": message_text or resp.text},
        }

    async def send_multicast(self, tokens: list[str], message: dict) -> list[dict]:
        if len(tokens) > self.max_batch_size:
            raise ValueError(f"FCM multicast accepts at most {self.max_batch_size} tokens")
        if not tokens:
            return []
        access_token = await self.access_token()
        return list(await asyncio.gather(*(self._send_one(token, message, access_token) for token in tokens)))

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
