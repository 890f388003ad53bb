from __future__ import annotations

import httpx

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_RECEIPTS_URL = "https://exp.host/--/api/v2/push/getReceipts"


class ExpoError(Exception):
    pass


class ExpoClient:
    """Client for the Expo push relay; one request carries up to 100 messages."""

    max_batch_size = 100

    def __init__(
        self,
        access_token: str = "",
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Accept-Encoding": "gzip, deflate"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _post(self, url: str, body) -> dict:
        resp = await self.http_client.post(url, json=body, headers=self._headers())
        try:
            data = resp.json()
        except ValueError as exc:
            raise ExpoError(f"Expo returned non-JSON response ({resp.status_code})") from exc
        if resp.status_code >= 400:
            raise ExpoError(f"Expo request failed ({resp.status_code}): {data}")
        if not isinstance(data, dict):
            raise ExpoError("Expo response is not an object")
        return data

    async def send_batch(self, messages: list[dict]) -> list[dict]:
        """Return one ticket per message, in message order."""
        if len(messages) > self.max_batch_size:
            raise ValueError(f"Expo accepts at most {self.max_batch_size} messages per request")
        data = (await self._post(EXPO_PUSH_URL, messages)).get("data")
        if not isinstance(data, list):
            raise ExpoError("Expo response is missing the ticket list")
        return data

    async def get_receipts(self, ticket_ids: list[str]) -> dict[str, dict]:
        if not ticket_ids:
            return {}
        data = (await self._post(EXPO_RECEIPTS_URL, {"ids": ticket_ids})).get("data")
        return data if isinstance(data, dict) else {}

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
