from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.notifications.platforms import Platform, normalize_platform


Priority = Literal["high", "normal", "low"]


class NotificationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = ""
    body: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    badge: int | None = Field(default=None, ge=0)
    sound: str | None = None
    category: str | None = None
    image_url: str | None = None
    thread_id: str | None = None
    collapse_key: str | None = None
    priority: Priority = "high"
    ttl: int = Field(default=86400, ge=0)
    silent: bool = False

    @model_validator(mode="after")
    def _visible_alert_needs_text(self) -> "NotificationRequest":
        if not self.silent and not (self.title or self.body):
            raise ValueError("A visible notification needs a title or a body")
        return self

    @classmethod
    def silent_data(cls, data: dict[str, Any]) -> "NotificationRequest":
        return cls(data=dict(data), silent=True, priority="normal")


class DispatchOptions(BaseModel):
    silent: bool = False
    platforms: list[Platform] | None = None
    exclude_device_ids: list[str] = Field(default_factory=list)

    @field_validator("platforms", mode="before")
    @classmethod
    def _normalize_platforms(cls, value):
        if value is None:
            return None
        return [normalize_platform(item) for item in value]


class DispatchOutcome(BaseModel):
    sent: int = 0
    failed: int = 0
    invalid_tokens: list[str] = Field(default_factory=list)
    failed_platforms: list[str] = Field(default_factory=list)

    def merge(self, other: "DispatchOutcome") -> "DispatchOutcome":
        return DispatchOutcome(
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            invalid_tokens=[*self.invalid_tokens, *other.invalid_tokens],
            failed_platforms=sorted({*self.failed_platforms, *other.failed_platforms}),
        )


class TokenRegistration(BaseModel):
    user_id: str = Field(min_length=1)
    token: str = Field(min_length=1)
    platform: str
    device_id: str | None = None
    auth_keys: dict[str, str] | None = None


class TokenUnregistration(BaseModel):
    token: str = Field(min_length=1)


class SendRequest(BaseModel):
    user_id: str = Field(min_length=1)
    notification: NotificationRequest
    options: DispatchOptions = Field(default_factory=DispatchOptions)


class BroadcastRequest(BaseModel):
    user_ids: list[str]
    notification: NotificationRequest
    options: DispatchOptions = Field(default_factory=DispatchOptions)


class SilentPushRequest(BaseModel):
    user_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class DeviceTokenView(BaseModel):
    user_id: str
    token: str
    platform: Platform
    device_id: str | None = None
    active: bool
    updated_at: datetime


@dataclass(frozen=True)
class DeviceToken:
    """Read-only snapshot of a push_tokens row handed to the senders."""

    id: int
    user_id: str
    token: str
    platform: Platform
    device_id: str | None
    auth_keys: dict[str, str] | None
    active: bool
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "DeviceToken":
        return cls(
            id=row.id,
            user_id=row.user_id,
            token=row.token,
            platform=normalize_platform(row.platform),
            device_id=row.device_id,
            auth_keys=dict(row.auth_keys) if row.auth_keys else None,
            active=bool(row.is_active),
            updated_at=row.updated_at,
        )

    def as_view(self) -> DeviceTokenView:
        return DeviceTokenView(
            user_id=self.user_id,
            token=self.token,
            platform=self.platform,
            device_id=self.device_id,
            active=self.active,
            updated_at=self.updated_at,
        )
