from __future__ import annotations

from enum import Enum


class Platform(str, Enum):
    APPLE = "apple"
    FIREBASE = "firebase"
    RELAY = "relay"
    WEB = "web"


_ALIASES: dict[str, Platform] = {
    "apple": Platform.APPLE,
    "apns": Platform.APPLE,
    "ios": Platform.APPLE,
    "firebase": Platform.FIREBASE,
    "fcm": Platform.FIREBASE,
    "android": Platform.FIREBASE,
    "relay": Platform.RELAY,
    "expo": Platform.RELAY,
    "web": Platform.WEB,
    "webpush": Platform.WEB,
}


def normalize_platform(value: str | Platform) -> Platform:
    if isinstance(value, Platform):
        return value
    clean = (value or "").strip().lower()
    try:
        return _ALIASES[clean]
    except KeyError:
        raise ValueError(f"Unsupported platform: {value}") from None
