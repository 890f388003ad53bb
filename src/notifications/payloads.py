"""Logical payload shapes for each push provider.

Only the fields a provider understands are emitted; optional fields that are
unset stay out of the payload entirely.
"""

from __future__ import annotations

import json
from typing import Any

from src.models.notification import NotificationRequest

DEFAULT_SOUND = "default"
WEB_ICON = "/icon-192x192.png"
WEB_BADGE = "/badge-72x72.png"

_FCM_PRIORITY = {"high": "high", "normal": "normal", "low": "normal"}
_EXPO_PRIORITY = {"high": "high", "normal": "default", "low": "default"}
_APNS_PRIORITY = {"high": "10", "normal": "10", "low": "5"}


def _maybe_add(target: dict[str, Any], key: str, value: Any) -> dict[str, Any]:
    if value is not None:
        target[key] = value
    return target


def _stringify(data: dict[str, Any]) -> dict[str, str]:
    # FCM rejects non-string data values.
    out: dict[str, str] = {}
    for key, value in data.items():
        if isinstance(value, str):
            out[str(key)] = value
        else:
            out[str(key)] = json.dumps(value, separators=(",", ":"), default=str)
    return out


def apns_priority(notification: NotificationRequest, silent: bool) -> str:
    # Background pushes must be sent with priority 5.
    return "5" if silent else _APNS_PRIORITY[notification.priority]


def build_apns_payload(notification: NotificationRequest, silent: bool) -> dict[str, Any]:
    if silent:
        aps: dict[str, Any] = {"content-available": 1}
    else:
        aps = {
            "alert": {"title": notification.title, "body": notification.body},
            "sound": notification.sound or DEFAULT_SOUND,
            "badge": notification.badge if notification.badge is not None else 1,
        }
        _maybe_add(aps, "category", notification.category)
        _maybe_add(aps, "mutable-content", 1 if notification.image_url else None)
    _maybe_add(aps, "thread-id", notification.thread_id)

    payload: dict[str, Any] = {"aps": aps}
    for key, value in notification.data.items():
        if key != "aps":
            payload[key] = value
    if notification.image_url and not silent:
        payload.setdefault("image_url", notification.image_url)
    return payload


def build_fcm_message(notification: NotificationRequest, silent: bool) -> dict[str, Any]:
    """Token-less FCM v1 message body; the client sets ``token`` per device."""
    priority = _FCM_PRIORITY[notification.priority]
    android: dict[str, Any] = {"priority": priority, "ttl": f"{notification.ttl}s"}
    _maybe_add(android, "collapse_key", notification.collapse_key)

    if silent:
        return {"data": _stringify(notification.data), "android": android}

    message: dict[str, Any] = {
        "notification": _maybe_add(
            {"title": notification.title, "body": notification.body},
            "image",
            notification.image_url,
        ),
        "android": android,
    }
    android_notification: dict[str, Any] = {"sound": notification.sound or DEFAULT_SOUND}
    _maybe_add(android_notification, "click_action", notification.category)
    _maybe_add(android_notification, "tag", notification.thread_id)
    android["notification"] = android_notification
    if notification.data:
        message["data"] = _stringify(notification.data)
    return message


def build_relay_message(token: str, notification: NotificationRequest, silent: bool) -> dict[str, Any]:
    message: dict[str, Any] = {
        "to": token,
        "data": dict(notification.data),
        "priority": _EXPO_PRIORITY[notification.priority],
        "ttl": notification.ttl,
    }
    if silent:
        message["_contentAvailable"] = True
    else:
        message["title"] = notification.title
        message["body"] = notification.body
        message["sound"] = notification.sound or DEFAULT_SOUND
        message["badge"] = notification.badge if notification.badge is not None else 1
        _maybe_add(message, "categoryId", notification.category)
    _maybe_add(message, "channelId", notification.thread_id)
    return message


def build_web_payload(notification: NotificationRequest, silent: bool) -> str:
    if silent:
        body: dict[str, Any] = {"data": dict(notification.data), "silent": True}
    else:
        body = {
            "title": notification.title,
            "body": notification.body,
            "icon": WEB_ICON,
            "badge": WEB_BADGE,
            "data": dict(notification.data),
            "requireInteraction": notification.priority == "high",
        }
        _maybe_add(body, "tag", notification.collapse_key)
        _maybe_add(body, "image", notification.image_url)
    return json.dumps(body, default=str)
