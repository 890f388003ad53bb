from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from src.models.notification import NotificationRequest
from src.notifications.payloads import (
    apns_priority,
    build_apns_payload,
    build_fcm_message,
    build_relay_message,
    build_web_payload,
)


def test_apns_alert_payload_carries_optional_fields_and_data() -> None:
    notification = NotificationRequest(
        title="New message",
        body="Ana sent a photo",
        data={"conversation_id": "c1"},
        category="MESSAGE",
        thread_id="c1",
        image_url="https://cdn.example/p.png",
    )

    payload = build_apns_payload(notification, silent=False)

    assert payload["aps"]["alert"] == {"title": "New message", "body": "Ana sent a photo"}
    assert payload["aps"]["sound"] == "default"
    assert payload["aps"]["badge"] == 1
    assert payload["aps"]["category"] == "MESSAGE"
    assert payload["aps"]["thread-id"] == "c1"
    assert payload["aps"]["mutable-content"] == 1
    assert payload["conversation_id"] == "c1"


def test_apns_silent_payload_is_content_available_only() -> None:
    notification = NotificationRequest.silent_data({"sync": "inbox"})

    payload = build_apns_payload(notification, silent=True)

    assert payload == {"aps": {"content-available": 1}, "sync": "inbox"}
    assert apns_priority(notification, silent=True) == "5"


def test_fcm_message_shapes_android_section_and_stringifies_data() -> None:
    notification = NotificationRequest(
        title="Hi",
        body="There",
        data={"count": 3, "room": "r1"},
        priority="low",
        ttl=60,
        collapse_key="room-r1",
    )

    message = build_fcm_message(notification, silent=False)

    assert message["notification"] == {"title": "Hi", "body": "There"}
    assert message["data"] == {"count": "3", "room": "r1"}
    assert message["android"]["priority"] == "normal"
    assert message["android"]["ttl"] == "60s"
    assert message["android"]["collapse_key"] == "room-r1"


def test_fcm_silent_message_has_no_notification_block() -> None:
    message = build_fcm_message(NotificationRequest.silent_data({"sync": True}), silent=True)

    assert "notification" not in message
    assert message["data"] == {"sync": "true"}


def test_relay_silent_message_drops_visible_fields() -> None:
    notification = NotificationRequest(title="Hi", body="There", data={"a": 1})

    visible = build_relay_message("ExponentPushToken[x]", notification, silent=False)
    silent = build_relay_message("ExponentPushToken[x]", notification, silent=True)

    assert visible["title"] == "Hi"
    assert visible["priority"] == "high"
    assert "title" not in silent and "body" not in silent
    assert silent["_contentAvailable"] is True
    assert silent["to"] == "ExponentPushToken[x]"


def test_web_payload_is_json_with_tag_and_image() -> None:
    notification = NotificationRequest(
        title="Hi",
        body="There",
        collapse_key="c1",
        image_url="https://cdn.example/p.png",
    )

    body = json.loads(build_web_payload(notification, silent=False))

    assert body["title"] == "Hi"
    assert body["tag"] == "c1"
    assert body["image"] == "https://cdn.example/p.png"
    assert body["requireInteraction"] is True
    assert json.loads(build_web_payload(notification, silent=True)) == {"data": {}, "silent": True}


def test_visible_notification_needs_text() -> None:
    with pytest.raises(ValidationError):
        NotificationRequest(data={"a": 1})
