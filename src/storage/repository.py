from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from src.models.notification import DeviceToken
from src.models.tables import PushToken
from src.notifications.platforms import Platform, normalize_platform
from src.utils.time import utc_now

logger = logging.getLogger(__name__)

RELAY_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")
WEB_PUSH_KEYS = ("p256dh", "auth")

# Keeps IN (...) lists under the bind-parameter limits of sqlite and postgres.
_IN_CLAUSE_CHUNK = 500


class TokenRepository:
    """Registry of per-user, per-device push endpoints.

    Every write runs in its own short transaction and touches rows through
    narrowly scoped ``UPDATE ... WHERE`` statements, so registrations for
    different devices never contend on a shared lock. ``is_active`` is a
    last-writer-wins flag.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        if session_factory is None:
            from src.models.db import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    @staticmethod
    def _validate(user_id: str, token: str, platform: Platform, auth_keys: dict | None) -> None:
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if not token or not token.strip():
            raise ValueError("token is required")
        if platform is Platform.WEB:
            missing = [key for key in WEB_PUSH_KEYS if not (auth_keys or {}).get(key)]
            if missing:
                raise ValueError(f"Web push subscriptions need auth keys: missing {', '.join(missing)}")
        if platform is Platform.RELAY and not token.startswith(RELAY_TOKEN_PREFIXES):
            raise ValueError("Invalid relay push token")

    def register(
        self,
        user_id: str,
        token: str,
        platform: str | Platform,
        device_id: str | None = None,
        auth_keys: dict[str, str] | None = None,
    ) -> DeviceToken:
        clean_platform = normalize_platform(platform)
        self._validate(user_id, token, clean_platform, auth_keys)

        try:
            return self._register_once(user_id, token, clean_platform, device_id, auth_keys)
        except IntegrityError:
            # A concurrent register inserted the same (user_id, token) row first.
            logger.info("Push token insert raced, retrying as update", extra={"user_id": user_id})
            return self._register_once(user_id, token, clean_platform, device_id, auth_keys)

    def _register_once(
        self,
        user_id: str,
        token: str,
        platform: Platform,
        device_id: str | None,
        auth_keys: dict[str, str] | None,
    ) -> DeviceToken:
        now = utc_now()
        with self.session_factory() as db:
            with db.begin():
                if device_id:
                    db.execute(
                        update(PushToken)
                        .where(
                            PushToken.user_id == user_id,
                            PushToken.device_id == device_id,
                            PushToken.token != token,
                            PushToken.is_active.is_(True),
                        )
                        .values(is_active=False, updated_at=now)
                    )

                db.execute(
                    update(PushToken)
                    .where(
                        PushToken.token == token,
                        PushToken.user_id != user_id,
                        PushToken.is_active.is_(True),
                    )
                    .values(is_active=False, updated_at=now)
                )

                row = db.execute(
                    select(PushToken).where(PushToken.user_id == user_id, PushToken.token == token)
                ).scalar_one_or_none()
                if row is None:
                    row = PushToken(
                        user_id=user_id,
                        token=token,
                        platform=platform.value,
                        device_id=device_id,
                        auth_keys=auth_keys,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(row)
                else:
                    row.platform = platform.value
                    row.device_id = device_id
                    row.auth_keys = auth_keys
                    row.is_active = True
                    row.updated_at = now
                db.flush()
                registered = DeviceToken.from_row(row)

        logger.info(
            "Push token registered",
            extra={"user_id": user_id, "platform": platform.value, "device_id": device_id},
        )
        return registered

    def unregister(self, token: str) -> int:
        with self.session_factory() as db:
            with db.begin():
                result = db.execute(
                    update(PushToken)
                    .where(PushToken.token == token, PushToken.is_active.is_(True))
                    .values(is_active=False, updated_at=utc_now())
                )
        return int(result.rowcount or 0)

    def deactivate_many(self, tokens: Iterable[str]) -> int:
        unique = list(dict.fromkeys(t for t in tokens if t))
        if not unique:
            return 0

        deactivated = 0
        with self.session_factory() as db:
            with db.begin():
                for start in range(0, len(unique), _IN_CLAUSE_CHUNK):
                    chunk = unique[start : start + _IN_CLAUSE_CHUNK]
                    result = db.execute(
                        update(PushToken)
                        .where(PushToken.token.in_(chunk), PushToken.is_active.is_(True))
                        .values(is_active=False, updated_at=utc_now())
                        .execution_options(synchronize_session=False)
                    )
                    deactivated += int(result.rowcount or 0)
        return deactivated

    def resolve(
        self,
        user_ids: str | Sequence[str],
        platforms: Iterable[str | Platform] | None = None,
        exclude_device_ids: Iterable[str] | None = None,
    ) -> list[DeviceToken]:
        ids = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        if not ids:
            return []

        stmt = select(PushToken).where(PushToken.user_id.in_(ids), PushToken.is_active.is_(True))
        if platforms is not None:
            wanted = sorted({normalize_platform(p).value for p in platforms})
            stmt = stmt.where(PushToken.platform.in_(wanted))
        excluded = [d for d in (exclude_device_ids or []) if d]
        if excluded:
            # NOT IN drops NULL device ids too; keep them explicitly.
            stmt = stmt.where(PushToken.device_id.is_(None) | PushToken.device_id.not_in(excluded))
        stmt = stmt.order_by(PushToken.updated_at.desc(), PushToken.id.desc())

        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [DeviceToken.from_row(row) for row in rows]

    def get(self, user_id: str, token: str) -> DeviceToken | None:
        with self.session_factory() as db:
            row = db.execute(
                select(PushToken).where(PushToken.user_id == user_id, PushToken.token == token)
            ).scalar_one_or_none()
            return DeviceToken.from_row(row) if row is not None else None

