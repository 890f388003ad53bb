from __future__ import annotations

import logging
import time

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from src.api.routes import router
from src.config import settings
from src.models.db import init_db
from src.notifications.service import PushDispatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="push_dispatch_service",
    description="Fans notifications out to Apple, Firebase, Expo relay and Web Push devices",
    version="0.1.0",
    debug=settings.app_debug,
)


@app.on_event("startup")
def startup_event() -> None:
    max_attempts = 8
    delay_seconds = 3
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            init_db()
            logging.info("Database initialization completed", extra={"attempt": attempt, "schema": settings.db_schema})
            break
        except SQLAlchemyError as exc:
            last_error = exc
            logging.exception(
                "Database initialization failed",
                extra={"attempt": attempt, "max_attempts": max_attempts},
            )
            if attempt < max_attempts:
                time.sleep(delay_seconds)
    else:
        raise RuntimeError("Database initialization failed after retries") from last_error

    if getattr(app.state, "dispatcher", None) is None:
        app.state.dispatcher = PushDispatcher()
    app.state.dispatcher.collector.start()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    dispatcher: PushDispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is None:
        return
    dispatcher.collector.stop()
    for provider in dispatcher.providers.values():
        await provider.aclose()


app.include_router(router)
