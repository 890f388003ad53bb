from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from src.models.notification import (
    BroadcastRequest,
    DeviceTokenView,
    DispatchOutcome,
    SendRequest,
    SilentPushRequest,
    TokenRegistration,
    TokenUnregistration,
)
from src.notifications.service import PushDispatcher

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["push-dispatch"])


def get_dispatcher(request: Request) -> PushDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Push dispatcher is not ready")
    return dispatcher


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/push/tokens", response_model=DeviceTokenView)
async def register_token(body: TokenRegistration, dispatcher: PushDispatcher = Depends(get_dispatcher)):
    try:
        registered = await asyncio.to_thread(
            dispatcher.repository.register,
            body.user_id,
            body.token,
            body.platform,
            body.device_id,
            body.auth_keys,
        )
    except ValueError as exc:
        logger.warning("Push token registration rejected", extra={"user_id": body.user_id, "error": str(exc)})
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return registered.as_view()


@router.post("/push/tokens/unregister")
async def unregister_token(body: TokenUnregistration, dispatcher: PushDispatcher = Depends(get_dispatcher)) -> dict:
    deactivated = await asyncio.to_thread(dispatcher.repository.unregister, body.token)
    return {"deactivated": deactivated}


@router.get("/push/tokens/{user_id}", response_model=list[DeviceTokenView])
async def list_tokens(user_id: str, dispatcher: PushDispatcher = Depends(get_dispatcher)):
    tokens = await asyncio.to_thread(dispatcher.repository.resolve, user_id)
    return [token.as_view() for token in tokens]


@router.post("/push/send", response_model=DispatchOutcome)
async def send_push(body: SendRequest, dispatcher: PushDispatcher = Depends(get_dispatcher)):
    return await dispatcher.send(body.user_id, body.notification, body.options)


@router.post("/push/broadcast", response_model=DispatchOutcome)
async def broadcast_push(body: BroadcastRequest, dispatcher: PushDispatcher = Depends(get_dispatcher)):
    return await dispatcher.broadcast(body.user_ids, body.notification, body.options)


@router.post("/push/silent", response_model=DispatchOutcome)
async def silent_push(body: SilentPushRequest, dispatcher: PushDispatcher = Depends(get_dispatcher)):
    return await dispatcher.send_silent(body.user_id, body.data)


@router.get("/push/stats")
def push_stats(dispatcher: PushDispatcher = Depends(get_dispatcher)) -> dict:
    return dispatcher.stats
