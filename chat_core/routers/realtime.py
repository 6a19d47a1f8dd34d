import asyncio
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from chat_core.dependencies import get_messaging_service
from chat_core.errors import Forbidden, NotFound, SubscriptionDropped
from chat_core.logging_config import get_logger
from chat_core.realtime.hub import ConversationScope, Scope, Subscription, UserScope
from chat_core.services.messaging_service import MessagingService

logger = get_logger(__name__)

router = APIRouter()

# Close codes in the application range
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))


async def _drain_client(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    conversation_id: Optional[UUID] = None,
    service: MessagingService = Depends(get_messaging_service),
) -> None:
    """
    Stream live events as JSON.

    Subscribes to one conversation when `conversation_id` is given, otherwise
    to every conversation of the user named by the X-User-Id header. Events
    are not replayed: after a close with code 1013 the client should
    reconnect and reload messages newer than the last one it holds.
    """
    user_id = websocket.headers.get("x-user-id")
    if not user_id:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    scope: Scope = (
        ConversationScope(conversation_id) if conversation_id else UserScope(user_id)
    )
    try:
        subscription = await service.subscribe(scope, user_id)
    except Forbidden:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return
    except NotFound:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    logger.info("websocket_connected", user_id=user_id, scope=repr(scope))

    sender = asyncio.create_task(_forward(websocket, subscription))
    receiver = asyncio.create_task(_drain_client(websocket))
    try:
        done, pending = await asyncio.wait(
            {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    finally:
        subscription.close()

    if sender in done:
        error = sender.exception()
        if isinstance(error, SubscriptionDropped):
            logger.warning("websocket_subscription_dropped", user_id=user_id)
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        elif error is not None:
            logger.error("websocket_forward_failed", user_id=user_id, error=str(error))
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        else:
            await websocket.close()
    logger.info("websocket_disconnected", user_id=user_id)
