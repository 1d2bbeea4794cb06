"""Websocket helpers shared by the streaming routes."""

import asyncio
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..errors import CoordinatorError
from ..services.events import Subscription

logger = logging.getLogger(__name__)

# Websocket close codes
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011
TRY_AGAIN_LATER = 1013


async def wait_for_disconnect(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def forward_subscription(websocket: WebSocket, subscription: Subscription) -> None:
    """
    Send subscription messages to the client as JSON frames.

    Each frame is {"topic": <normalized topic>, "data": <payload as text>}.

    Returns when the client disconnects or the subscription is closed (for
    example after it overflowed); the other side is cancelled.
    """
    async def _send():
        async for message in subscription:
            await websocket.send_json({
                "topic": message.topic,
                "data": message.data.decode("utf-8", errors="replace"),
            })

    send_task = asyncio.create_task(_send())
    watch_task = asyncio.create_task(wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (send_task, watch_task):
            task.cancel()
        await asyncio.gather(send_task, watch_task, return_exceptions=True)

    if subscription.overflowed:
        await close_quietly(websocket, TRY_AGAIN_LATER, "subscriber too slow")


async def close_quietly(websocket: WebSocket, code: int = 1000, reason: str = "") -> None:
    """Close the websocket unless the client already went away."""
    if websocket.client_state == WebSocketState.DISCONNECTED or websocket.application_state == WebSocketState.DISCONNECTED:
        return
    try:
        await websocket.close(code=code, reason=reason)
    except RuntimeError as e:
        logger.debug(f"Websocket already closed: {e}")


async def reject(websocket: WebSocket, error: CoordinatorError) -> None:
    """Refuse a websocket for a typed error, before or after accept."""
    logger.warning(f"Rejecting websocket {websocket.url.path}: {error.message}")
    code = POLICY_VIOLATION if error.status_code < 500 else INTERNAL_ERROR
    await close_quietly(websocket, code, error.message[:120])
