"""Realtime websocket — streams broadcaster events to dashboard clients."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime(websocket: WebSocket):
    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    queue = broadcaster.subscribe()
    logger.debug("Realtime client connected", subscribers=broadcaster.subscriber_count)
    try:
        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unsubscribe(queue)
        logger.debug("Realtime client disconnected", subscribers=broadcaster.subscriber_count)
