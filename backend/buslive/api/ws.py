"""WebSocket endpoint streaming map surface operations."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster = None
surface = None


@router.websocket("/ws/map")
async def map_ws(websocket: WebSocket) -> None:
    """Stream map updates: a snapshot of the layers, then operation batches."""
    await websocket.accept()

    if broadcaster is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    # Send current snapshot first
    if surface is not None:
        await websocket.send_bytes(orjson.dumps(surface.snapshot()))
    else:
        state_data = await broadcaster.get_current_state()
        if state_data:
            await websocket.send_bytes(state_data)

    # Subscribe to updates
    queue = broadcaster.subscribe()
    try:
        while True:
            data = await queue.get()
            await websocket.send_bytes(data)
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        broadcaster.unsubscribe(queue)
