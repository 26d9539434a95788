"""Realtime WebSocket endpoint."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()


@router.websocket("/ws/{user_id}")
async def realtime(websocket: WebSocket, user_id: str):
    from renta_engine.deps import get_notifier

    registry = get_notifier()
    await websocket.accept()
    registry.connect(user_id, websocket)
    try:
        # Clients only listen; inbound frames are keep-alives.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(user_id, websocket)
