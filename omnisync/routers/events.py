"""
Progress event endpoints.

- ``GET /events/stream``: newline-delimited JSON, one frame per line
- ``WS /ws/events``: the same frames as WebSocket text messages

Both authenticate with the session cookie; the WebSocket also accepts a
``?token=`` query parameter.
"""

import asyncio
import json

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from omnisync.core.deps import COOKIE_NAME, get_current_user, resolve_user_id
from omnisync.core.events import broker, stream_events, to_ndjson
from omnisync.db.session import SessionLocal

router = APIRouter(prefix="/events", tags=["Events"])
ws_router = APIRouter(prefix="/ws", tags=["WebSocket"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Content-Encoding": "identity",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/stream")
async def event_stream(user=Depends(get_current_user)):
    """Stream progress frames for the current user."""
    user_id = user.id

    async def body():
        async for frame in stream_events(user_id):
            yield to_ndjson(frame)

    return StreamingResponse(body(), media_type="application/x-ndjson", headers=STREAM_HEADERS)


def _authenticate(websocket: WebSocket, token: str | None):
    with SessionLocal() as db:
        if token:
            return resolve_user_id(token, db)
        cookie = websocket.cookies.get(COOKIE_NAME)
        if cookie:
            return resolve_user_id(cookie, db)
    return None


@ws_router.websocket("/events")
async def websocket_events(
    websocket: WebSocket,
    token: str | None = Query(None),
):
    """
    WebSocket endpoint for progress frames.

    Clients may send ``ping`` and receive ``pong``.
    """
    user_id = _authenticate(websocket, token)
    if not user_id:
        await websocket.close(code=4001, reason="Authentication required")
        return

    await websocket.accept()
    frames = stream_events(user_id, event_broker=broker)
    receive_task = asyncio.create_task(websocket.receive_text())
    frame_task = asyncio.create_task(frames.__anext__())
    try:
        while True:
            done, _ = await asyncio.wait(
                {receive_task, frame_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if receive_task in done:
                try:
                    message = receive_task.result()
                except WebSocketDisconnect:
                    break
                if message == "ping":
                    await websocket.send_text("pong")
                receive_task = asyncio.create_task(websocket.receive_text())
            if frame_task in done:
                await websocket.send_text(json.dumps(frame_task.result(), default=str))
                frame_task = asyncio.create_task(frames.__anext__())
    except WebSocketDisconnect:
        pass
    finally:
        receive_task.cancel()
        frame_task.cancel()
        await asyncio.gather(receive_task, frame_task, return_exceptions=True)
        await frames.aclose()
