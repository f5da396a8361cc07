import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, WebSocketException, status

from streakboard.dependencies import decode_user_id
from streakboard.services import store_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Client messages carry nothing; only the close matters
    while (await websocket.receive())["type"] != "websocket.disconnect":
        pass


@router.websocket("/ws/snapshot")
async def snapshot_stream(websocket: WebSocket, token: str = Query(...)):
    """Push the caller's snapshot view on connect and after every change.

    Closes with 1013 (try again later) whenever the live snapshot is stale,
    so clients reconnect instead of trusting an old view.
    """
    try:
        user_id = decode_user_id(token)
    except HTTPException:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION)

    async with websocket.app.state.session_factory() as db:
        if await store_service.get_user(db, user_id) is None:
            raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION)

    reconciler = websocket.app.state.reconciler
    if not reconciler.ready.is_set():
        raise WebSocketException(code=status.WS_1013_TRY_AGAIN_LATER)

    await websocket.accept()
    async with reconciler.listen() as changes:
        disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            await websocket.send_text(reconciler.view(user_id).model_dump_json())
            while True:
                change = asyncio.create_task(changes.get())
                await asyncio.wait({change, disconnected}, return_when=asyncio.FIRST_COMPLETED)
                if disconnected.done():
                    change.cancel()
                    logger.debug("Snapshot stream closed for user=%s", user_id)
                    return
                if not reconciler.ready.is_set():
                    await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
                    return
                await websocket.send_text(reconciler.view(user_id).model_dump_json())
        except WebSocketDisconnect:
            logger.debug("Snapshot stream closed for user=%s", user_id)
        finally:
            disconnected.cancel()
