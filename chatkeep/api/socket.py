from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatkeep.api.deps import TOKEN_HEADER_NAME, extract_bearer
from chatkeep.logging import get_logger, set_correlation_id
from chatkeep.service.chat import ChatConnection
from chatkeep.service.errors import StorageError
from chatkeep.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

# Close codes used before the handshake is accepted
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_INTERNAL_ERROR = 1011
MAX_MESSAGE_LENGTH = 4000


def extract_handshake_token(ws: WebSocket) -> Optional[str]:
    """Token from the handshake payload (``?token=``) or its headers."""
    return (
        ws.query_params.get("token")
        or extract_bearer(ws.headers.get("authorization"))
        or ws.headers.get(TOKEN_HEADER_NAME)
        or None
    )


async def _emit(ws: WebSocket, event: str, data: Any) -> None:
    await ws.send_json({"event": event, "data": data})


def _parse_frame(raw: str) -> tuple[Optional[str], Any]:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None, None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None, None
    return frame["event"], frame.get("data")


@router.websocket("/ws/chat")
async def chat_socket(ws: WebSocket):
    """Assistant chat channel.

    Authentication happens once, before the handshake is accepted; a rejected
    attempt never reaches the message loop. The identity resolved here is
    trusted for the life of the connection, so a later logout does not close
    sockets that are already open.
    """
    set_correlation_id(ws.headers.get("x-request-id"))
    runtime = get_runtime()
    try:
        outcome = await runtime.authority.authenticate(extract_handshake_token(ws))
    except StorageError as exc:
        logger.error("socket_auth_storage_failed", detail=exc.detail)
        await ws.close(code=WS_CLOSE_INTERNAL_ERROR)
        return
    if not outcome.ok:
        logger.info("socket_handshake_refused", reason=outcome.rejection.value)
        await ws.close(code=WS_CLOSE_UNAUTHORIZED, reason=outcome.rejection.message)
        return

    await ws.accept()
    connection = ChatConnection(
        outcome.user,
        outcome.token,
        runtime.chat_backend,
        assistant_name=runtime.settings.assistant_name,
    )
    user_id = outcome.user.id
    logger.info("socket_connected", user_id=user_id)
    try:
        await _emit(ws, "bot_message", connection.welcome())
        while True:
            event, data = _parse_frame(await ws.receive_text())
            if event == "ping":
                await _emit(ws, "pong", None)
                continue
            if event != "user_message" or not isinstance(data, str) or not data.strip():
                await _emit(ws, "error", {"message": "Malformed message"})
                continue
            text = data.strip()[:MAX_MESSAGE_LENGTH]
            await _emit(
                ws,
                "user_message_echo",
                {"text": text, "timestamp": datetime.now(timezone.utc).isoformat()},
            )
            await _emit(ws, "bot_typing", True)
            reply = await connection.reply(text)
            await _emit(ws, "bot_message", reply)
            await _emit(ws, "bot_typing", False)
    except WebSocketDisconnect:
        logger.info("socket_disconnected", user_id=user_id)
    finally:
        connection.close()
