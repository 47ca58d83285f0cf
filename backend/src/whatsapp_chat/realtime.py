from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from .broadcaster import ChangeEvent, RealtimeBroadcaster
from .models import RealtimeClientFrame, RealtimeServerFrame

logger = logging.getLogger(__name__)

JOIN_CONVERSATION = "join-conversation"
LEAVE_CONVERSATION = "leave-conversation"
CONVERSATION_JOINED = "conversation-joined"
CONVERSATION_LEFT = "conversation-left"


class LoopSubscriber:
    """Hands broadcaster events to an asyncio queue owned by one socket.

    ``deliver`` runs on whichever thread published, so it only schedules the
    put on the socket's loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self.subscriber_id = uuid4().hex
        self._loop = loop
        self._queue = queue

    def deliver(self, event: ChangeEvent) -> None:
        frame = RealtimeServerFrame(type=event.name, data=event.payload).model_dump(mode="json")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)


def _conversation_id(frame: RealtimeClientFrame) -> str:
    value = frame.data.get("conversationId") or frame.data.get("conversation_id") or ""
    return str(value).strip()


async def _pump(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        frame = await queue.get()
        await websocket.send_json(frame)


async def serve_realtime_socket(websocket: WebSocket, broadcaster: RealtimeBroadcaster) -> None:
    await websocket.accept()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    subscriber = LoopSubscriber(asyncio.get_running_loop(), queue)
    broadcaster.connect(subscriber)
    pump = asyncio.create_task(_pump(websocket, queue))
    logger.info("realtime subscriber %s connected", subscriber.subscriber_id)
    try:
        while True:
            try:
                raw = await websocket.receive_json()
                frame = RealtimeClientFrame.model_validate(raw)
            except (PydanticValidationError, ValueError):
                subscriber.deliver(ChangeEvent(name="error", payload={"error": "invalid frame"}))
                continue

            conversation_id = _conversation_id(frame)
            if frame.type not in {JOIN_CONVERSATION, LEAVE_CONVERSATION}:
                subscriber.deliver(ChangeEvent(name="error", payload={"error": f"unknown frame type: {frame.type}"}))
                continue
            if not conversation_id:
                subscriber.deliver(ChangeEvent(name="error", payload={"error": "conversationId is required"}))
                continue

            if frame.type == JOIN_CONVERSATION:
                broadcaster.join(subscriber, conversation_id)
                subscriber.deliver(ChangeEvent(name=CONVERSATION_JOINED, payload={"conversationId": conversation_id}))
            else:
                broadcaster.leave(subscriber, conversation_id)
                subscriber.deliver(ChangeEvent(name=CONVERSATION_LEFT, payload={"conversationId": conversation_id}))
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(subscriber)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        logger.info("realtime subscriber %s disconnected", subscriber.subscriber_id)
