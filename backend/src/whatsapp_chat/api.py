from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, Response, WebSocket, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .autoreply import GreetingAutoReply
from .broadcaster import RealtimeBroadcaster
from .chat_store import MessageStore, create_message_store
from .config import Settings, get_settings
from .conversation_engine import ConversationEngine, conversation_to_item, message_to_item
from .errors import ConversationNotFoundError, InternalError
from .ingestion import ChatEventValue, IngestionError, parse_forwarded, parse_meta_payload
from .models import (
    ChatStats,
    ConversationListResponse,
    ConversationResponse,
    ConversationStatusUpdateRequest,
    MessageListResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    WebhookAckResponse,
    WebhookProcessRequest,
)
from .provider import ProviderClient, create_provider_client
from .realtime import serve_realtime_socket

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["chat"])

_SEND_ERROR_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "provider_dispatch": status.HTTP_502_BAD_GATEWAY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _create_provider(settings: Settings) -> ProviderClient:
    return create_provider_client(
        client_type=settings.provider_client_type,
        enabled=settings.provider_enabled,
        api_url=settings.whatsapp_api_url,
        access_token=settings.whatsapp_access_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        timeout_seconds=settings.provider_timeout_seconds,
        default_template_language=settings.default_template_language,
    )


def _create_engine(
    settings: Settings,
    *,
    store: MessageStore,
    provider: ProviderClient,
    broadcaster: RealtimeBroadcaster,
) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        provider=provider,
        broadcaster=broadcaster,
        business_number=settings.business_number or "whatsapp-business",
        autoreply=GreetingAutoReply() if settings.autoreply_enabled else None,
        default_template_language=settings.default_template_language,
    )


message_store: MessageStore = create_message_store(
    backend=_settings.chat_store_backend,
    database_url=_settings.database_url,
)
provider_client: ProviderClient = _create_provider(_settings)
broadcaster = RealtimeBroadcaster()
engine = _create_engine(_settings, store=message_store, provider=provider_client, broadcaster=broadcaster)
auto_reply_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="chat-autoreply")


def reset_runtime_state_for_tests() -> None:
    engine.reset()


def drain_auto_replies_for_tests() -> None:
    global auto_reply_executor
    auto_reply_executor.shutdown(wait=True)
    auto_reply_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="chat-autoreply")


def _conversation_not_found(conversation_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")


def _ingest_all(events: list[ChatEventValue]) -> int:
    processed = 0
    for event in events:
        result = engine.ingest(event)
        if result.outcome != "failed":
            processed += 1
        if result.pending_reply is not None:
            # The reply waits on the provider; the webhook ack must not.
            auto_reply_executor.submit(engine.send_auto_reply, result.pending_reply)
    return processed


@router.post("/send", response_model=SendMessageResponse)
def send_message(payload: SendMessageRequest, response: Response) -> SendMessageResponse:
    result = engine.send(payload)
    if not result.success:
        response.status_code = _SEND_ERROR_STATUS.get(result.error_kind or "internal", 500)
    return SendMessageResponse(
        success=result.success,
        message_id=result.message_id,
        conversation_id=result.conversation_id,
        error=result.error,
    )


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(limit: int | None = Query(default=None)) -> ConversationListResponse:
    try:
        conversations = engine.get_active_conversations(
            limit=_settings.clamp_limit(limit, default=_settings.conversations_default_limit)
        )
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return ConversationListResponse(conversations=[conversation_to_item(value) for value in conversations])


@router.get("/conversations/participant/{participant_id}", response_model=ConversationResponse)
def get_conversation_by_participant(participant_id: str) -> ConversationResponse:
    try:
        conversation = engine.get_conversation_by_participant(participant_id)
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"no conversation for participant: {participant_id}")
    return ConversationResponse(conversation=conversation_to_item(conversation))


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
def get_conversation(conversation_id: str) -> ConversationResponse:
    try:
        conversation = engine.get_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(conversation_id) from exc
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return ConversationResponse(conversation=conversation_to_item(conversation))


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
def get_conversation_messages(conversation_id: str, limit: int | None = Query(default=None)) -> MessageListResponse:
    try:
        messages = engine.get_conversation_messages(
            conversation_id,
            limit=_settings.clamp_limit(limit, default=_settings.messages_default_limit),
        )
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(conversation_id) from exc
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return MessageListResponse(messages=[message_to_item(value) for value in messages])


@router.post("/conversations/{conversation_id}/status", response_model=ConversationResponse)
def set_conversation_status(conversation_id: str, payload: ConversationStatusUpdateRequest) -> ConversationResponse:
    try:
        conversation = engine.set_conversation_status(conversation_id, payload.status)
    except ConversationNotFoundError as exc:
        raise _conversation_not_found(conversation_id) from exc
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return ConversationResponse(conversation=conversation_to_item(conversation))


@router.get("/stats", response_model=StatsResponse)
def get_stats() -> StatsResponse:
    try:
        stats = engine.get_stats()
    except InternalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return StatsResponse(
        stats=ChatStats(
            total_messages=stats.total_messages,
            total_conversations=stats.total_conversations,
            active_conversations=stats.active_conversations,
        )
    )


@router.post("/webhook/process", response_model=WebhookAckResponse)
def process_forwarded_webhook(payload: WebhookProcessRequest) -> WebhookAckResponse:
    try:
        events = parse_forwarded(payload)
    except IngestionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return WebhookAckResponse(received=_ingest_all(events))


@router.get("/webhooks/whatsapp", response_class=PlainTextResponse)
def verify_whatsapp_webhook(
    mode: str = Query(default="", alias="hub.mode"),
    verify_token: str = Query(default="", alias="hub.verify_token"),
    challenge: str = Query(default="", alias="hub.challenge"),
) -> PlainTextResponse:
    expected = _settings.webhook_verify_token.strip()
    if mode == "subscribe" and expected and verify_token == expected:
        logger.info("WhatsApp webhook subscription verified")
        return PlainTextResponse(challenge)
    logger.warning("rejected WhatsApp webhook verification (mode=%s)", mode or "missing")
    raise HTTPException(status_code=403, detail="webhook verification failed")


@router.post("/webhooks/whatsapp", response_model=WebhookAckResponse)
async def receive_whatsapp_webhook(request: Request) -> WebhookAckResponse:
    # Meta retries anything that is not a 200, so malformed payloads are logged and acknowledged.
    raw_body = await request.body()
    try:
        payload: Any = json.loads(raw_body.decode("utf-8") or "null")
        events = parse_meta_payload(payload)
    except (ValueError, IngestionError) as exc:
        logger.warning("ignoring unreadable WhatsApp webhook: %s", exc)
        return WebhookAckResponse(received=0)
    received = await run_in_threadpool(_ingest_all, events)
    return WebhookAckResponse(received=received)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    await serve_realtime_socket(websocket, broadcaster)
