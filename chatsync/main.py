import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatsync.broadcaster import RealtimeBroadcaster
from chatsync.config import settings
from chatsync.domain import ConnectionInfo, ConnectionStatus, MessageRecord, MessageStatus
from chatsync.gateway import EvolutionClient
from chatsync.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chatsync.merge import ConversationLocks
from chatsync.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chatsync.normalize import normalize_event_name
from chatsync.pipeline import MessagePipeline
from chatsync.poller import PollSynchronizer
from chatsync.schemas import (
    ConnectionCreateRequest,
    ConnectionResponse,
    ConnectionStatusUpdate,
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    WebhookResponse,
)
from chatsync.sender import (
    ConnectionNotReadyError,
    InvalidRecipientError,
    OutboundSender,
    UnknownConnectionError,
)
from chatsync.storage import MessageStore, check_db_health, init_db
from chatsync.utils import jid_to_number, verify_hmac_signature
from chatsync.webhook import RESULT_PROCESSED, WebhookIngest


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, wire the store, broadcaster, pipeline,
      gateway client, webhook ingest, sender and poller onto app.state,
      start the poll loop when enabled
    - Shutdown: stop the poll loop, cancel in-flight sweeps, close the
      gateway client
    """
    init_db()

    store = MessageStore()
    broadcaster = RealtimeBroadcaster(queue_size=settings.REALTIME_QUEUE_SIZE)
    pipeline = MessagePipeline(
        store,
        broadcaster,
        locks=ConversationLocks(),
        window=settings.FINGERPRINT_WINDOW_SECONDS,
    )
    gateway = EvolutionClient.from_settings(settings)
    poller = PollSynchronizer.from_settings(settings, store, gateway, pipeline)

    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.pipeline = pipeline
    app.state.gateway = gateway
    app.state.poller = poller
    app.state.webhook_ingest = WebhookIngest(store, pipeline)
    app.state.sender = OutboundSender(store, pipeline, gateway, timeout=settings.SEND_TIMEOUT_SECONDS)

    stop_event = asyncio.Event()
    poll_task = None
    if settings.POLL_ENABLED:
        poll_task = asyncio.create_task(poller.run(stop_event))
    else:
        logger.info("Poll synchronizer disabled")

    yield

    stop_event.set()
    if poll_task is not None:
        poll_task.cancel()
        await asyncio.gather(poll_task, return_exceptions=True)
    await poller.shutdown()
    await gateway.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="ChatSync API",
    description="Realtime WhatsApp message sync and dedup service for the Evolution API gateway",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_webhook_ingest(request: Request) -> WebhookIngest:
    return request.app.state.webhook_ingest


def get_sender(request: Request) -> OutboundSender:
    return request.app.state.sender


def _require_connection(store: MessageStore, connection_id: int) -> ConnectionInfo:
    connection = store.get_connection(connection_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")
    return connection


def _format_dt(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _message_response(record: MessageRecord) -> MessageResponse:
    return MessageResponse(
        id=record.id,
        message_id=record.message_id,
        temp_id=record.temp_id,
        connection_id=record.connection_id,
        counterparty_number=record.counterparty_number,
        direction=record.direction,
        body=record.body,
        status=record.status,
        timestamp=record.timestamp.isoformat(),
    )


def _connection_response(connection: ConnectionInfo) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        name=connection.name,
        description=connection.description,
        instance_name=connection.instance_name,
        status=connection.status,
        phone_number=connection.phone_number,
        last_activity=_format_dt(connection.last_activity),
        created_at=_format_dt(connection.created_at),
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503. Includes the poll synchronizer state.
    """
    poller = getattr(request.app.state, "poller", None)
    poller_status = poller.health_status() if poller is not None else None

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied",
            poller=poller_status,
        )

    return HealthResponse(status="ready", poller=poller_status)


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/api/webhook/messages",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    }
)
@app.post("/webhook", response_model=WebhookResponse, include_in_schema=False)
async def webhook(
    request: Request,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    connection_id: Annotated[Optional[int], Query(description="Fallback connection id")] = None,
    ingest: WebhookIngest = Depends(get_webhook_ingest),
) -> WebhookResponse:
    """
    Receive gateway events (messages.upsert, send.message, messages.update).

    - When WEBHOOK_SECRET is set, X-Signature must be the hex HMAC-SHA256
      of the raw body
    - Unknown events, unknown connections and malformed bodies are
      acknowledged with 200 so the gateway does not retry them
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if settings.WEBHOOK_SECRET:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Missing or invalid X-Signature header")
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        envelope = json.loads(raw_body) if raw_body else None
    except ValueError as e:
        logger.warning(f"Ignoring webhook with invalid JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        return WebhookResponse()

    event = normalize_event_name(envelope.get("event")) if isinstance(envelope, dict) else None
    instance = envelope.get("instance") if isinstance(envelope, dict) else None
    instance = instance if isinstance(instance, str) else None

    try:
        summary = await ingest.handle(envelope, connection_id=connection_id)
    except Exception as e:
        logger.exception(f"Webhook processing failed: {e}")
        record_webhook_outcome("error")
        log_webhook_data(request, result="error", event=event, instance=instance)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook"
        )

    record_webhook_outcome(summary.result)
    log_webhook_data(
        request,
        result=summary.result,
        event=event,
        instance=instance,
        inserted=summary.inserted,
        replaced=summary.replaced,
        ignored=summary.ignored,
    )
    if summary.result == RESULT_PROCESSED:
        logger.info(
            f"Webhook processed: {summary.processed} messages, {summary.inserted} inserted, "
            f"{summary.replaced} replaced, {summary.updated} updated, {summary.ignored} ignored"
        )
    return WebhookResponse(**summary.to_response())


# =============================================================================
# Send Route
# =============================================================================

@app.post(
    "/api/messages/send",
    response_model=SendMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Connection not connected"},
        404: {"model": ErrorResponse, "description": "Unknown connection"},
    }
)
async def send_message(
    payload: SendMessageRequest,
    sender: OutboundSender = Depends(get_sender),
) -> SendMessageResponse:
    """
    Send a text message.

    The message is stored and broadcast as pending first, then handed to
    the gateway. The response carries the final status: sent or failed.
    """
    logger.info(f"POST /api/messages/send: connection={payload.connection_id}, temp_id={payload.temp_id}")
    try:
        record = await sender.send(
            payload.connection_id,
            payload.to,
            payload.message,
            temp_id=payload.temp_id,
        )
    except UnknownConnectionError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")
    except (ConnectionNotReadyError, InvalidRecipientError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"Failed to store outbound message: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    success = record.status in (MessageStatus.SENT, MessageStatus.DELIVERED)
    return SendMessageResponse(success=success, message=_message_response(record))


# =============================================================================
# Connection Routes
# =============================================================================

@app.get("/api/connections", response_model=List[ConnectionResponse])
async def list_connections(
    status_filter: Annotated[Optional[ConnectionStatus], Query(alias="status")] = None,
    store: MessageStore = Depends(get_store),
) -> List[ConnectionResponse]:
    return [_connection_response(c) for c in store.list_connections(status=status_filter)]


@app.post(
    "/api/connections",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Name already used"}},
)
async def create_connection(
    payload: ConnectionCreateRequest,
    store: MessageStore = Depends(get_store),
) -> ConnectionResponse:
    if store.get_connection_by_name(payload.name) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="connection name already exists")
    try:
        connection = store.create_connection(
            name=payload.name,
            description=payload.description,
            instance_name=payload.instance_name,
            phone_number=payload.phone_number,
        )
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="connection already exists")
    return _connection_response(connection)


@app.delete("/api/connections/{connection_id}")
async def delete_connection(connection_id: int, store: MessageStore = Depends(get_store)) -> dict:
    if not store.delete_connection(connection_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")
    return {"success": True}


@app.patch("/api/connections/{connection_id}/status", response_model=ConnectionResponse)
async def update_connection_status(
    connection_id: int,
    payload: ConnectionStatusUpdate,
    store: MessageStore = Depends(get_store),
) -> ConnectionResponse:
    """Record a gateway session state change (set by the QR/connect flow)."""
    updates = {"status": payload.status}
    if payload.phone_number is not None:
        updates["phone_number"] = payload.phone_number
    connection = store.update_connection(connection_id, **updates)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection not found")
    return _connection_response(connection)


# =============================================================================
# Messages & Conversations Routes
# =============================================================================

@app.get("/api/connections/{connection_id}/messages", response_model=MessagesListResponse)
async def list_connection_messages(
    connection_id: int,
    limit: Annotated[int, Query(ge=1, le=500, description="Most recent messages to return")] = 100,
    store: MessageStore = Depends(get_store),
) -> MessagesListResponse:
    _require_connection(store, connection_id)
    messages = store.list_by_connection(connection_id, limit=limit)
    return MessagesListResponse(data=[_message_response(m) for m in messages], total=len(messages))


@app.get("/api/connections/{connection_id}/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    connection_id: int,
    store: MessageStore = Depends(get_store),
) -> ConversationsListResponse:
    """Conversations of a connection, most recent first."""
    _require_connection(store, connection_id)
    conversations = store.list_conversations(connection_id)
    data = [
        ConversationResponse(
            counterparty_number=c.counterparty_number,
            last_message=c.last_message,
            last_message_time=c.last_message_time.isoformat(),
            message_count=c.message_count,
            unread_count=c.unread_count,
        )
        for c in conversations
    ]
    return ConversationsListResponse(data=data, total=len(data))


@app.get(
    "/api/connections/{connection_id}/conversations/{number}/messages",
    response_model=MessagesListResponse,
)
async def list_conversation_messages(
    connection_id: int,
    number: str,
    store: MessageStore = Depends(get_store),
) -> MessagesListResponse:
    _require_connection(store, connection_id)
    counterparty = jid_to_number(number)
    if counterparty is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid number")
    messages = store.list_by_conversation(connection_id, counterparty)
    return MessagesListResponse(data=[_message_response(m) for m in messages], total=len(messages))


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/api/stats", response_model=StatsResponse)
async def get_statistics(store: MessageStore = Depends(get_store)) -> StatsResponse:
    """
    Dashboard counters: connections, active connections, messages today
    and the last connection activity.
    """
    stats = store.get_stats()
    logger.debug(f"Stats result: {stats}")
    return StatsResponse(
        total_connections=stats["total_connections"],
        active_connections=stats["active_connections"],
        today_messages=stats["today_messages"],
        last_activity=_format_dt(stats["last_activity"]),
    )


# =============================================================================
# Realtime Route
# =============================================================================

def _parse_subscription(data) -> tuple:
    if not isinstance(data, dict):
        return None, None
    try:
        connection_id = int(data.get("connectionId")) if data.get("connectionId") is not None else None
    except (TypeError, ValueError):
        return None, None
    number = data.get("counterpartyNumber")
    return connection_id, jid_to_number(number) if number else None


@app.websocket("/ws")
@app.websocket("/api/ws")
async def realtime(websocket: WebSocket):
    """
    Push realtime events as {type, data} JSON frames.

    Client frames:
    - {"type": "subscribe", "data": {"connectionId": 1, "counterpartyNumber": "55..."}}
    - {"type": "ping"}
    """
    broadcaster: RealtimeBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    subscription = broadcaster.subscribe()
    await websocket.send_json({"type": "connected", "data": {}})

    async def forward_events():
        while True:
            event = await subscription.queue.get()
            await websocket.send_json(event)

    forwarder = asyncio.create_task(forward_events())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON websocket frame")
                continue
            if not isinstance(frame, dict):
                continue
            frame_type = frame.get("type")
            if frame_type == "ping":
                await websocket.send_json({"type": "pong", "data": {}})
            elif frame_type == "subscribe":
                connection_id, number = _parse_subscription(frame.get("data"))
                subscription.set_filter(connection_id, number)
                await websocket.send_json(
                    {
                        "type": "subscribed",
                        "data": {"connectionId": connection_id, "counterpartyNumber": number},
                    }
                )
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        broadcaster.unsubscribe(subscription)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counts and latency, webhook outcomes, merge
    decisions, poll sweeps, outbound sends and realtime subscribers.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
