import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, WebSocket, status
from fastapi.responses import JSONResponse, PlainTextResponse

from inbox.config import Settings, get_settings
from inbox.errors import InboxError, InvalidRequest, NotFound, Unauthorized
from inbox.fanout import EventBroadcaster, MessageEvent
from inbox.ingest import IngestionPipeline
from inbox.logging_utils import RequestLoggingMiddleware, annotate_request_log, log_webhook_data, setup_logging
from inbox.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_ingest_counts,
    record_webhook_outcome,
)
from inbox.mode import ModeController
from inbox.reply import ReplyPipeline
from inbox.schemas import (
    ErrorResponse,
    HealthResponse,
    LiveResponse,
    MessageOut,
    MessageStatus,
    MessagesListResponse,
    OkResponse,
    ReplyRequest,
    ReplyResponse,
    SendRequest,
    SendResponse,
    WebhookResponse,
)
from inbox.sender import OutboundSender, WhatsAppSender
from inbox.storage import DurableStore, VolatileStore, utcnow
from inbox.utils import tokens_match, verify_meta_signature

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_mode(request: Request) -> ModeController:
    return request.app.state.mode


def require_admin(
    request: Request,
    x_admin_token: Annotated[Optional[str], Header(alias="X-Admin-Token")] = None,
) -> None:
    """Dashboard auth. With no ADMIN_TOKEN configured the API is open."""
    admin_token = request.app.state.settings.ADMIN_TOKEN
    if not admin_token:
        return
    if not tokens_match(x_admin_token, admin_token):
        logger.warning("Rejected dashboard request with missing or wrong admin token")
        raise Unauthorized()


async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.info(f"{exc.code}: {exc.message}")
    body = ErrorResponse(error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def _parse_status(value: Optional[str]) -> Optional[MessageStatus]:
    # Anything other than new/replied means "no filter"
    if not value:
        return None
    try:
        return MessageStatus(value.strip().lower())
    except ValueError:
        return None


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=LiveResponse)
async def health_live() -> LiveResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Storage degradation never makes the service unready; see /api/health.
    """
    return LiveResponse(status="ok")


@router.get("/api/health", response_model=HealthResponse)
async def health(mode: ModeController = Depends(get_mode)) -> HealthResponse:
    """
    Storage diagnostics: active mode, whether durable storage is configured,
    and the last durable connection error.
    """
    return HealthResponse(time=utcnow(), **mode.health())


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    settings: Settings = Depends(get_app_settings),
) -> PlainTextResponse:
    """Provider subscription handshake: echo the challenge when the token matches."""
    verify_token = settings.WHATSAPP_VERIFY_TOKEN
    if hub_mode == "subscribe" and verify_token and tokens_match(hub_verify_token, verify_token):
        logger.info("Webhook verification succeeded")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification rejected")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    settings: Settings = Depends(get_app_settings),
) -> WebhookResponse:
    """
    Ingest inbound WhatsApp messages exactly once.

    - Verifies X-Hub-Signature-256 when META_APP_SECRET is set
    - Malformed envelopes are skipped, never rejected (the provider would retry)
    - Idempotent: redelivered messages are not stored or broadcast again
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if not verify_meta_signature(raw_body, x_hub_signature_256, settings.META_APP_SECRET):
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise Unauthorized("invalid signature")

    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON, treating as empty batch: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        return WebhookResponse(saved_count=0)

    result = await request.app.state.ingestion.ingest(payload)

    record_webhook_outcome("ok")
    record_ingest_counts(result.created, result.duplicates, result.skipped)
    log_webhook_data(
        request,
        result="ok",
        created=result.created,
        duplicates=result.duplicates,
        skipped=result.skipped,
    )
    return WebhookResponse(saved_count=result.created)


# =============================================================================
# Dashboard Routes
# =============================================================================

@router.get(
    "/api/messages",
    response_model=MessagesListResponse,
    dependencies=[Depends(require_admin)],
)
async def list_messages(
    status_filter: Annotated[Optional[str], Query(alias="status", description="new or replied; anything else lists both")] = None,
    mode: ModeController = Depends(get_mode),
) -> MessagesListResponse:
    """
    List stored messages, newest received first, at most 300.
    The raw provider payload is never included.
    """
    records = mode.backend().find(status=_parse_status(status_filter))
    logger.info(f"GET /api/messages: returned {len(records)} messages (status={status_filter})")
    return MessagesListResponse(messages=[MessageOut.from_record(r) for r in records])


@router.post(
    "/api/reply",
    response_model=ReplyResponse,
    dependencies=[Depends(require_admin)],
)
async def reply(body: ReplyRequest, request: Request) -> ReplyResponse:
    """Reply to a set of messages with the same text, one send per message."""
    results = await request.app.state.replies.reply(body.message_ids, body.text)
    annotate_request_log(request, requested=len(body.message_ids), replied=len(results))
    return ReplyResponse(count=len(results), results=results)


@router.delete(
    "/api/messages/{message_id}",
    response_model=OkResponse,
    dependencies=[Depends(require_admin)],
)
async def delete_message(
    message_id: str,
    request: Request,
    mode: ModeController = Depends(get_mode),
) -> OkResponse:
    deleted = mode.backend().delete_by_id(message_id)
    if deleted is None:
        raise NotFound()

    logger.info(f"Message deleted: {deleted.id}")
    await request.app.state.broadcaster.publish(MessageEvent.deleted(deleted.id))
    return OkResponse()


@router.post(
    "/api/send",
    response_model=SendResponse,
    dependencies=[Depends(require_admin)],
)
async def send(body: SendRequest, request: Request) -> SendResponse:
    """Send a free-standing text message, optionally threaded to a provider message id."""
    if not body.to or not body.text:
        raise InvalidRequest("Required: { to, text }")
    result = await request.app.state.sender.send_text(
        to=body.to,
        text=body.text,
        reply_to_message_id=body.reply_to_message_id,
    )
    return SendResponse(result=result)


# =============================================================================
# Realtime + Metrics
# =============================================================================

@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: Optional[str] = None) -> None:
    admin_token = websocket.app.state.settings.ADMIN_TOKEN
    if admin_token and not tokens_match(token, admin_token):
        logger.warning("Realtime session rejected: bad token")
        await websocket.accept()
        await websocket.close(code=4401)
        return
    await websocket.app.state.broadcaster.serve(websocket)


@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    sender: Optional[OutboundSender] = None,
    mode: Optional[ModeController] = None,
) -> FastAPI:
    """
    Build the application. Collaborators can be injected for tests; by default
    they come from settings.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    if mode is None:
        durable = DurableStore(settings.DATABASE_URL) if settings.want_durable else None
        mode = ModeController(
            VolatileStore(),
            durable,
            connect_timeout=settings.DB_CONNECT_TIMEOUT_SECONDS,
        )
    broadcaster = EventBroadcaster()
    sender = sender or WhatsAppSender.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Serve from the volatile store right away; durable connects in the background
        mode.start()
        yield
        await mode.close()

    app = FastAPI(
        title="WhatsApp Inbox API",
        description="Webhook ingestion, dashboard replies and realtime updates for WhatsApp messages",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.mode = mode
    app.state.broadcaster = broadcaster
    app.state.sender = sender
    app.state.ingestion = IngestionPipeline(mode, broadcaster)
    app.state.replies = ReplyPipeline(mode, broadcaster, sender)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(InboxError, inbox_error_handler)
    app.include_router(router)
    return app


app = create_app()
