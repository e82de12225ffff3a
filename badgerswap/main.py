import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from badgerswap.config import settings
from badgerswap.conversations import (
    delete_conversation,
    get_conversation,
    get_conversations_for_user,
    get_or_create_conversation,
    load_conversation,
    subscribe_to_conversations,
)
from badgerswap.directory import (
    create_listing,
    delete_listing,
    get_listing,
    get_listings_by_seller,
    get_user,
    list_listings,
    update_listing,
    upsert_user_profile,
)
from badgerswap.errors import ChatError, ForbiddenError, NotAParticipantError, NotFoundError, UnauthorizedError
from badgerswap.favorites import add_favorite, get_favorites, remove_favorite
from badgerswap.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_event
from badgerswap.messages import get_messages, send_message, subscribe_to_messages
from badgerswap.metrics import get_metrics, get_metrics_content_type
from badgerswap.realtime import ChangeFeed
from badgerswap.reports import list_reports, submit_report, update_report_status
from badgerswap.schemas import (
    ConversationCreateRequest,
    ConversationCreateResponse,
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    FavoritesResponse,
    HealthResponse,
    ListingCreateRequest,
    ListingResponse,
    ListingsListResponse,
    ListingUpdateRequest,
    MarkReadResponse,
    MessageResponse,
    MessagesListResponse,
    ReportCreateRequest,
    ReportResponse,
    ReportsListResponse,
    ReportStatusRequest,
    SendMessageRequest,
    SendMessageResponse,
    StatusResponse,
    UserProfileRequest,
    UserResponse,
)
from badgerswap.storage import SessionLocal, check_db_health, get_db, init_db
from badgerswap.unread import mark_conversation_as_read
from badgerswap.utils import verify_identity_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# WebSocket close codes (4000-4999 are application defined)
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid identity"},
    403: {"model": ErrorResponse, "description": "Not a participant, or not allowed"},
    404: {"model": ErrorResponse, "description": "Not found"},
    422: {"model": ErrorResponse, "description": "Validation error"},
    503: {"model": ErrorResponse, "description": "Store unavailable, retry later"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables and the change feed live subscriptions hang off
    - Shutdown: nothing to release beyond the feed itself
    """
    init_db()
    app.state.feed = ChangeFeed()
    yield
    remaining = app.state.feed.listener_count()
    if remaining:
        logger.warning(f"Shutting down with {remaining} live listeners still registered")


app = FastAPI(
    title="BadgerSwap Chat API",
    description="Buyer/seller conversations for the BadgerSwap campus marketplace",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# =============================================================================
# Dependencies
# =============================================================================

def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
) -> str:
    """
    Authenticated actor identity.

    The identity provider signs the user id with IDENTITY_SECRET; clients
    send both in X-User-Id / X-Signature.
    """
    if not x_user_id or not x_signature:
        raise UnauthorizedError("missing identity headers")
    if not verify_identity_signature(x_user_id, x_signature, settings.IDENTITY_SECRET):
        raise UnauthorizedError("invalid identity signature")
    return x_user_id


CurrentUser = Annotated[str, Depends(get_current_user_id)]


def _participant_conversation(db: Session, conversation_id: str, user_id: str):
    conversation = get_conversation(db, conversation_id)
    if not conversation.is_participant(user_id):
        raise NotAParticipantError(user_id, conversation_id)
    return conversation


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. DB is reachable and the chat schema is applied
    2. IDENTITY_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.IDENTITY_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="IDENTITY_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post(
    "/conversations",
    response_model=ConversationCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def create_conversation(
    body: ConversationCreateRequest,
    request: Request,
    response: Response,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
) -> ConversationCreateResponse:
    """
    Get or create the conversation between the caller (as buyer) and a seller about a listing.

    Returns 201 when a conversation was created, 200 when it already existed.
    """
    logger.info(f"POST /conversations: buyer={user_id} seller={body.seller_id} product={body.product_id}")

    conversation, created = get_or_create_conversation(
        db,
        feed,
        buyer_id=user_id,
        seller_id=body.seller_id,
        product_id=body.product_id,
        product_title=body.product_title,
        seller_name=body.seller_name,
    )

    if not created:
        response.status_code = status.HTTP_200_OK

    log_chat_event(request, result="created" if created else "existing", conversation_id=conversation.id)

    return ConversationCreateResponse(
        conversation=ConversationResponse.model_validate(conversation),
        is_new=created,
    )


@app.get("/conversations", response_model=ConversationsListResponse, responses=ERROR_RESPONSES)
def list_conversations(
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    Conversations the caller takes part in, as buyer or as seller.

    Most recent activity first.
    """
    conversations = get_conversations_for_user(db, user_id)
    data = sorted(
        (ConversationResponse.model_validate(c) for c in conversations),
        key=lambda c: c.timestamp,
        reverse=True,
    )
    logger.info(f"GET /conversations: {len(data)} conversations for {user_id}")
    return ConversationsListResponse(user_id=user_id, data=data, total=len(data))


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse, responses=ERROR_RESPONSES)
def read_conversation(
    conversation_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    conversation = _participant_conversation(db, conversation_id, user_id)
    return ConversationResponse.model_validate(conversation)


@app.delete("/conversations/{conversation_id}", response_model=StatusResponse, responses=ERROR_RESPONSES)
def remove_conversation(
    conversation_id: str,
    request: Request,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
) -> StatusResponse:
    """Delete a conversation and its messages. Either participant may do this."""
    delete_conversation(db, feed, conversation_id, actor_id=user_id)
    log_chat_event(request, result="deleted", conversation_id=conversation_id)
    return StatusResponse(status="deleted")


@app.post(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
    responses=ERROR_RESPONSES,
)
def mark_read(
    conversation_id: str,
    request: Request,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
) -> MarkReadResponse:
    changed = mark_conversation_as_read(db, feed, conversation_id, user_id)
    log_chat_event(request, result="read", conversation_id=conversation_id)
    return MarkReadResponse(changed=changed)


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses=ERROR_RESPONSES,
)
def list_messages(
    conversation_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """All messages of a conversation, oldest first."""
    _participant_conversation(db, conversation_id, user_id)
    messages = get_messages(db, conversation_id)
    data = [MessageResponse.model_validate(m) for m in messages]
    logger.debug(f"GET messages of {conversation_id}: {len(data)}")
    return MessagesListResponse(conversation_id=conversation_id, data=data, total=len(data))


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def post_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    response: Response,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
) -> SendMessageResponse:
    """
    Send a message as the caller.

    Repeating a request with the same client_message_id returns the first
    message with 200 instead of appending a second copy.
    """
    message, duplicate = send_message(
        db,
        feed,
        conversation_id=conversation_id,
        sender_id=user_id,
        text=body.text,
        client_message_id=body.client_message_id,
    )

    if duplicate:
        response.status_code = status.HTTP_200_OK

    log_chat_event(
        request,
        result="duplicate" if duplicate else "created",
        conversation_id=conversation_id,
        message_id=message.id,
        dup=duplicate,
    )
    return SendMessageResponse(message=MessageResponse.model_validate(message), duplicate=duplicate)


# =============================================================================
# Live Subscriptions (WebSocket)
# =============================================================================

def _websocket_identity(websocket: WebSocket) -> Optional[str]:
    user_id = websocket.headers.get("x-user-id")
    signature = websocket.headers.get("x-signature")
    if not user_id or not signature:
        return None
    if not verify_identity_signature(user_id, signature, settings.IDENTITY_SECRET):
        return None
    return user_id


async def _pump(
    websocket: WebSocket,
    queue: asyncio.Queue,
    on_frame: Callable[[dict], Awaitable[None]],
) -> None:
    """Forward queued snapshots to the client until it disconnects."""

    async def forward() -> None:
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    forward_task = asyncio.create_task(forward())
    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(frame, dict):
                await on_frame(frame)
    except WebSocketDisconnect:
        logger.info("Subscription socket disconnected")
    finally:
        forward_task.cancel()
        try:
            await forward_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # The send side died first, e.g. the client vanished mid-write
            logger.warning(f"Subscription socket stopped forwarding: {e}")


def _queue_writer(queue: asyncio.Queue) -> Callable[[dict], None]:
    loop = asyncio.get_running_loop()

    def put(payload: dict) -> None:
        # Subscriptions fire from worker threads
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    return put


def _error_payload(exc: Exception) -> dict:
    if isinstance(exc, ChatError):
        return {"type": "error", **exc.to_dict()}
    return {"type": "error", "status": "error", "error_code": "INTERNAL_ERROR", "message": "subscription failed"}


def _message_socket_close_code(conversation_id: str, user_id: str) -> Optional[int]:
    with SessionLocal() as db:
        try:
            conversation = load_conversation(db, conversation_id)
        except NotFoundError:
            return WS_NOT_FOUND
        if not conversation.is_participant(user_id):
            return WS_FORBIDDEN
    return None


@app.websocket("/ws/conversations/{conversation_id}/messages")
async def messages_socket(websocket: WebSocket, conversation_id: str):
    """
    Live message list of one conversation.

    Sends {"type": "messages", "messages": [...]} on open and after every
    change. Opening the socket marks the conversation read for the caller;
    a {"type": "read"} frame does it again.

    Store work runs in the threadpool, never on the event loop.
    """
    user_id = _websocket_identity(websocket)
    if user_id is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    feed: ChangeFeed = websocket.app.state.feed

    close_code = await run_in_threadpool(_message_socket_close_code, conversation_id, user_id)
    if close_code is not None:
        await websocket.close(code=close_code)
        return

    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()
    put = _queue_writer(queue)

    def mark_read() -> None:
        with SessionLocal() as db:
            try:
                mark_conversation_as_read(db, feed, conversation_id, user_id)
            except NotFoundError:
                logger.info(f"Conversation {conversation_id} gone before it could be marked read")

    subscription = await run_in_threadpool(
        subscribe_to_messages,
        feed,
        conversation_id,
        on_update=lambda messages: put({
            "type": "messages",
            "conversation_id": conversation_id,
            "messages": [m.model_dump() for m in messages],
        }),
        on_error=lambda exc: put(_error_payload(exc)),
    )

    try:
        await run_in_threadpool(mark_read)

        async def on_frame(frame: dict) -> None:
            if frame.get("type") == "read":
                await run_in_threadpool(mark_read)

        await _pump(websocket, queue, on_frame)
    finally:
        subscription.cancel()
        logger.info(f"Message subscription closed: conversation={conversation_id} user={user_id}")


@app.websocket("/ws/conversations")
async def conversations_socket(websocket: WebSocket):
    """
    Live list of the caller's conversations (buyer side and seller side).

    Sends {"type": "conversations", "conversations": [...]} on open and
    after every change to either side.
    """
    user_id = _websocket_identity(websocket)
    if user_id is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()

    feed: ChangeFeed = websocket.app.state.feed
    queue: asyncio.Queue = asyncio.Queue()
    put = _queue_writer(queue)

    subscription = await run_in_threadpool(
        subscribe_to_conversations,
        feed,
        user_id,
        on_update=lambda conversations: put({
            "type": "conversations",
            "conversations": [c.model_dump() for c in conversations],
        }),
        on_error=lambda exc: put(_error_payload(exc)),
    )

    async def on_frame(frame: dict) -> None:
        return None

    try:
        await _pump(websocket, queue, on_frame)
    finally:
        subscription.cancel()
        logger.info(f"Conversation list subscription closed: user={user_id}")


# =============================================================================
# Users & Listings Routes
# =============================================================================

@app.put("/users/me", response_model=UserResponse, responses=ERROR_RESPONSES)
def put_my_profile(
    body: UserProfileRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> UserResponse:
    user = upsert_user_profile(db, user_id, name=body.name, email=body.email, bio=body.bio)
    return UserResponse.model_validate(user)


@app.get("/users/{profile_id}", response_model=UserResponse, responses=ERROR_RESPONSES)
def read_profile(
    profile_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> UserResponse:
    return UserResponse.model_validate(get_user(db, profile_id))


@app.get("/users/{profile_id}/listings", response_model=ListingsListResponse, responses=ERROR_RESPONSES)
def list_seller_listings(
    profile_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ListingsListResponse:
    listings = get_listings_by_seller(db, profile_id)
    data = [ListingResponse.model_validate(listing) for listing in listings]
    return ListingsListResponse(data=data, total=len(data))


@app.get("/listings", response_model=ListingsListResponse, responses=ERROR_RESPONSES)
def browse_listings(
    user_id: CurrentUser,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
) -> ListingsListResponse:
    """All listings, newest first."""
    listings = list_listings(db, category=category)
    data = [ListingResponse.model_validate(listing) for listing in listings]
    logger.debug(f"GET /listings: {len(data)} listings")
    return ListingsListResponse(data=data, total=len(data))


@app.post(
    "/listings",
    response_model=ListingResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def post_listing(
    body: ListingCreateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ListingResponse:
    listing = create_listing(
        db,
        seller_id=user_id,
        title=body.title,
        price=body.price,
        description=body.description,
        category=body.category,
    )
    return ListingResponse.model_validate(listing)


@app.get("/listings/{listing_id}", response_model=ListingResponse, responses=ERROR_RESPONSES)
def read_listing(
    listing_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ListingResponse:
    return ListingResponse.model_validate(get_listing(db, listing_id))


@app.patch("/listings/{listing_id}", response_model=ListingResponse, responses=ERROR_RESPONSES)
def patch_listing(
    listing_id: str,
    body: ListingUpdateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ListingResponse:
    """Change a listing. Only its seller may do this."""
    listing = update_listing(
        db,
        listing_id,
        actor_id=user_id,
        title=body.title,
        price=body.price,
        description=body.description,
        category=body.category,
    )
    return ListingResponse.model_validate(listing)


@app.delete("/listings/{listing_id}", response_model=StatusResponse, responses=ERROR_RESPONSES)
def remove_listing(
    listing_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> StatusResponse:
    delete_listing(db, listing_id, actor_id=user_id)
    return StatusResponse(status="deleted")


# =============================================================================
# Favorites Routes
# =============================================================================

@app.get("/users/me/favorites", response_model=FavoritesResponse, responses=ERROR_RESPONSES)
def list_my_favorites(
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> FavoritesResponse:
    listings = get_favorites(db, user_id)
    return FavoritesResponse(
        user_id=user_id,
        data=[ListingResponse.model_validate(listing) for listing in listings],
    )


@app.put("/users/me/favorites/{listing_id}", response_model=StatusResponse, responses=ERROR_RESPONSES)
def favorite_listing(
    listing_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> StatusResponse:
    added = add_favorite(db, user_id, listing_id)
    return StatusResponse(status="added" if added else "unchanged")


@app.delete("/users/me/favorites/{listing_id}", response_model=StatusResponse, responses=ERROR_RESPONSES)
def unfavorite_listing(
    listing_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> StatusResponse:
    removed = remove_favorite(db, user_id, listing_id)
    return StatusResponse(status="removed" if removed else "unchanged")


# =============================================================================
# Reports Routes
# =============================================================================

def _is_admin(user_id: str) -> bool:
    return user_id in settings.ADMIN_USER_IDS


@app.post(
    "/reports",
    response_model=ReportResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def post_report(
    body: ReportCreateRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ReportResponse:
    report = submit_report(
        db,
        reporter_id=user_id,
        target_id=body.target_id,
        target_type=body.target_type,
        reason=body.reason,
        details=body.details,
        product_title=body.product_title,
    )
    return ReportResponse.model_validate(report)


@app.get("/reports", response_model=ReportsListResponse, responses=ERROR_RESPONSES)
def get_reports(
    user_id: CurrentUser,
    status_param: Annotated[Optional[str], Query(alias="status")] = None,
    target_id: Optional[str] = None,
    target_type: Optional[str] = None,
    db: Session = Depends(get_db),
) -> ReportsListResponse:
    """
    Admins see every report matching the filters; everyone else only
    sees the reports they filed.
    """
    reporter_id = None if _is_admin(user_id) else user_id
    reports = list_reports(
        db,
        reporter_id=reporter_id,
        target_id=target_id,
        status=status_param,
        target_type=target_type,
    )
    data = [ReportResponse.model_validate(r) for r in reports]
    return ReportsListResponse(data=data, total=len(data))


@app.post("/reports/{report_id}/status", response_model=ReportResponse, responses=ERROR_RESPONSES)
def set_report_status(
    report_id: str,
    body: ReportStatusRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ReportResponse:
    if not _is_admin(user_id):
        raise ForbiddenError("Only moderators can change report status")
    report = update_report_status(db, report_id, body.status, admin_notes=body.admin_notes)
    return ReportResponse.model_validate(report)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
