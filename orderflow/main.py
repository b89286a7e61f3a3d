"""
FastAPI Application Entry Point

Order Fulfillment Pipeline - Hybrid Architecture
Runs against mock payment/notification adapters in development and
Stripe, Twilio and SendGrid in staging/production.

Endpoints:
    - POST /api/orders: Create order (any intake channel)
    - GET /api/orders: List orders
    - GET /api/orders/status: Latest order by order number or phone
    - PATCH /api/orders/{id}/contact: Update contact details
    - POST /api/orders/{id}/authorization: Create or fetch payment authorization
    - POST /api/orders/{id}/tip: Apply tip to the pending authorization
    - POST /api/orders/{id}/notifications/{milestone}: Send milestone message
    - POST /webhook/stripe: Payment provider webhook
    - GET /api/kitchen/tickets: Active kitchen queue
    - POST /api/kitchen/tickets/{id}/advance: Advance a ticket
    - GET /api/kitchen/reconciliation: Kitchen-bound orders without a ticket
    - GET /api/menu/unavailable: Current 86-list
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from orderflow.core.config import get_settings, setup_logging
from orderflow.core.errors import OrderflowError, PaymentProviderError, TicketMaterializationFailed
from orderflow.database import get_db, init_db, engine
from orderflow.models import Milestone, OrderSource, OrderStatus, PaymentChoice, PaymentStatus
from orderflow.schemas import (
    AdvanceResponse,
    AuthorizationResponse,
    ContactUpdate,
    ErrorResponse,
    HealthResponse,
    KitchenQueueResponse,
    KitchenTicketResponse,
    NotificationDispatchResponse,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusResponse,
    ReconciliationResponse,
    TipRequest,
    TipResponse,
    UnavailableItemsResponse,
    UnticketedOrder,
    WebhookAck,
)
from orderflow.services.authorization import PaymentAuthorizationManager
from orderflow.services.availability import AvailabilityProvider, DatabaseAvailability
from orderflow.services.dispatcher import NotificationDispatcher
from orderflow.services.fulfillment import WebhookFulfillmentProcessor
from orderflow.services.kitchen import KitchenTicketQueue
from orderflow.services.notifications import BaseNotificationService, get_notification_service
from orderflow.services.orders import OrderStore, status_message
from orderflow.services.payment import BasePaymentService, get_payment_service
from orderflow.tasks import send_milestone_notification

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

NotificationEnqueuer = Callable[[str, Milestone], None]


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Log service configuration
    payment_service = get_payment_service()
    notification_service = get_notification_service()
    logger.info(f"Payment Service: {payment_service.provider_name}")
    logger.info(f"Notification Service: {notification_service.provider_name}")

    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; every webhook will be rejected")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order fulfillment pipeline: order intake, payment authorization with "
        "tip adjustment, webhook-driven fulfillment, kitchen queue and "
        "exactly-once customer notifications."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_availability(db: AsyncSession = Depends(get_db)) -> AvailabilityProvider:
    return DatabaseAvailability(db)


def enqueue_notification(order_id: str, milestone: Milestone) -> None:
    """Hand a milestone notification to the Celery worker."""
    try:
        send_milestone_notification.delay(order_id, Milestone(milestone).value)
    except Exception:
        # The order state is already committed; the reconciliation sweep and
        # the manual notification endpoint cover a lost enqueue
        logger.exception(f"Could not enqueue {milestone} notification for order {order_id}")


def get_notification_enqueuer() -> NotificationEnqueuer:
    return enqueue_notification


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "kitchen": "/api/kitchen/tickets",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
    notification_service: BaseNotificationService = Depends(get_notification_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    # Check payment service
    payment_status = "healthy" if await payment_service.health_check() else "unhealthy"

    # Check notification service
    notification_status = "healthy" if await notification_service.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderCreateResponse,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    availability: AvailabilityProvider = Depends(get_availability),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> OrderCreateResponse:
    """
    Create a new order from any intake channel.

    Phone and KDS orders that pay now get their payment authorization
    immediately, so the payment link can be sent while the caller is on
    the line. Web checkout authorizes separately once the customer is on
    the payment page.

    Pay-at-pickup orders go to the kitchen straight away; nothing else will
    trigger their ticket.
    """
    logger.info(f"Creating {order_data.source.value} order for: {order_data.customer_name}")

    store = OrderStore(db, availability=availability, settings=settings)
    order = await store.create_order(order_data)

    authorization_id = None
    client_secret = None
    message = "Order placed successfully!"

    if order.source != OrderSource.ONLINE and order.payment_choice == PaymentChoice.PAY_NOW:
        manager = PaymentAuthorizationManager(db, payment_service, settings)
        try:
            handle = await manager.ensure_authorization(order.id)
            authorization_id = handle.authorization_id
            client_secret = handle.client_secret
        except PaymentProviderError:
            logger.exception(f"Authorization for new order {order.id} failed")
            message = "Order placed; payment authorization is pending."
        order = await store.get_order(order.id)

    if order.payment_status == PaymentStatus.NEEDS_PAYMENT:
        try:
            await KitchenTicketQueue(db).materialize(order.id)
        except TicketMaterializationFailed:
            # Picked up by the reconciliation sweep
            logger.exception(f"Kitchen ticket for pay-at-pickup order {order.id} failed")
        order = await store.get_order(order.id)

    return OrderCreateResponse(
        success=True,
        message=message,
        order_id=order.id,
        order_number=order.order_number,
        order_status=order.order_status.value,
        payment_status=order.payment_status.value,
        total_charged=order.total_charged,
        authorization_id=authorization_id,
        client_secret=client_secret,
    )


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    """Retrieve paginated list of orders."""
    total, orders = await OrderStore(db, settings=settings).list_orders(skip, limit, status)

    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/orders/status",
    response_model=OrderStatusResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Look up an order's status",
)
async def get_order_status(
    order_number: Optional[int] = Query(None, ge=1),
    phone: Optional[str] = Query(None, max_length=30),
    db: AsyncSession = Depends(get_db),
) -> OrderStatusResponse:
    """Latest order by order number, or else by the customer's phone number."""
    order = await OrderStore(db, settings=settings).find_latest_order(order_number, phone)
    return OrderStatusResponse(
        order_id=order.id,
        order_number=order.order_number,
        order_status=order.order_status,
        payment_status=order.payment_status,
        message=status_message(order, settings.restaurant_name),
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await OrderStore(db, settings=settings).get_order(order_id)
    return OrderResponse.model_validate(order)


@app.patch(
    "/api/orders/{order_id}/contact",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_contact(
    order_id: str,
    contact: ContactUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Update customer name, phone or SMS consent before payment."""
    order = await OrderStore(db, settings=settings).update_contact(
        order_id,
        customer_name=contact.customer_name,
        customer_phone=contact.customer_phone,
        sms_opt_in=contact.sms_opt_in,
    )
    return OrderResponse.model_validate(order)


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/authorization",
    response_model=AuthorizationResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Create or fetch the order's payment authorization",
)
async def ensure_authorization(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> AuthorizationResponse:
    handle = await PaymentAuthorizationManager(db, payment_service, settings).ensure_authorization(
        order_id
    )
    return AuthorizationResponse(
        order_id=handle.order_id,
        authorization_id=handle.authorization_id,
        client_secret=handle.client_secret,
        amount=handle.amount,
    )


@app.post(
    "/api/orders/{order_id}/tip",
    response_model=TipResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    tags=["Payments"],
    summary="Apply a tip to the pending authorization",
)
async def apply_tip(
    order_id: str,
    tip_request: TipRequest,
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> TipResponse:
    result = await PaymentAuthorizationManager(db, payment_service, settings).apply_tip(
        order_id, tip_request.tip_cents
    )
    return TipResponse(
        order_id=result.order_id,
        tip=result.tip,
        base_amount=result.base_amount,
        new_total=result.new_total,
        authorization_status=result.authorization_status,
    )


@app.post(
    "/webhook/stripe",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Stripe Webhook Endpoint",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
    enqueue: NotificationEnqueuer = Depends(get_notification_enqueuer),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
) -> Any:
    """
    Handle payment events from Stripe.

    Configure this URL in the Stripe dashboard:
        https://your-domain.com/webhook/stripe

    The signature is checked against the raw body before anything is read
    from it. Once the payment is recorded the delivery is acknowledged even
    if the kitchen ticket could not be written. Duplicate deliveries are
    acknowledged without changing money state.
    """
    # Raw body for signature verification
    body = await request.body()
    processor = WebhookFulfillmentProcessor(db, payment_service, settings=settings)

    try:
        outcome = await processor.handle(body, stripe_signature)
    except asyncio.TimeoutError:
        logger.error(f"Webhook not recorded within {settings.webhook_timeout_seconds}s")
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "error": "webhook_timeout",
                "detail": "Event could not be processed in time; please redeliver.",
            },
        )

    if outcome.order_paid:
        enqueue(outcome.order_id, Milestone.PAID)

    return WebhookAck(
        event_type=outcome.event_type,
        action=outcome.action,
        order_id=outcome.order_id,
        ticket_id=outcome.ticket_id,
    )


# =============================================================================
# NOTIFICATION ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/notifications/{milestone}",
    response_model=NotificationDispatchResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Notifications"],
    summary="Send (or retry) a milestone notification",
)
async def send_notification(
    order_id: str,
    milestone: Milestone,
    db: AsyncSession = Depends(get_db),
    notification_service: BaseNotificationService = Depends(get_notification_service),
) -> NotificationDispatchResponse:
    """
    Already-sent milestones, and milestones the order has not reached yet,
    are reported as skipped.
    """
    result = await NotificationDispatcher(db, notification_service, settings).notify(
        order_id, milestone
    )
    return NotificationDispatchResponse(
        order_id=result.order_id,
        milestone=result.milestone,
        status=result.status,
        channel=result.channel,
        message_id=result.message_id,
        reason=result.reason,
    )


# =============================================================================
# KITCHEN ENDPOINTS
# =============================================================================

@app.get(
    "/api/kitchen/tickets",
    response_model=KitchenQueueResponse,
    tags=["Kitchen"],
    summary="Active kitchen queue",
)
async def list_kitchen_tickets(
    db: AsyncSession = Depends(get_db),
) -> KitchenQueueResponse:
    tickets = await KitchenTicketQueue(db).list_active()
    return KitchenQueueResponse(
        total=len(tickets),
        tickets=[KitchenTicketResponse.model_validate(t) for t in tickets],
    )


@app.post(
    "/api/kitchen/tickets/{ticket_id}/advance",
    response_model=AdvanceResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Kitchen"],
    summary="Advance a ticket one step",
)
async def advance_kitchen_ticket(
    ticket_id: int,
    db: AsyncSession = Depends(get_db),
    enqueue: NotificationEnqueuer = Depends(get_notification_enqueuer),
) -> AdvanceResponse:
    """new -> in_progress (customer notified: accepted) -> done (notified: ready)."""
    result = await KitchenTicketQueue(db).advance(ticket_id)

    if result.changed and result.milestone is not None:
        enqueue(result.ticket.order_id, result.milestone)

    return AdvanceResponse(
        ticket=KitchenTicketResponse.model_validate(result.ticket),
        previous_status=result.previous_status.value,
        changed=result.changed,
        milestone=result.milestone,
    )


@app.get(
    "/api/kitchen/reconciliation",
    response_model=ReconciliationResponse,
    tags=["Kitchen"],
    summary="Kitchen-bound orders without a kitchen ticket",
)
async def kitchen_reconciliation(
    grace_seconds: Optional[int] = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
) -> ReconciliationResponse:
    grace = settings.reconciliation_grace_seconds if grace_seconds is None else grace_seconds
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace)
    orders = await KitchenTicketQueue(db).find_unticketed_orders(cutoff)

    return ReconciliationResponse(
        grace_seconds=grace,
        total=len(orders),
        orders=[
            UnticketedOrder(order_id=o.id, order_number=o.order_number, paid_at=o.paid_at)
            for o in orders
        ],
    )


# =============================================================================
# MENU ENDPOINTS
# =============================================================================

@app.get(
    "/api/menu/unavailable",
    response_model=UnavailableItemsResponse,
    tags=["Menu"],
    summary="Current 86-list",
)
async def list_unavailable_items(
    availability: AvailabilityProvider = Depends(get_availability),
) -> UnavailableItemsResponse:
    item_ids = await availability.unavailable_item_ids()
    return UnavailableItemsResponse(item_ids=sorted(item_ids))


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderflowError)
async def orderflow_exception_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Render pipeline errors with their kind and a customer-safe message."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind, "detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "validation_error", "detail": problems},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
