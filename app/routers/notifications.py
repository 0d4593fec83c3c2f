from fastapi import APIRouter, Depends, HTTPException, status, Query, Request, Response
from fastapi_limiter.depends import RateLimiter
from pydantic import ValidationError
from typing import List, Optional

from app.clients.crm import CRMClient, CRMClientError
from app.config import settings
from app.core.logging import logger
from app.dependencies.auth import get_crm_client, require_permission
from app.routers.errors import upstream_http_error
from app.schemas.notification import (
    ALL,
    BatchRequest,
    BatchResult,
    BulkDeleteRequest,
    BulkDeleteResult,
    NotificationCreate,
    NotificationFilters,
    NotificationListResponse,
    NotificationRecord,
    NotificationStats,
    NotificationUpdate,
    NotificationView,
    WelcomeRequest,
)
from app.services.notification import (
    bulk_delete_notifications_service,
    create_notification_service,
    create_payment_reminder_batch,
    create_subscription_expiry_batch,
    create_welcome_notification_service,
    delete_notification_service,
    list_customer_notifications,
    list_notifications,
    list_pending_notifications,
    send_notification_service,
    update_notification_service,
)
from app.utils.retry import CircuitBreakerOpenException

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

UPSTREAM_ERRORS = (CRMClientError, CircuitBreakerOpenException)


async def rate_limit_callback(request: Request, response: Response, pexpire: int):
    """Custom callback for rate limit exceeded."""
    client_ip = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded", event_type="rate_limit_exceeded", ip=client_ip, path=request.url.path)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too Many Requests",
        headers={"Retry-After": str(max(1, pexpire // 1000))},
    )


send_rate_limiter = RateLimiter(
    times=settings.SEND_RATE_LIMIT_TIMES,
    seconds=settings.SEND_RATE_LIMIT_SECONDS,
    callback=rate_limit_callback,
)


def get_filters(
    search: str = Query("", description="Matches customer name/email, title and message"),
    status_filter: str = Query(ALL, alias="status"),
    type_filter: str = Query(ALL, alias="type"),
    channel: str = Query(ALL),
) -> NotificationFilters:
    try:
        return NotificationFilters(search=search, status=status_filter, type=type_filter, channel=channel)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"loc": ["query", *err["loc"]], "msg": err["msg"]} for err in e.errors()],
        )


@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    filters: NotificationFilters = Depends(get_filters),
    current_user: dict = Depends(require_permission("notification_read")),
    client: CRMClient = Depends(get_crm_client),
):
    """List notifications narrowed by search, status, type and channel, with display attributes."""
    try:
        total, views = await list_notifications(client, filters)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e)
    return NotificationListResponse(total=total, count=len(views), filters=filters, notifications=views)


@router.get("/stats", response_model=NotificationStats)
async def get_notifications_stats(
    current_user: dict = Depends(require_permission("stats_view")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        stats = await client.get_notification_stats()
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e)
    return stats or NotificationStats()


@router.get("/pending", response_model=List[NotificationView])
async def get_pending_notifications(
    current_user: dict = Depends(require_permission("notification_read")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        return await list_pending_notifications(client)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e)


@router.get("/customer/{customer_id}", response_model=List[NotificationView])
async def get_customer_notifications(
    customer_id: str,
    current_user: dict = Depends(require_permission("notification_read")),
    client: CRMClient = Depends(get_crm_client),
):
    """All notifications addressed to one customer, in the order the CRM returns them."""
    try:
        return await list_customer_notifications(client, customer_id)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Customer not found")


@router.delete("/bulk", response_model=BulkDeleteResult)
async def bulk_delete_notifications(
    bulk: BulkDeleteRequest,
    current_user: dict = Depends(require_permission("notification_delete")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        return await bulk_delete_notifications_service(client, bulk.notification_ids)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Some notifications not found")


@router.post("", response_model=NotificationRecord, status_code=status.HTTP_201_CREATED)
async def create_notification(
    notification: NotificationCreate,
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        return await create_notification_service(client, notification)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Customer not found")


@router.post("/subscription-expiry", response_model=BatchResult,
             dependencies=[Depends(send_rate_limiter)])
async def create_subscription_expiry_notifications(
    batch: BatchRequest = BatchRequest(),
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    """Create expiry notices for subscriptions ending within ``daysBefore`` days."""
    try:
        return await create_subscription_expiry_batch(client, batch.days_before)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e)


@router.post("/payment-reminders", response_model=BatchResult,
             dependencies=[Depends(send_rate_limiter)])
async def create_payment_reminder_notifications(
    batch: BatchRequest = BatchRequest(),
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        return await create_payment_reminder_batch(client, batch.days_before)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e)


@router.post("/customer/{customer_id}/welcome", response_model=NotificationRecord, status_code=status.HTTP_201_CREATED)
async def create_welcome_notification(
    customer_id: str,
    welcome: Optional[WelcomeRequest] = None,
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    message = welcome.message if welcome else None
    try:
        return await create_welcome_notification_service(client, customer_id, message)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Customer not found")


@router.get("/{id}", response_model=NotificationRecord)
async def get_notification(
    id: str,
    current_user: dict = Depends(require_permission("notification_read")),
    client: CRMClient = Depends(get_crm_client),
):
    """Retrieve details of a specific notification by ID."""
    try:
        return await client.get_notification(id)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Notification not found")


@router.put("/{id}", response_model=NotificationRecord)
async def update_notification(
    id: str,
    changes: NotificationUpdate,
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        return await update_notification_service(client, id, changes)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Notification not found")


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    id: str,
    current_user: dict = Depends(require_permission("notification_delete")),
    client: CRMClient = Depends(get_crm_client),
):
    try:
        await delete_notification_service(client, id)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Notification not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{id}/send", response_model=NotificationRecord, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(send_rate_limiter)])
async def send_notification(
    id: str,
    current_user: dict = Depends(require_permission("notification_write")),
    client: CRMClient = Depends(get_crm_client),
):
    """Ask the CRM to deliver a notification now."""
    try:
        return await send_notification_service(client, id)
    except UPSTREAM_ERRORS as e:
        raise upstream_http_error(e, "Notification not found")
