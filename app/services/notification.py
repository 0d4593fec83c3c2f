from typing import Iterable, List, Optional, Tuple

from app.clients.crm import CRMClient, CRMClientError, is_upstream_fault
from app.config import settings
from app.core.logging import logger
from app.schemas.base import BadgeColor
from app.schemas.notification import (
    ALL,
    BatchResult,
    BulkDeleteResult,
    ChannelIcon,
    NotificationChannel,
    NotificationCreate,
    NotificationFilters,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    NotificationUpdate,
    NotificationView,
    ProcessingSummary,
)
from app.utils.retry import CircuitBreakerOpenException, async_retry

STATUS_COLORS = {
    NotificationStatus.SENT: BadgeColor.BLUE,
    NotificationStatus.DELIVERED: BadgeColor.GREEN,
    NotificationStatus.FAILED: BadgeColor.RED,
    NotificationStatus.PENDING: BadgeColor.YELLOW,
}

TYPE_COLORS = {
    NotificationType.SUBSCRIPTION_EXPIRY: BadgeColor.ORANGE,
    NotificationType.PAYMENT_REMINDER: BadgeColor.PURPLE,
    NotificationType.WELCOME: BadgeColor.BLUE,
    NotificationType.CUSTOM: BadgeColor.GRAY,
}

CHANNEL_ICONS = {
    NotificationChannel.EMAIL: ChannelIcon.MAIL,
    NotificationChannel.SMS: ChannelIcon.PHONE,
    NotificationChannel.PUSH: ChannelIcon.BELL,
    NotificationChannel.ALL: ChannelIcon.MULTI_CHANNEL,
}


def _lookup(table, enum_cls, value, default):
    try:
        member = enum_cls(value)
    except ValueError:
        return default
    return table.get(member, default)


def status_color(status: str) -> BadgeColor:
    return _lookup(STATUS_COLORS, NotificationStatus, status, BadgeColor.GRAY)


def type_color(notification_type: str) -> BadgeColor:
    return _lookup(TYPE_COLORS, NotificationType, notification_type, BadgeColor.GRAY)


def channel_icon(channel: str) -> ChannelIcon:
    return _lookup(CHANNEL_ICONS, NotificationChannel, channel, ChannelIcon.MAIL)


def resolve_customer(notification: NotificationRecord) -> Tuple[str, str]:
    """Return (name, email) for searching; a bare customer id has no email."""
    customer = notification.customer
    if isinstance(customer, str):
        return customer, ""
    if customer is None:
        return "", ""
    return customer.name or "", customer.email or ""


def matches_search(notification: NotificationRecord, term: str) -> bool:
    if not term:
        return True
    needle = term.lower()
    name, email = resolve_customer(notification)
    return any(
        needle in field.lower()
        for field in (name, email, notification.title or "", notification.message or "")
    )


def filter_notifications(
    notifications: Iterable[NotificationRecord],
    filters: Optional[NotificationFilters] = None,
) -> List[NotificationRecord]:
    """Keep the records matching every active criterion, in their original order."""
    filters = filters or NotificationFilters()
    return [
        notification
        for notification in notifications
        if matches_search(notification, filters.search)
        and (filters.status == ALL or notification.status == filters.status)
        and (filters.type == ALL or notification.type == filters.type)
        and (filters.channel == ALL or notification.channel == filters.channel)
    ]


def project_notification(notification: NotificationRecord) -> NotificationView:
    name, email = resolve_customer(notification)
    return NotificationView(
        **dict(notification),
        customer_name=name or "Unknown",
        customer_email=email,
        status_color=status_color(notification.status),
        type_color=type_color(notification.type),
        channel_icon=channel_icon(notification.channel),
    )


async def list_notifications(client: CRMClient, filters: NotificationFilters) -> Tuple[int, List[NotificationView]]:
    notifications = await client.get_all_notifications()
    filtered = filter_notifications(notifications, filters)
    logger.info(
        "Notifications filtered",
        total=len(notifications),
        matched=len(filtered),
        status=filters.status,
        type=filters.type,
        channel=filters.channel,
        search=bool(filters.search),
    )
    return len(notifications), [project_notification(n) for n in filtered]


async def list_pending_notifications(client: CRMClient) -> List[NotificationView]:
    notifications = await client.get_pending_notifications()
    return [project_notification(n) for n in notifications]


async def list_customer_notifications(client: CRMClient, customer_id: str) -> List[NotificationView]:
    notifications = await client.get_notifications_by_customer(customer_id)
    logger.info("Customer notifications fetched", customer_id=customer_id, count=len(notifications))
    return [project_notification(n) for n in notifications]


async def create_notification_service(client: CRMClient, notification: NotificationCreate) -> NotificationRecord:
    record = await client.create_notification(notification)
    logger.info("Notification created", notification_id=record.id, type=record.type.value, channel=record.channel.value)
    return record


async def update_notification_service(client: CRMClient, notification_id: str, changes: NotificationUpdate) -> NotificationRecord:
    record = await client.update_notification(notification_id, changes)
    logger.info("Notification updated", notification_id=notification_id)
    return record


async def delete_notification_service(client: CRMClient, notification_id: str) -> None:
    await client.delete_notification(notification_id)
    logger.info("Notification deleted", notification_id=notification_id)


async def bulk_delete_notifications_service(client: CRMClient, notification_ids: List[str]) -> BulkDeleteResult:
    result = await client.bulk_delete_notifications(notification_ids)
    logger.info("Notifications bulk deleted", requested=len(notification_ids), deleted=result.deleted_count)
    return result


async def send_notification_service(client: CRMClient, notification_id: str) -> NotificationRecord:
    try:
        record = await client.send_notification(notification_id)
    except CRMClientError as e:
        logger.error("Failed to send notification", notification_id=notification_id, error=str(e))
        raise
    logger.info("Notification sent", notification_id=notification_id, status=record.status.value)
    return record


async def create_welcome_notification_service(client: CRMClient, customer_id: str, message: Optional[str] = None) -> NotificationRecord:
    record = await client.create_welcome_notification(customer_id, message)
    logger.info("Welcome notification created", notification_id=record.id, customer_id=customer_id)
    return record


async def create_subscription_expiry_batch(client: CRMClient, days_before: int = 3) -> BatchResult:
    result = await client.create_subscription_expiry_notifications(days_before)
    logger.info("Subscription expiry notifications created", created=result.created, days_before=days_before)
    return result


async def create_payment_reminder_batch(client: CRMClient, days_before: int = 3) -> BatchResult:
    result = await client.create_payment_reminder_notifications(days_before)
    logger.info("Payment reminder notifications created", created=result.created, days_before=days_before)
    return result


BATCH_JOBS = {
    "subscription_expiry": create_subscription_expiry_batch,
    "payment_reminders": create_payment_reminder_batch,
}


class RetryableCRMError(Exception):
    pass


@async_retry(tries=3, delay=2, backoff=2, exceptions=(RetryableCRMError,))
async def _run_batch(job_name: str, days_before: int) -> BatchResult:
    async with CRMClient(token=settings.CRM_SERVICE_TOKEN) as client:
        try:
            return await BATCH_JOBS[job_name](client, days_before)
        except CRMClientError as e:
            if is_upstream_fault(e):
                raise RetryableCRMError(str(e)) from e
            raise


async def run_scheduled_batch(job_name: str, days_before: int = 3) -> Optional[BatchResult]:
    """Scheduler entry point: run one notification batch and never raise."""
    logger.info("Running scheduled notification batch", job=job_name)
    try:
        result = await _run_batch(job_name, days_before)
    except Exception as e:
        logger.error("Scheduled notification batch failed", job=job_name, error=str(e), error_type=type(e).__name__)
        return None
    logger.info("Finished scheduled notification batch", job=job_name, created=result.created)
    return result


async def process_pending_notifications(client: CRMClient) -> ProcessingSummary:
    """Send every pending notification that has a customer with an email address.

    One failed send does not stop the pass; it is counted and the next
    notification is tried.
    """
    pending = await client.get_pending_notifications()
    summary = ProcessingSummary(total=len(pending))
    for notification in pending:
        _, email = resolve_customer(notification)
        if not email:
            logger.warning("Skipping pending notification without customer email", notification_id=notification.id)
            summary.skipped += 1
            continue
        try:
            await client.send_notification(notification.id)
        except (CRMClientError, CircuitBreakerOpenException) as e:
            logger.error("Failed to send pending notification", notification_id=notification.id, error=str(e))
            summary.failed += 1
            continue
        summary.sent += 1
    logger.info(
        "Pending notifications processed",
        total=summary.total,
        sent=summary.sent,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary


async def run_pending_notifications() -> Optional[ProcessingSummary]:
    """Scheduler entry point for the hourly pending pass; never raises."""
    logger.info("Running scheduled notification batch", job="process_pending")
    try:
        async with CRMClient(token=settings.CRM_SERVICE_TOKEN) as client:
            return await process_pending_notifications(client)
    except Exception as e:
        logger.error("Scheduled notification batch failed", job="process_pending", error=str(e), error_type=type(e).__name__)
        return None
