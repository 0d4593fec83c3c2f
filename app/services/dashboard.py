import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence

from app.core.logging import logger
from app.schemas.base import BadgeColor, ensure_utc
from app.schemas.dashboard import (
    ActivityIcon,
    ActivityItem,
    ActivityType,
    CampaignRecord,
    CampaignSummary,
    CustomerStats,
    CustomerSummary,
    DashboardOverview,
    DashboardStats,
    NotificationSummary,
    SubscriptionStats,
    SubscriptionSummary,
    UserRecord,
    UserSummary,
)
from app.schemas.notification import NotificationRecord, NotificationStatus
from app.services.notification import resolve_customer

MAX_ACTIVITY_ITEMS = 6
MAX_RECENT_NOTIFICATIONS = 3
MAX_RECENT_CAMPAIGNS = 2
NOTIFICATION_WINDOW = timedelta(hours=24)
CAMPAIGN_WINDOW = timedelta(days=7)
EXPIRING_OFFSET = timedelta(hours=2)
CUSTOMER_ACTIVITY_OFFSET = timedelta(hours=4)
SYSTEM_STATUS_OFFSET = timedelta(minutes=30)

NOTIFICATION_ACTIVITY_COLORS = {
    NotificationStatus.SENT: BadgeColor.GREEN,
    NotificationStatus.PENDING: BadgeColor.YELLOW,
}


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class DashboardLoadError(Exception):
    """Raised when any of the dashboard queries fails; nothing partial is kept."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def format_relative_time(timestamp: datetime, now: Optional[datetime] = None) -> str:
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    seconds = (now - ensure_utc(timestamp)).total_seconds()
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return _plural(int(seconds // 60), "minute")
    if seconds < 86400:
        return _plural(int(seconds // 3600), "hour")
    return _plural(int(seconds // 86400), "day")


def compute_stats(
    customer_stats: Optional[CustomerStats],
    notifications: Optional[Sequence[NotificationRecord]],
    subscription_stats: Optional[SubscriptionStats],
    campaigns: Optional[Sequence[CampaignRecord]],
    users: Optional[Sequence[UserRecord]],
) -> DashboardStats:
    customer_stats = customer_stats or CustomerStats()
    subscription_stats = subscription_stats or SubscriptionStats()
    notifications = notifications or []
    campaigns = campaigns or []
    users = users or []

    by_status = {status: 0 for status in NotificationStatus}
    for notification in notifications:
        by_status[notification.status] += 1

    return DashboardStats(
        users=UserSummary(
            total=len(users),
            active=sum(1 for user in users if user.is_active),
        ),
        customers=CustomerSummary(**customer_stats.model_dump()),
        campaigns=CampaignSummary(
            total=len(campaigns),
            active=sum(1 for campaign in campaigns if campaign.status == "active"),
            total_sent=sum(campaign.statistics.sent_count or 0 for campaign in campaigns),
        ),
        notifications=NotificationSummary(
            total=len(notifications),
            pending=by_status[NotificationStatus.PENDING],
            sent=by_status[NotificationStatus.SENT],
            delivered=by_status[NotificationStatus.DELIVERED],
            failed=by_status[NotificationStatus.FAILED],
        ),
        subscriptions=SubscriptionSummary(**subscription_stats.model_dump()),
    )


def _most_recent(records, since: datetime, limit: int):
    recent = [record for record in records if ensure_utc(record.created_at) >= since]
    recent.sort(key=lambda record: ensure_utc(record.created_at), reverse=True)
    return recent[:limit]


def build_activity(
    customer_stats: Optional[CustomerStats],
    notifications: Optional[Sequence[NotificationRecord]],
    subscription_stats: Optional[SubscriptionStats],
    campaigns: Optional[Sequence[CampaignRecord]],
    active_users: int,
    now: datetime,
) -> List[ActivityItem]:
    """Synthesize the recent activity feed, newest first, at most six items."""
    now = ensure_utc(now)
    items = []

    def add(item_id, item_type, title, description, timestamp, icon, color):
        items.append(ActivityItem(
            id=item_id,
            type=item_type,
            title=title,
            description=description,
            timestamp=timestamp,
            time_ago=format_relative_time(timestamp, now),
            icon=icon,
            color=color,
        ))

    for notification in _most_recent(notifications or [], now - NOTIFICATION_WINDOW, MAX_RECENT_NOTIFICATIONS):
        name, _ = resolve_customer(notification)
        add(
            f"notification-{notification.id}",
            ActivityType.NOTIFICATION,
            notification.title or "Notification",
            f"{notification.status.value.capitalize()} via {notification.channel.value} to {name or 'Unknown'}",
            ensure_utc(notification.created_at),
            ActivityIcon.BELL,
            NOTIFICATION_ACTIVITY_COLORS.get(notification.status, BadgeColor.RED),
        )

    for campaign in _most_recent(campaigns or [], now - CAMPAIGN_WINDOW, MAX_RECENT_CAMPAIGNS):
        add(
            f"campaign-{campaign.id}",
            ActivityType.CAMPAIGN,
            f"Campaign: {campaign.name}",
            f"Status {campaign.status}, {campaign.statistics.sent_count} emails sent",
            ensure_utc(campaign.created_at),
            ActivityIcon.MAIL,
            BadgeColor.PURPLE,
        )

    expiring_soon = subscription_stats.expiring_soon if subscription_stats else 0
    if expiring_soon > 0:
        add(
            "subscriptions-expiring",
            ActivityType.SUBSCRIPTION,
            "Subscriptions expiring soon",
            f"{expiring_soon} subscriptions need attention",
            now - EXPIRING_OFFSET,
            ActivityIcon.ALERT,
            BadgeColor.ORANGE,
        )

    subscribed = customer_stats.subscribed if customer_stats else 0
    if subscribed > 0:
        add(
            "customer-activity",
            ActivityType.CUSTOMER,
            "Customer activity",
            f"{subscribed} customers currently subscribed",
            now - CUSTOMER_ACTIVITY_OFFSET,
            ActivityIcon.USERS,
            BadgeColor.BLUE,
        )

    add(
        "system-status",
        ActivityType.USER,
        "System status",
        f"All systems operational, {active_users} active users",
        now - SYSTEM_STATUS_OFFSET,
        ActivityIcon.CHECK,
        BadgeColor.GREEN,
    )

    items.sort(key=lambda item: item.timestamp, reverse=True)
    return items[:MAX_ACTIVITY_ITEMS]


def aggregate(
    customer_stats: Optional[CustomerStats],
    notifications: Optional[Sequence[NotificationRecord]],
    subscription_stats: Optional[SubscriptionStats],
    campaigns: Optional[Sequence[CampaignRecord]],
    users: Optional[Sequence[UserRecord]],
    now: Optional[datetime] = None,
) -> DashboardOverview:
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    stats = compute_stats(customer_stats, notifications, subscription_stats, campaigns, users)
    activity = build_activity(
        customer_stats,
        notifications,
        subscription_stats,
        campaigns,
        stats.users.active,
        now,
    )
    return DashboardOverview(stats=stats, recent_activity=activity, generated_at=now)


def _retrieve_outcome(future: asyncio.Future) -> None:
    # A failure with no waiter left is already logged and kept on the loader.
    if not future.cancelled():
        future.exception()


class DashboardLoader:
    """Loads the dashboard once and remembers the outcome.

    ``load()`` is the only way in. A loaded dashboard is returned as is, a
    second caller arriving while a load is in flight waits for that same load,
    and a failed load is retried on the next call. ``reload()`` forces a fresh
    fetch. On failure the previously loaded overview is kept untouched.
    """

    def __init__(self, client, clock=None):
        self.client = client
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = LoadState.IDLE
        self.overview: Optional[DashboardOverview] = None
        self.error: Optional[DashboardLoadError] = None
        self._inflight: Optional[asyncio.Future] = None

    async def load(self) -> DashboardOverview:
        if self.state == LoadState.LOADED:
            return self.overview
        if self.state == LoadState.LOADING:
            return await asyncio.shield(self._inflight)
        return await self._start()

    async def reload(self) -> DashboardOverview:
        if self.state == LoadState.LOADING:
            return await asyncio.shield(self._inflight)
        return await self._start()

    async def _start(self) -> DashboardOverview:
        self.state = LoadState.LOADING
        self._inflight = asyncio.ensure_future(self._fetch())
        self._inflight.add_done_callback(_retrieve_outcome)
        return await asyncio.shield(self._inflight)

    async def _fetch(self) -> DashboardOverview:
        # Runs to completion even when every waiter is cancelled; it alone
        # leaves the LOADING state.
        logger.info("Loading dashboard data")
        try:
            customer_stats, notifications, subscription_stats, campaigns, users = await asyncio.gather(
                self.client.get_customer_stats(),
                self.client.get_all_notifications(),
                self.client.get_subscription_stats(),
                self.client.get_all_email_campaigns(),
                self.client.get_all_users(),
            )
            overview = aggregate(customer_stats, notifications, subscription_stats, campaigns, users, now=self.clock())
        except Exception as e:
            self.error = DashboardLoadError(f"Failed to load dashboard data: {e}", cause=e)
            self.state = LoadState.FAILED
            self._inflight = None
            logger.error("Dashboard load failed", error=str(e), error_type=type(e).__name__)
            raise self.error from e

        self.overview = overview
        self.error = None
        self.state = LoadState.LOADED
        self._inflight = None
        logger.info(
            "Dashboard loaded",
            activity_count=len(self.overview.recent_activity),
            notifications=self.overview.stats.notifications.total,
            campaigns=self.overview.stats.campaigns.total,
        )
        return self.overview
