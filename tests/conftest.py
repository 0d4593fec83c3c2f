from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.clients.crm import CRMNotFoundError, crm_circuit_breaker
from app.dependencies.auth import get_crm_client, get_current_user
from app.routers.notifications import send_rate_limiter
from app.schemas.dashboard import CampaignRecord, CustomerStats, SubscriptionStats, UserRecord
from app.schemas.notification import (
    BatchResult,
    BulkDeleteResult,
    NotificationRecord,
    NotificationStats,
    NotificationStatus,
)

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)

ADMIN_USER = {
    "_id": "u-admin",
    "username": "admin",
    "email": "admin@example.com",
    "role": "admin",
    "permissions": [],
    "isActive": True,
}


def make_notification(id="n1", age=timedelta(hours=1), customer=None, **overrides) -> NotificationRecord:
    payload = {
        "_id": id,
        "customer": customer if customer is not None else {"_id": "c1", "name": "Ahmed Mohamed", "email": "ahmed@example.com"},
        "type": "welcome",
        "title": "Welcome aboard",
        "message": "Thanks for joining us",
        "channel": "email",
        "status": "sent",
        "createdAt": (NOW - age).isoformat(),
    }
    payload.update(overrides)
    return NotificationRecord.model_validate(payload)


def make_campaign(id="camp1", age=timedelta(days=1), status="active", sent=0, name="Spring promo") -> CampaignRecord:
    return CampaignRecord.model_validate({
        "_id": id,
        "name": name,
        "status": status,
        "statistics": {"sentCount": sent},
        "createdAt": (NOW - age).isoformat(),
    })


def make_user(id="u1", active=True) -> UserRecord:
    return UserRecord.model_validate({"_id": id, "isActive": active})


class FakeCRMClient:
    """In-memory stand-in for CRMClient; set attributes to shape the responses."""

    def __init__(self):
        self.customer_stats = CustomerStats(total=10, subscribed=4, interested=3, expired=2, not_interested=1, total_spent=1500)
        self.subscription_stats = SubscriptionStats(total=8, active=5, expired=2, expiring_soon=1, total_revenue=4200)
        self.notifications = []
        self.campaigns = []
        self.users = [make_user("u1", True), make_user("u2", False)]
        self.notification_stats = NotificationStats(total=6, pending=2, sent=3, failed=1)
        self.failures = {}
        self.calls = []
        self.received = {}
        self.gate = None

    async def _answer(self, name, value):
        self.calls.append(name)
        if self.gate is not None:
            await self.gate.wait()
        if name in self.failures:
            raise self.failures[name]
        return value

    async def get_customer_stats(self):
        return await self._answer("get_customer_stats", self.customer_stats)

    async def get_all_notifications(self):
        return await self._answer("get_all_notifications", self.notifications)

    async def get_subscription_stats(self):
        return await self._answer("get_subscription_stats", self.subscription_stats)

    async def get_all_email_campaigns(self):
        return await self._answer("get_all_email_campaigns", self.campaigns)

    async def get_all_users(self):
        return await self._answer("get_all_users", self.users)

    async def get_notification(self, notification_id):
        for notification in self.notifications:
            if notification.id == notification_id:
                return await self._answer("get_notification", notification)
        raise CRMNotFoundError("Notification not found", 404)

    async def send_notification(self, notification_id):
        self.received["send_notification"] = notification_id
        notification = await self.get_notification(notification_id)
        return await self._answer("send_notification", notification.model_copy(update={"status": NotificationStatus.SENT}))

    async def get_notification_stats(self):
        return await self._answer("get_notification_stats", self.notification_stats)

    async def get_pending_notifications(self):
        pending = [n for n in self.notifications if n.status == NotificationStatus.PENDING]
        return await self._answer("get_pending_notifications", pending)

    async def get_notifications_by_customer(self, customer_id):
        self.received["get_notifications_by_customer"] = customer_id
        matching = [
            n for n in self.notifications
            if (n.customer if isinstance(n.customer, str) else getattr(n.customer, "id", None)) == customer_id
        ]
        return await self._answer("get_notifications_by_customer", matching)

    async def create_notification(self, notification):
        self.received["create_notification"] = notification
        record = make_notification(
            "created",
            age=timedelta(0),
            customer=notification.customer,
            type=notification.type.value,
            title=notification.title,
            message=notification.message,
            channel=notification.channel.value,
            status="pending",
        )
        return await self._answer("create_notification", record)

    async def update_notification(self, notification_id, changes):
        self.received["update_notification"] = changes
        notification = await self.get_notification(notification_id)
        updated = notification.model_copy(update=changes.model_dump(exclude_none=True))
        return await self._answer("update_notification", updated)

    async def delete_notification(self, notification_id):
        notification = await self.get_notification(notification_id)
        await self._answer("delete_notification", None)
        self.notifications.remove(notification)

    async def bulk_delete_notifications(self, notification_ids):
        self.received["bulk_delete_notifications"] = list(notification_ids)
        return await self._answer("bulk_delete_notifications", BulkDeleteResult(deleted_count=len(notification_ids)))

    async def create_subscription_expiry_notifications(self, days_before=3):
        self.received["create_subscription_expiry_notifications"] = days_before
        return await self._answer("create_subscription_expiry_notifications", BatchResult(created=2, message="Created 2 notifications"))

    async def create_payment_reminder_notifications(self, days_before=3):
        self.received["create_payment_reminder_notifications"] = days_before
        return await self._answer("create_payment_reminder_notifications", BatchResult(created=1, message="Created 1 notifications"))

    async def create_welcome_notification(self, customer_id, message=None):
        self.received["create_welcome_notification"] = (customer_id, message)
        record = make_notification(f"welcome-{customer_id}", age=timedelta(0), customer=customer_id, message=message or "Welcome")
        return await self._answer("create_welcome_notification", record)


@pytest.fixture(autouse=True)
def reset_circuit_breaker():
    crm_circuit_breaker.reset()
    yield
    crm_circuit_breaker.reset()


@pytest.fixture
def fake_crm():
    return FakeCRMClient()


@pytest.fixture
def current_user():
    return dict(ADMIN_USER)


@pytest.fixture
async def client(fake_crm, current_user):
    async def _no_limit():
        return None

    app.dependency_overrides[get_crm_client] = lambda: fake_crm
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[send_rate_limiter] = _no_limit
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
