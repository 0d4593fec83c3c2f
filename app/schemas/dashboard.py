from pydantic import Field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from app.schemas.base import CRMModel, TimestampedModel, BadgeColor


class CampaignStatistics(CRMModel):
    total_recipients: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    failed_count: int = 0


class CampaignRecord(TimestampedModel):
    id: str = Field(alias="_id")
    name: str = ""
    status: str = "draft"
    statistics: CampaignStatistics = Field(default_factory=CampaignStatistics)
    created_at: datetime


class SubscriptionStats(CRMModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    expiring_soon: int = 0
    total_revenue: float = 0


class CustomerStats(CRMModel):
    total: int = 0
    subscribed: int = 0
    interested: int = 0
    expired: int = 0
    not_interested: int = 0
    total_spent: float = 0


class UserRecord(CRMModel):
    id: str = Field(alias="_id")
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    is_active: bool = False


class ActivityType(str, Enum):
    CUSTOMER = "customer"
    NOTIFICATION = "notification"
    SUBSCRIPTION = "subscription"
    CAMPAIGN = "campaign"
    USER = "user"


class ActivityIcon(str, Enum):
    BELL = "bell"
    MAIL = "mail"
    ALERT = "alert-circle"
    USERS = "users"
    CHECK = "check-circle"


class ActivityItem(CRMModel):
    id: str
    type: ActivityType
    title: str
    description: str
    timestamp: datetime
    time_ago: str
    icon: ActivityIcon
    color: BadgeColor


class UserSummary(CRMModel):
    total: int = 0
    active: int = 0


class CustomerSummary(CRMModel):
    total: int = 0
    subscribed: int = 0
    interested: int = 0
    expired: int = 0
    not_interested: int = 0
    total_spent: float = 0


class CampaignSummary(CRMModel):
    total: int = 0
    active: int = 0
    total_sent: int = 0


class NotificationSummary(CRMModel):
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0


class SubscriptionSummary(CRMModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    expiring_soon: int = 0
    total_revenue: float = 0


class DashboardStats(CRMModel):
    users: UserSummary = Field(default_factory=UserSummary)
    customers: CustomerSummary = Field(default_factory=CustomerSummary)
    campaigns: CampaignSummary = Field(default_factory=CampaignSummary)
    notifications: NotificationSummary = Field(default_factory=NotificationSummary)
    subscriptions: SubscriptionSummary = Field(default_factory=SubscriptionSummary)


class DashboardOverview(CRMModel):
    stats: DashboardStats = Field(default_factory=DashboardStats)
    recent_activity: List[ActivityItem] = Field(default_factory=list)
    generated_at: datetime
