from pydantic import Field, field_validator
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Union

from app.schemas.base import CRMModel, TimestampedModel, BadgeColor

ALL = "all"


class NotificationType(str, Enum):
    SUBSCRIPTION_EXPIRY = "subscription_expiry"
    PAYMENT_REMINDER = "payment_reminder"
    WELCOME = "welcome"
    CUSTOM = "custom"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    ALL = "all"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ChannelIcon(str, Enum):
    MAIL = "mail"
    PHONE = "phone"
    BELL = "bell"
    MULTI_CHANNEL = "multi-channel"


class CustomerRef(CRMModel):
    id: str = Field(alias="_id")
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class NotificationRecord(TimestampedModel):
    id: str = Field(alias="_id")
    # Populated responses embed the customer, others carry only its id.
    customer: Union[CustomerRef, str, None] = None
    title: str = ""
    message: str = ""
    type: NotificationType
    channel: NotificationChannel
    status: NotificationStatus
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivery_attempts: int = 0
    is_automated: bool = False
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class NotificationStats(CRMModel):
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0


class NotificationCreate(CRMModel):
    customer: str
    subscription: Optional[str] = None
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    channel: NotificationChannel = NotificationChannel.EMAIL
    scheduled_for: Optional[datetime] = None


class NotificationUpdate(CRMModel):
    type: Optional[NotificationType] = None
    title: Optional[str] = None
    message: Optional[str] = None
    status: Optional[NotificationStatus] = None
    scheduled_for: Optional[datetime] = None
    channel: Optional[NotificationChannel] = None
    metadata: Optional[Dict[str, Any]] = None


class BatchRequest(CRMModel):
    days_before: int = Field(default=3, ge=0, le=365)


class WelcomeRequest(CRMModel):
    message: Optional[str] = None


class BatchResult(CRMModel):
    success: bool = True
    message: Optional[str] = None
    created: int = 0


class BulkDeleteRequest(CRMModel):
    notification_ids: List[str] = Field(min_length=1)


class BulkDeleteResult(CRMModel):
    success: bool = True
    deleted_count: int = 0
    message: Optional[str] = None


class ProcessingSummary(CRMModel):
    """Outcome of one pass over the pending notifications."""

    total: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class NotificationFilters(CRMModel):
    """User-selected criteria; every field defaults to matching everything."""

    search: str = ""
    status: str = ALL
    type: str = ALL
    channel: str = ALL

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        return _check_choice(value, NotificationStatus)

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        return _check_choice(value, NotificationType)

    @field_validator("channel")
    @classmethod
    def _known_channel(cls, value: str) -> str:
        return _check_choice(value, NotificationChannel)


def _check_choice(value: str, enum_cls) -> str:
    allowed = {ALL} | {member.value for member in enum_cls}
    if value not in allowed:
        raise ValueError(f"must be one of: {', '.join(sorted(allowed))}")
    return value


class NotificationView(NotificationRecord):
    customer_name: str
    customer_email: str
    status_color: BadgeColor
    type_color: BadgeColor
    channel_icon: ChannelIcon


class NotificationListResponse(CRMModel):
    total: int
    count: int
    filters: NotificationFilters
    notifications: List[NotificationView]
