from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class CRMModel(BaseModel):
    """Base for CRM API payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        from_attributes=True,
    )


def ensure_utc(value: datetime) -> datetime:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampedModel(CRMModel):
    """Naive timestamps from the CRM API are read as UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, value):
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


class BadgeColor(str, Enum):
    BLUE = "blue"
    GREEN = "green"
    RED = "red"
    YELLOW = "yellow"
    GRAY = "gray"
    ORANGE = "orange"
    PURPLE = "purple"
