"""Recurrence pattern schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, field_validator, model_validator

from .rule import WEEKDAY_CODES, Frequency

_WEEKDAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


class RecurrencePattern(BaseModel):
    """
    User-supplied repetition description.

    `anchor` is the first service's wall-clock start in `timezone`; an aware
    datetime is converted into that zone. End by `until` or `count`, not both.
    """

    frequency: Frequency
    interval: int = 1
    weekdays: Optional[list[Union[int, str]]] = None
    month_days: Optional[list[int]] = None
    months: Optional[list[int]] = None
    anchor: datetime
    timezone: Optional[str] = None
    until: Optional[datetime] = None
    count: Optional[int] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def normalize_frequency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v):
        if v < 1:
            raise ValueError("interval must be at least 1")
        return v

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, v):
        if v is None:
            return v
        normalized = []
        for item in v:
            if isinstance(item, str):
                key = item.strip().lower()
                if key.upper() in WEEKDAY_CODES:
                    normalized.append(WEEKDAY_CODES.index(key.upper()))
                elif key in _WEEKDAY_NAMES:
                    normalized.append(_WEEKDAY_NAMES[key])
                else:
                    raise ValueError(f"Unknown weekday: {item}")
            elif 0 <= item <= 6:
                normalized.append(item)
            else:
                raise ValueError(f"Weekday must be between 0 (Monday) and 6 (Sunday), got {item}")
        return normalized

    @field_validator("month_days")
    @classmethod
    def validate_month_days(cls, v):
        if v is not None:
            for day in v:
                if not 1 <= day <= 31:
                    raise ValueError(f"Day of month must be between 1 and 31, got {day}")
        return v

    @field_validator("months")
    @classmethod
    def validate_months(cls, v):
        if v is not None:
            for month in v:
                if not 1 <= month <= 12:
                    raise ValueError(f"Month must be between 1 and 12, got {month}")
        return v

    @field_validator("count")
    @classmethod
    def validate_count(cls, v):
        if v is not None and v < 1:
            raise ValueError("count must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_end_condition(self):
        if self.until is not None and self.count is not None:
            raise ValueError("Specify either until or count, not both")
        return self
