from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator

from time_utils import to_instant


def _coerce_instant(value):
    if value is None:
        return None
    instant = to_instant(value)
    if instant is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    return instant


# Canonical point in time: always a timezone-aware datetime
Instant = Annotated[datetime, BeforeValidator(_coerce_instant)]


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"  # accepted but never produces an occurrence


class TaskStatus(str, Enum):
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ScheduleEntryType(str, Enum):
    EVENT = "EVENT"
    TASK = "TASK"
    HABIT = "HABIT"


class RepeatSettings(BaseModel):
    """How a task repeats.

    days_of_week uses 0 = Sunday ... 6 = Saturday and only applies to weekly
    rules; days_of_month (1-31) only applies to monthly rules.
    """
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    days_of_week: Optional[list[int]] = None
    days_of_month: Optional[list[int]] = None
    end_date: Optional[Instant] = None
    last_completed_at: Optional[Instant] = None

    @field_validator("days_of_week")
    @classmethod
    def _check_days_of_week(cls, value):
        if value is None:
            return value
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("days_of_month")
    @classmethod
    def _check_days_of_month(cls, value):
        if value is None:
            return value
        if any(day < 1 or day > 31 for day in value):
            raise ValueError("days_of_month must be between 1 and 31")
        return sorted(set(value))


class Task(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.ONGOING
    created_at: Instant
    due_at: Optional[Instant] = None  # overdue sweep compares against this
    next_occurrence: Optional[Instant] = None  # None: no pending occurrence
    completed_at: Optional[Instant] = None
    repeat_settings: Optional[RepeatSettings] = None  # None: one-off task
    previous_task_id: Optional[str] = None  # instance this one was generated from
    tags: list[str] = Field(default_factory=list)


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    due_at: Optional[Instant] = None
    repeat_settings: Optional[RepeatSettings] = None
    tags: list[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    # Only fields present in the request are applied (model_fields_set);
    # an explicit null repeat_settings removes the rule.
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    due_at: Optional[Instant] = None
    repeat_settings: Optional[RepeatSettings] = None
    tags: Optional[list[str]] = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class ScheduleEntry(BaseModel):
    id: str
    user_id: str
    type: ScheduleEntryType = ScheduleEntryType.EVENT
    title: str
    description: Optional[str] = None
    completed: bool = False
    start_at: Optional[Instant] = None
    end_at: Optional[Instant] = None
    created_at: Instant


class ScheduleEntryCreate(BaseModel):
    type: ScheduleEntryType = ScheduleEntryType.EVENT
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    start_at: Instant
    end_at: Optional[Instant] = None


class ScheduleEntryUpdate(BaseModel):
    type: Optional[ScheduleEntryType] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    completed: Optional[bool] = None
    start_at: Optional[Instant] = None
    end_at: Optional[Instant] = None


class User(BaseModel):
    id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    notification_token: Optional[str] = None
    created_at: Instant


class UserUpdate(BaseModel):
    display_name: Optional[str] = None
    email: Optional[str] = None


class TokenUpdate(BaseModel):
    notification_token: Optional[str] = None


class NotificationMessage(BaseModel):
    title: str
    body: str


class TaskCompletion(BaseModel):
    task: Task
    next_task: Optional[Task] = None
