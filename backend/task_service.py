"""
Task, schedule entry and user operations used by the HTTP layer.

Every operation takes the store and (where time matters) `now` explicitly.
Recurring tasks get their next occurrence recomputed whenever the due date or
rule changes and when they are completed.
"""
import logging
from datetime import datetime
from typing import Optional

import config
from database import ConflictError, DocumentNotFoundError, DocumentStore
from models import (
    ScheduleEntry,
    ScheduleEntryCreate,
    ScheduleEntryUpdate,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    User,
    UserUpdate,
)
from recurrence import compute_next, is_due_now
from time_utils import localize

logger = logging.getLogger(__name__)

TASKS = "tasks"
SCHEDULE_ENTRIES = "schedule_entries"
USERS = "users"


class NotFoundError(Exception):
    pass


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ScheduleEntryNotFoundError(NotFoundError):
    def __init__(self, entry_id: str):
        super().__init__(f"Schedule entry {entry_id} not found")
        self.entry_id = entry_id


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class TaskStateError(Exception):
    """The requested change is not allowed from the task's current status."""


def _local(instant: Optional[datetime]) -> Optional[datetime]:
    # Weekday/day-of-month decisions happen in the app timezone
    return localize(instant, config.APP_TIMEZONE) if instant is not None else None


def _require_ongoing(task: Task) -> None:
    if task.status != TaskStatus.ONGOING:
        raise TaskStateError(f"Task {task.id} is {task.status.value}, only ONGOING tasks can change status")


# Tasks

def get_task(store: DocumentStore, task_id: str) -> Task:
    doc = store.get_by_id(TASKS, task_id)
    if doc is None:
        raise TaskNotFoundError(task_id)
    return Task.model_validate(doc)


def list_tasks(store: DocumentStore, user_id: str, now: datetime, visible_only: bool = False) -> list[Task]:
    docs = store.query(TASKS, [("user_id", "==", user_id)], order_by="created_at")
    tasks = [Task.model_validate(doc) for doc in docs]
    if visible_only:
        local_now = _local(now)
        tasks = [task for task in tasks if is_due_now(task, local_now)]
    return tasks


def create_task(store: DocumentStore, user_id: str, payload: TaskCreate, now: datetime) -> Task:
    """Create an ONGOING task.

    A recurring task starts at its due date when one is given, otherwise at the
    rule's first occurrence after `now`.
    """
    next_occurrence = None
    if payload.repeat_settings is not None:
        if payload.due_at is not None:
            next_occurrence = payload.due_at
        else:
            next_occurrence = compute_next(payload.repeat_settings, now=_local(now))

    fields = {
        "user_id": user_id,
        "title": payload.title,
        "description": payload.description,
        "status": TaskStatus.ONGOING,
        "created_at": now,
        "due_at": payload.due_at,
        "next_occurrence": next_occurrence,
        "completed_at": None,
        "repeat_settings": payload.repeat_settings,
        "previous_task_id": None,
        "tags": payload.tags,
    }
    task_id = store.create(TASKS, fields)
    logger.info("Created task %s for user %s", task_id, user_id)
    return get_task(store, task_id)


def update_task(store: DocumentStore, task_id: str, payload: TaskUpdate, now: datetime) -> Task:
    """
    Update task content (never its status).

    The next occurrence is recomputed when the rule itself is part of the
    update, or when the due date changes on a recurring task. The new cycle
    starts from the new due date, else the current one, else `now`.
    """
    current = get_task(store, task_id)
    changes = payload.model_dump(include=payload.model_fields_set)
    changes.pop("status", None)

    needs_recalculation = (
        "repeat_settings" in payload.model_fields_set
        or ("due_at" in payload.model_fields_set and current.repeat_settings is not None)
    )

    if needs_recalculation:
        if "repeat_settings" in payload.model_fields_set:
            effective_rule = payload.repeat_settings
        else:
            effective_rule = current.repeat_settings

        if effective_rule is not None:
            reference = payload.due_at or current.due_at or now
            changes["next_occurrence"] = compute_next(effective_rule, _local(reference))
        else:
            changes["next_occurrence"] = None

    if changes:
        try:
            store.update(TASKS, task_id, changes)
        except DocumentNotFoundError as e:
            raise TaskNotFoundError(task_id) from e
    return get_task(store, task_id)


def complete_task(store: DocumentStore, task_id: str, now: datetime) -> tuple[Task, Optional[Task]]:
    """
    Mark an ONGOING task as completed.

    For a recurring task the completion time becomes the rule's
    last_completed_at and the next occurrence is computed from it. If there is
    one, a new ONGOING task due at that occurrence is created. The successor
    and the status change are written in one transaction, and the status
    change only applies while the task is still ONGOING, so a task is never
    completed twice.

    Returns:
        (completed task, successor task or None)
    """
    task = get_task(store, task_id)
    _require_ongoing(task)

    changes = {"status": TaskStatus.COMPLETED, "completed_at": now}
    occurrence = None
    successor_id = None

    if task.repeat_settings is not None:
        rule = task.repeat_settings.model_copy(update={"last_completed_at": _local(now)})
        occurrence = compute_next(rule)
        changes["repeat_settings"] = rule
        changes["next_occurrence"] = occurrence

    try:
        with store.transaction() as batch:
            if occurrence is not None:
                successor_id = batch.create(TASKS, {
                    "user_id": task.user_id,
                    "title": task.title,
                    "description": task.description,
                    "status": TaskStatus.ONGOING,
                    "created_at": now,
                    "due_at": occurrence,
                    "next_occurrence": occurrence,
                    "completed_at": None,
                    "repeat_settings": changes["repeat_settings"],
                    "previous_task_id": task.id,
                    "tags": task.tags,
                })
            batch.update(TASKS, task_id, changes, expected={"status": TaskStatus.ONGOING})
    except DocumentNotFoundError as e:
        raise TaskNotFoundError(task_id) from e
    except ConflictError as e:
        raise TaskStateError(f"Task {task_id} is no longer ONGOING") from e

    successor = None
    if successor_id is not None:
        successor = get_task(store, successor_id)
        logger.info("Task %s completed, next occurrence %s at %s", task_id, successor_id, occurrence.isoformat())
    elif task.repeat_settings is not None:
        logger.info("Task %s completed, recurrence has ended", task_id)
    return get_task(store, task_id), successor


def set_task_status(store: DocumentStore, task_id: str, status: TaskStatus, now: datetime) -> Task:
    """Move an ONGOING task to another status. COMPLETED and FAILED are final."""
    if status == TaskStatus.COMPLETED:
        completed, _ = complete_task(store, task_id, now)
        return completed

    task = get_task(store, task_id)
    _require_ongoing(task)
    try:
        store.update(TASKS, task_id, {"status": status}, expected={"status": TaskStatus.ONGOING})
    except DocumentNotFoundError as e:
        raise TaskNotFoundError(task_id) from e
    except ConflictError as e:
        raise TaskStateError(f"Task {task_id} is no longer ONGOING") from e
    return get_task(store, task_id)


def delete_task(store: DocumentStore, task_id: str) -> None:
    if not store.delete(TASKS, task_id):
        raise TaskNotFoundError(task_id)


# Schedule entries

def create_schedule_entry(store: DocumentStore, user_id: str, payload: ScheduleEntryCreate, now: datetime) -> ScheduleEntry:
    entry_id = store.create(SCHEDULE_ENTRIES, {
        "user_id": user_id,
        "type": payload.type,
        "title": payload.title,
        "description": payload.description,
        "completed": False,
        "start_at": payload.start_at,
        "end_at": payload.end_at,
        "created_at": now,
    })
    return get_schedule_entry(store, entry_id)


def get_schedule_entry(store: DocumentStore, entry_id: str) -> ScheduleEntry:
    doc = store.get_by_id(SCHEDULE_ENTRIES, entry_id)
    if doc is None:
        raise ScheduleEntryNotFoundError(entry_id)
    return ScheduleEntry.model_validate(doc)


def update_schedule_entry(store: DocumentStore, entry_id: str, payload: ScheduleEntryUpdate) -> ScheduleEntry:
    """Apply the fields present in the request, e.g. toggling `completed`."""
    changes = payload.model_dump(include=payload.model_fields_set)
    if changes:
        try:
            store.update(SCHEDULE_ENTRIES, entry_id, changes)
        except DocumentNotFoundError as e:
            raise ScheduleEntryNotFoundError(entry_id) from e
    return get_schedule_entry(store, entry_id)


def list_schedule_entries(store: DocumentStore, user_id: str) -> list[ScheduleEntry]:
    docs = store.query(SCHEDULE_ENTRIES, [("user_id", "==", user_id)], order_by="start_at")
    return [ScheduleEntry.model_validate(doc) for doc in docs]


def delete_schedule_entry(store: DocumentStore, entry_id: str) -> None:
    if not store.delete(SCHEDULE_ENTRIES, entry_id):
        raise ScheduleEntryNotFoundError(entry_id)


# Users

def get_user(store: DocumentStore, user_id: str) -> User:
    doc = store.get_by_id(USERS, user_id)
    if doc is None:
        raise UserNotFoundError(user_id)
    return User.model_validate(doc)


def register_user(store: DocumentStore, user_id: str, payload: UserUpdate, now: datetime) -> User:
    """Create the user record on first sign-in, or update its profile fields."""
    if store.get_by_id(USERS, user_id) is None:
        store.put(USERS, user_id, {
            "display_name": payload.display_name,
            "email": payload.email,
            "notification_token": None,
            "created_at": now,
        })
    else:
        store.update(USERS, user_id, payload.model_dump(include=payload.model_fields_set))
    return get_user(store, user_id)


def set_notification_token(store: DocumentStore, user_id: str, token: Optional[str]) -> User:
    try:
        store.update(USERS, user_id, {"notification_token": token})
    except DocumentNotFoundError as e:
        raise UserNotFoundError(user_id) from e
    return get_user(store, user_id)
