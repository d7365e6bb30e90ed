"""
Scheduled batch jobs: the daily overdue sweep and the per-minute schedule
notifier.

Both take their collaborators and `now` as arguments; scheduler.py builds them
for the real runs.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

import config
from database import DocumentStore
from models import NotificationMessage, ScheduleEntry, TaskStatus
from notifications import NotificationDispatcher, format_start_at
from task_service import SCHEDULE_ENTRIES, TASKS, USERS
from time_utils import start_of_minute

logger = logging.getLogger(__name__)


def mark_overdue_tasks_failed(
    store: DocumentStore,
    now: datetime,
    page_size: int = config.OVERDUE_PAGE_SIZE,
    batch_delay: float = config.OVERDUE_BATCH_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Mark every ONGOING task whose due date has passed as FAILED.

    Pages through matching tasks ordered by due date, writing one atomic batch
    per page and pausing `batch_delay` seconds between batches. Tasks that are
    no longer ONGOING never match, so re-running is a no-op. A failed
    recurring instance gets no successor: only completion advances a series.

    Returns:
        Number of tasks marked as failed
    """
    cursor: Optional[dict] = None
    total = 0

    while True:
        page = store.query(
            TASKS,
            [("due_at", "<=", now), ("status", "==", TaskStatus.ONGOING)],
            order_by="due_at",
            limit=page_size,
            cursor=cursor,
        )
        if not page:
            break

        if total:
            sleep(batch_delay)

        store.batch_write(TASKS, [(doc["id"], {"status": TaskStatus.FAILED}) for doc in page])
        total += len(page)
        cursor = page[-1]
        logger.info("Marked %s overdue tasks as failed", len(page))

    if total == 0:
        logger.info("No overdue tasks to process")
    return total


def send_upcoming_schedule_notifications(
    store: DocumentStore,
    dispatcher: NotificationDispatcher,
    now: datetime,
    tz_name: Optional[str] = None,
) -> int:
    """
    Notify owners of schedule entries starting within the current minute.

    The window is [start of minute, start of minute + 1 minute), so adjacent
    runs never match the same entry. Entries whose owner or push token is
    missing are skipped; a failed send is logged and does not stop the rest.

    Returns:
        Number of notifications sent
    """
    window_start = start_of_minute(now)
    window_end = window_start + timedelta(minutes=1)

    docs = store.query(
        SCHEDULE_ENTRIES,
        [("start_at", ">=", window_start), ("start_at", "<", window_end)],
        order_by="start_at",
    )
    if not docs:
        logger.debug("No upcoming schedules")
        return 0

    sent = 0
    for doc in docs:
        try:
            entry = ScheduleEntry.model_validate(doc)
        except ValidationError as e:
            logger.warning("Skipping malformed schedule %s: %s", doc.get("id"), e)
            continue

        user = store.get_by_id(USERS, entry.user_id)
        if user is None:
            logger.warning("Skipping schedule %s: owner %s not found", entry.id, entry.user_id)
            continue
        token = user.get("notification_token")
        if not token:
            logger.info("Skipping schedule %s: user %s has no push token", entry.id, entry.user_id)
            continue

        message = NotificationMessage(
            title=entry.title,
            body=format_start_at(entry.start_at, tz_name),
        )
        try:
            dispatcher.send(token, message)
        except Exception:
            logger.exception("Failed to send notification for schedule %s", entry.id)
            continue
        sent += 1

    logger.info("Sent %s of %s schedule notifications", sent, len(docs))
    return sent
