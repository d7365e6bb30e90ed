"""Background scheduling of the batch jobs."""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

import config
from database import DocumentStore
from jobs import mark_overdue_tasks_failed, send_upcoming_schedule_notifications
from notifications import NotificationDispatcher
from time_utils import get_zone, utc_now

logger = logging.getLogger(__name__)

scheduler: Optional[BackgroundScheduler] = None


def run_overdue_sweep() -> None:
    """Entry point for the daily overdue sweep."""
    count = mark_overdue_tasks_failed(DocumentStore(), utc_now())
    logger.info("Overdue sweep finished, %s tasks failed", count)


def run_schedule_notifier(dispatcher: NotificationDispatcher) -> None:
    """Entry point for the per-minute schedule notifier."""
    send_upcoming_schedule_notifications(DocumentStore(), dispatcher, utc_now(), config.APP_TIMEZONE)


def start_scheduler(dispatcher: NotificationDispatcher) -> Optional[BackgroundScheduler]:
    """
    Start the background scheduler for the sweep and notifier jobs.
    Every notifier run shares `dispatcher`; its owner closes it.
    """
    global scheduler
    if not config.ENABLE_SCHEDULER:
        logger.info("Scheduler disabled")
        return None
    if scheduler and scheduler.running:
        return scheduler

    scheduler = BackgroundScheduler(timezone=get_zone(config.APP_TIMEZONE))
    scheduler.add_job(
        run_overdue_sweep,
        'cron',
        hour=0,
        minute=0,
        id='overdue_sweep',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_schedule_notifier,
        'cron',
        second=0,
        args=[dispatcher],
        id='schedule_notifier',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started")
    return scheduler


def stop_scheduler() -> None:
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None
