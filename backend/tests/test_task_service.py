"""
Tests for task_service.py - task lifecycle, recurrence on completion, schedule entries, users.
"""
import pytest
import sqlite3
import sys
import os
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import task_service
from database import WriteBatch
from models import (
    RepeatSettings,
    ScheduleEntryCreate,
    ScheduleEntryUpdate,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    UserUpdate,
)
from task_service import TASKS


def utc(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def seoul_timezone(monkeypatch):
    monkeypatch.setattr(config, "APP_TIMEZONE", "Asia/Seoul")


class TestCreateTask:

    def test_one_off_task(self, store):
        """A task without a rule has no next occurrence."""
        task = task_service.create_task(store, "u1", TaskCreate(title="Buy milk", due_at=utc(2024, 1, 5)), utc(2024, 1, 1))

        assert task.user_id == "u1"
        assert task.status == TaskStatus.ONGOING
        assert task.due_at == utc(2024, 1, 5)
        assert task.next_occurrence is None
        assert task.created_at == utc(2024, 1, 1)

    def test_recurring_task_starts_at_due_date(self, store):
        payload = TaskCreate(title="Gym", due_at=utc(2024, 1, 3, 9), repeat_settings=RepeatSettings(frequency="daily"))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))

        assert task.next_occurrence == utc(2024, 1, 3, 9)
        assert task.repeat_settings.frequency == "daily"

    def test_recurring_task_without_due_date_starts_after_now(self, store):
        payload = TaskCreate(title="Gym", repeat_settings=RepeatSettings(frequency="daily", interval=2))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1, 6))

        assert task.next_occurrence == utc(2024, 1, 3, 6)

    def test_tags_are_kept(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Read", tags=["books", "home"]), utc(2024, 1, 1))
        assert task_service.get_task(store, task.id).tags == ["books", "home"]


class TestUpdateTask:

    @pytest.fixture
    def recurring(self, store):
        payload = TaskCreate(title="Laundry", due_at=utc(2024, 1, 1, 1), repeat_settings=RepeatSettings(frequency="weekly"))
        return task_service.create_task(store, "u1", payload, utc(2024, 1, 1))

    def test_title_change_keeps_next_occurrence(self, store, recurring):
        updated = task_service.update_task(store, recurring.id, TaskUpdate(title="Wash clothes"), utc(2024, 1, 2))

        assert updated.title == "Wash clothes"
        assert updated.next_occurrence == recurring.next_occurrence

    def test_due_date_change_recomputes_from_new_due_date(self, store, recurring):
        updated = task_service.update_task(store, recurring.id, TaskUpdate(due_at=utc(2024, 1, 10, 1)), utc(2024, 1, 2))

        assert updated.due_at == utc(2024, 1, 10, 1)
        assert updated.next_occurrence == utc(2024, 1, 17, 1)

    def test_rule_change_recomputes_from_current_due_date(self, store, recurring):
        payload = TaskUpdate(repeat_settings=RepeatSettings(frequency="daily", interval=3))
        updated = task_service.update_task(store, recurring.id, payload, utc(2024, 1, 2))

        assert updated.next_occurrence == utc(2024, 1, 4, 1)

    def test_removing_rule_clears_next_occurrence(self, store, recurring):
        updated = task_service.update_task(store, recurring.id, TaskUpdate(repeat_settings=None), utc(2024, 1, 2))

        assert updated.repeat_settings is None
        assert updated.next_occurrence is None

    def test_due_date_change_on_one_off_task(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Call mom"), utc(2024, 1, 1))
        updated = task_service.update_task(store, task.id, TaskUpdate(due_at=utc(2024, 2, 1)), utc(2024, 1, 2))

        assert updated.due_at == utc(2024, 2, 1)
        assert updated.next_occurrence is None

    def test_update_missing_task(self, store):
        with pytest.raises(task_service.TaskNotFoundError):
            task_service.update_task(store, "missing", TaskUpdate(title="x"), utc(2024, 1, 1))


class TestCompleteTask:
    """Completing a task, and the successor created for recurring ones."""

    def test_one_off_task(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Buy milk"), utc(2024, 1, 1))
        completed, successor = task_service.complete_task(store, task.id, utc(2024, 1, 2))

        assert completed.status == TaskStatus.COMPLETED
        assert completed.completed_at == utc(2024, 1, 2)
        assert successor is None

    def test_daily_task_creates_successor(self, store):
        payload = TaskCreate(title="Stretch", due_at=utc(2024, 1, 1, 3), repeat_settings=RepeatSettings(frequency="daily"), tags=["health"])
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))

        completed, successor = task_service.complete_task(store, task.id, utc(2024, 1, 1, 3))

        assert completed.status == TaskStatus.COMPLETED
        assert completed.repeat_settings.last_completed_at == utc(2024, 1, 1, 3)
        assert completed.next_occurrence == utc(2024, 1, 2, 3)

        assert successor is not None
        assert successor.id != task.id
        assert successor.status == TaskStatus.ONGOING
        assert successor.due_at == utc(2024, 1, 2, 3)
        assert successor.next_occurrence == utc(2024, 1, 2, 3)
        assert successor.previous_task_id == task.id
        assert successor.title == "Stretch"
        assert successor.tags == ["health"]

    def test_weekdays_follow_app_timezone(self, store):
        """Monday 20:00 UTC is already Tuesday in Seoul, so the next rule day is Wednesday there."""
        rule = RepeatSettings(frequency="weekly", days_of_week=[1, 3, 5])
        task = task_service.create_task(store, "u1", TaskCreate(title="Run", repeat_settings=rule, due_at=utc(2024, 1, 1)), utc(2024, 1, 1))

        _, successor = task_service.complete_task(store, task.id, utc(2024, 1, 1, 20))

        # Wednesday 05:00 in Seoul
        assert successor.due_at == utc(2024, 1, 2, 20)

    def test_recurrence_ended(self, store):
        rule = RepeatSettings(frequency="daily", end_date=utc(2024, 1, 1, 23))
        task = task_service.create_task(store, "u1", TaskCreate(title="Trial", repeat_settings=rule, due_at=utc(2024, 1, 1)), utc(2024, 1, 1))

        completed, successor = task_service.complete_task(store, task.id, utc(2024, 1, 1, 3))

        assert successor is None
        assert completed.status == TaskStatus.COMPLETED
        assert completed.next_occurrence is None
        assert len(task_service.list_tasks(store, "u1", utc(2024, 1, 1, 3))) == 1

    def test_completed_task_cannot_be_completed_again(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Once"), utc(2024, 1, 1))
        task_service.complete_task(store, task.id, utc(2024, 1, 1))

        with pytest.raises(task_service.TaskStateError):
            task_service.complete_task(store, task.id, utc(2024, 1, 2))

    def test_failed_task_cannot_be_completed(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Late"), utc(2024, 1, 1))
        task_service.set_task_status(store, task.id, TaskStatus.FAILED, utc(2024, 1, 2))

        with pytest.raises(task_service.TaskStateError):
            task_service.complete_task(store, task.id, utc(2024, 1, 3))

    def test_missing_task(self, store):
        with pytest.raises(task_service.TaskNotFoundError):
            task_service.complete_task(store, "missing", utc(2024, 1, 1))

    def test_concurrent_completion_creates_one_successor(self, store, monkeypatch):
        """A completion working from a stale ONGOING read is rejected and leaves no extra successor."""
        payload = TaskCreate(title="Stretch", due_at=utc(2024, 1, 1), repeat_settings=RepeatSettings(frequency="daily"))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))
        stale = task_service.get_task(store, task.id)

        task_service.complete_task(store, task.id, utc(2024, 1, 1, 3))

        monkeypatch.setattr(task_service, "get_task", lambda _store, _task_id: stale)
        with pytest.raises(task_service.TaskStateError):
            task_service.complete_task(store, task.id, utc(2024, 1, 1, 4))
        monkeypatch.undo()

        successors = store.query(TASKS, [("previous_task_id", "==", task.id)])
        assert len(successors) == 1
        assert len(task_service.list_tasks(store, "u1", utc(2024, 1, 1, 4))) == 2

    def test_failed_write_leaves_no_successor(self, store, monkeypatch):
        """The successor is rolled back when marking the original fails."""
        payload = TaskCreate(title="Stretch", due_at=utc(2024, 1, 1), repeat_settings=RepeatSettings(frequency="daily"))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))

        def broken_update(self, collection, doc_id, fields, expected=None):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(WriteBatch, "update", broken_update)
        with pytest.raises(sqlite3.OperationalError):
            task_service.complete_task(store, task.id, utc(2024, 1, 1, 3))
        monkeypatch.undo()

        assert store.query(TASKS, [("previous_task_id", "==", task.id)]) == []
        assert task_service.get_task(store, task.id).status == TaskStatus.ONGOING


class TestStatusAndListing:

    def test_finished_task_cannot_be_reopened(self, store):
        """Reopening a completed recurring task would fork its series, so it is refused."""
        payload = TaskCreate(title="Water plants", due_at=utc(2024, 1, 1), repeat_settings=RepeatSettings(frequency="daily"))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))
        task_service.complete_task(store, task.id, utc(2024, 1, 1, 3))

        with pytest.raises(task_service.TaskStateError):
            task_service.set_task_status(store, task.id, TaskStatus.ONGOING, utc(2024, 1, 1, 4))
        with pytest.raises(task_service.TaskStateError):
            task_service.complete_task(store, task.id, utc(2024, 1, 1, 5))

        assert task_service.get_task(store, task.id).status == TaskStatus.COMPLETED
        assert len(store.query(TASKS, [("previous_task_id", "==", task.id)])) == 1

    def test_failed_task_is_final(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Late"), utc(2024, 1, 1))
        task_service.set_task_status(store, task.id, TaskStatus.FAILED, utc(2024, 1, 2))

        with pytest.raises(task_service.TaskStateError):
            task_service.set_task_status(store, task.id, TaskStatus.ONGOING, utc(2024, 1, 3))
        assert task_service.get_task(store, task.id).status == TaskStatus.FAILED

    def test_set_status_missing_task(self, store):
        with pytest.raises(task_service.TaskNotFoundError):
            task_service.set_task_status(store, "missing", TaskStatus.FAILED, utc(2024, 1, 1))

    def test_set_status_completed_goes_through_completion(self, store):
        payload = TaskCreate(title="Water plants", due_at=utc(2024, 1, 1), repeat_settings=RepeatSettings(frequency="daily"))
        task = task_service.create_task(store, "u1", payload, utc(2024, 1, 1))

        updated = task_service.set_task_status(store, task.id, TaskStatus.COMPLETED, utc(2024, 1, 1, 3))

        assert updated.status == TaskStatus.COMPLETED
        assert len(task_service.list_tasks(store, "u1", utc(2024, 1, 1, 3))) == 2

    def test_list_tasks_is_per_user(self, store):
        task_service.create_task(store, "u1", TaskCreate(title="Mine"), utc(2024, 1, 1))
        task_service.create_task(store, "u2", TaskCreate(title="Theirs"), utc(2024, 1, 1))

        titles = [task.title for task in task_service.list_tasks(store, "u1", utc(2024, 1, 1))]
        assert titles == ["Mine"]

    def test_visible_only_hides_future_occurrences(self, store):
        now = utc(2024, 1, 10, 3)  # 12:00 in Seoul
        task_service.create_task(store, "u1", TaskCreate(title="One-off", due_at=utc(2024, 3, 1)), utc(2024, 1, 1))
        task_service.create_task(store, "u1", TaskCreate(
            title="Tonight", due_at=utc(2024, 1, 10, 14), repeat_settings=RepeatSettings(frequency="daily"),
        ), utc(2024, 1, 1, 1))
        task_service.create_task(store, "u1", TaskCreate(
            title="Next week", due_at=utc(2024, 1, 17), repeat_settings=RepeatSettings(frequency="weekly"),
        ), utc(2024, 1, 1, 2))

        visible = task_service.list_tasks(store, "u1", now, visible_only=True)
        assert [task.title for task in visible] == ["One-off", "Tonight"]

    def test_delete_task(self, store):
        task = task_service.create_task(store, "u1", TaskCreate(title="Gone"), utc(2024, 1, 1))
        task_service.delete_task(store, task.id)

        with pytest.raises(task_service.TaskNotFoundError):
            task_service.get_task(store, task.id)
        with pytest.raises(task_service.TaskNotFoundError):
            task_service.delete_task(store, task.id)


class TestScheduleEntries:

    def test_create_and_list_in_start_order(self, store):
        task_service.create_schedule_entry(store, "u1", ScheduleEntryCreate(title="Dinner", start_at=utc(2024, 1, 2, 10)), utc(2024, 1, 1))
        task_service.create_schedule_entry(store, "u1", ScheduleEntryCreate(title="Dentist", start_at=utc(2024, 1, 2, 1)), utc(2024, 1, 1))
        task_service.create_schedule_entry(store, "u2", ScheduleEntryCreate(title="Other", start_at=utc(2024, 1, 2)), utc(2024, 1, 1))

        entries = task_service.list_schedule_entries(store, "u1")
        assert [entry.title for entry in entries] == ["Dentist", "Dinner"]
        assert entries[0].completed is False

    def test_delete_schedule_entry(self, store):
        entry = task_service.create_schedule_entry(store, "u1", ScheduleEntryCreate(title="Dinner", start_at=utc(2024, 1, 2)), utc(2024, 1, 1))
        task_service.delete_schedule_entry(store, entry.id)

        assert task_service.list_schedule_entries(store, "u1") == []
        with pytest.raises(task_service.ScheduleEntryNotFoundError):
            task_service.delete_schedule_entry(store, entry.id)

    def test_get_and_update_schedule_entry(self, store):
        entry = task_service.create_schedule_entry(store, "u1", ScheduleEntryCreate(title="Gym", start_at=utc(2024, 1, 2)), utc(2024, 1, 1))

        assert task_service.get_schedule_entry(store, entry.id).title == "Gym"

        updated = task_service.update_schedule_entry(store, entry.id, ScheduleEntryUpdate(completed=True))
        assert updated.completed is True
        assert updated.title == "Gym"
        assert updated.start_at == utc(2024, 1, 2)

        updated = task_service.update_schedule_entry(store, entry.id, ScheduleEntryUpdate(title="Swim", completed=False))
        assert (updated.title, updated.completed) == ("Swim", False)

    def test_missing_schedule_entry(self, store):
        with pytest.raises(task_service.ScheduleEntryNotFoundError):
            task_service.get_schedule_entry(store, "missing")
        with pytest.raises(task_service.ScheduleEntryNotFoundError):
            task_service.update_schedule_entry(store, "missing", ScheduleEntryUpdate(completed=True))


class TestUsers:

    def test_register_then_update_profile(self, store):
        user = task_service.register_user(store, "u1", UserUpdate(display_name="Kim"), utc(2024, 1, 1))
        assert user.display_name == "Kim"
        assert user.notification_token is None

        user = task_service.register_user(store, "u1", UserUpdate(email="kim@example.com"), utc(2024, 2, 1))
        assert user.display_name == "Kim"
        assert user.email == "kim@example.com"
        assert user.created_at == utc(2024, 1, 1)

    def test_set_notification_token(self, store):
        task_service.register_user(store, "u1", UserUpdate(), utc(2024, 1, 1))
        user = task_service.set_notification_token(store, "u1", "token-abc")
        assert user.notification_token == "token-abc"

    def test_token_for_unknown_user(self, store):
        with pytest.raises(task_service.UserNotFoundError):
            task_service.set_notification_token(store, "ghost", "token-abc")
