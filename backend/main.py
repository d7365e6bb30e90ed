import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

import config
import task_service
from database import DocumentStore, init_db
from jobs import mark_overdue_tasks_failed, send_upcoming_schedule_notifications
from models import (
    ScheduleEntry,
    ScheduleEntryCreate,
    ScheduleEntryUpdate,
    Task,
    TaskCompletion,
    TaskCreate,
    TaskStatusUpdate,
    TaskUpdate,
    TokenUpdate,
    User,
    UserUpdate,
)
from notifications import NotificationDispatcher, get_dispatcher
from scheduler import start_scheduler, stop_scheduler
from time_utils import utc_now

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    dispatcher = get_dispatcher()
    app.state.dispatcher = dispatcher
    start_scheduler(dispatcher)
    yield
    # Shutdown
    stop_scheduler()
    dispatcher.close()

app = FastAPI(title="TodoPop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store() -> DocumentStore:
    return DocumentStore(config.DATABASE_PATH)


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, resolved by the authentication layer in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user id")
    return x_user_id


def verify_job_secret(x_job_secret: Optional[str] = Header(default=None)) -> None:
    """Job triggers are for the external scheduler only."""
    if not config.JOB_SECRET or not x_job_secret:
        raise HTTPException(status_code=401, detail="Missing job secret")
    if not secrets.compare_digest(x_job_secret, config.JOB_SECRET):
        raise HTTPException(status_code=401, detail="Invalid job secret")


def _get_owned_task(store: DocumentStore, task_id: str, user_id: str) -> Task:
    try:
        task = task_service.get_task(store, task_id)
    except task_service.TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.user_id != user_id:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.get("/health")
def health_check() -> dict:
    return {"status": "healthy"}


# Tasks

@app.get("/tasks")
def get_tasks(
    visible: bool = False,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> list[Task]:
    """List the caller's tasks; visible=true keeps only those due today or earlier."""
    return task_service.list_tasks(store, user_id, utc_now(), visible_only=visible)


@app.post("/tasks", status_code=201)
def create_task(
    task_data: TaskCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> Task:
    return task_service.create_task(store, user_id, task_data, utc_now())


@app.get("/tasks/{task_id}")
def get_task(
    task_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> Task:
    return _get_owned_task(store, task_id, user_id)


@app.patch("/tasks/{task_id}")
def update_task(
    task_id: str,
    task_data: TaskUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> Task:
    _get_owned_task(store, task_id, user_id)
    try:
        return task_service.update_task(store, task_id, task_data, utc_now())
    except task_service.TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")


@app.post("/tasks/{task_id}/complete")
def complete_task(
    task_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> TaskCompletion:
    """Complete a task. For recurring tasks the generated next task is returned too."""
    _get_owned_task(store, task_id, user_id)
    try:
        completed, successor = task_service.complete_task(store, task_id, utc_now())
    except task_service.TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except task_service.TaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return TaskCompletion(task=completed, next_task=successor)


@app.patch("/tasks/{task_id}/status")
def update_task_status(
    task_id: str,
    status_data: TaskStatusUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> Task:
    _get_owned_task(store, task_id, user_id)
    try:
        return task_service.set_task_status(store, task_id, status_data.status, utc_now())
    except task_service.TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found for status update")
    except task_service.TaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> dict:
    _get_owned_task(store, task_id, user_id)
    task_service.delete_task(store, task_id)
    return {"status": "deleted"}


# Schedule entries

def _get_owned_entry(store: DocumentStore, entry_id: str, user_id: str) -> ScheduleEntry:
    try:
        entry = task_service.get_schedule_entry(store, entry_id)
    except task_service.ScheduleEntryNotFoundError:
        raise HTTPException(status_code=404, detail="Schedule entry not found")
    if entry.user_id != user_id:
        raise HTTPException(status_code=404, detail="Schedule entry not found")
    return entry


@app.get("/schedule-entries")
def get_schedule_entries(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> list[ScheduleEntry]:
    return task_service.list_schedule_entries(store, user_id)


@app.post("/schedule-entries", status_code=201)
def create_schedule_entry(
    entry_data: ScheduleEntryCreate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> ScheduleEntry:
    return task_service.create_schedule_entry(store, user_id, entry_data, utc_now())


@app.get("/schedule-entries/{entry_id}")
def get_schedule_entry(
    entry_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> ScheduleEntry:
    return _get_owned_entry(store, entry_id, user_id)


@app.patch("/schedule-entries/{entry_id}")
def update_schedule_entry(
    entry_id: str,
    entry_data: ScheduleEntryUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> ScheduleEntry:
    _get_owned_entry(store, entry_id, user_id)
    try:
        return task_service.update_schedule_entry(store, entry_id, entry_data)
    except task_service.ScheduleEntryNotFoundError:
        raise HTTPException(status_code=404, detail="Schedule entry not found")


@app.delete("/schedule-entries/{entry_id}")
def delete_schedule_entry(
    entry_id: str,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> dict:
    _get_owned_entry(store, entry_id, user_id)
    task_service.delete_schedule_entry(store, entry_id)
    return {"status": "deleted"}


# Users

@app.put("/users/me")
def register_user(
    user_data: UserUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> User:
    return task_service.register_user(store, user_id, user_data, utc_now())


@app.put("/users/me/token")
def update_notification_token(
    token_data: TokenUpdate,
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_store),
) -> User:
    try:
        return task_service.set_notification_token(store, user_id, token_data.notification_token)
    except task_service.UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


# Job triggers for external schedulers (cron, Cloud Scheduler, ...)

@app.post("/jobs/overdue-sweep", dependencies=[Depends(verify_job_secret)])
def trigger_overdue_sweep(store: DocumentStore = Depends(get_store)) -> dict:
    count = mark_overdue_tasks_failed(store, utc_now())
    return {"failed": count}


@app.post("/jobs/schedule-notifications", dependencies=[Depends(verify_job_secret)])
def trigger_schedule_notifications(
    store: DocumentStore = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> dict:
    sent = send_upcoming_schedule_notifications(store, dispatcher, utc_now(), config.APP_TIMEZONE)
    return {"sent": sent}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
