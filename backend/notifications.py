"""
Push notification dispatch.

The jobs only depend on `NotificationDispatcher.send(token, message)`;
FcmDispatcher talks to the FCM HTTP v1 API and LogDispatcher is used when no
push credentials are configured.
"""
import logging
from datetime import datetime
from typing import Optional

import httpx

import config
from models import NotificationMessage
from time_utils import localize, sunday_weekday

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

KOREAN_DAYS = ["일", "월", "화", "수", "목", "금", "토"]


class NotificationError(Exception):
    """Raised when a push message could not be delivered."""


class NotificationDispatcher:
    def send(self, token: str, message: NotificationMessage) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LogDispatcher(NotificationDispatcher):
    def send(self, token: str, message: NotificationMessage) -> None:
        logger.info("Push to %s...: %s / %s", token[:8], message.title, message.body)


class FcmDispatcher(NotificationDispatcher):
    def __init__(self, project_id: str, access_token: str, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.project_id = project_id
        self.access_token = access_token
        self.client = client or httpx.Client(timeout=timeout)

    @staticmethod
    def build_message(token: str, message: NotificationMessage) -> dict:
        """Build the FCM v1 request body for a plain title/body alert."""
        return {
            "message": {
                "token": token,
                "notification": {
                    "title": message.title,
                    "body": message.body,
                },
                "android": {
                    "priority": "high",
                    "notification": {"sound": "default"},
                },
                "apns": {
                    "payload": {
                        "aps": {
                            "mutable-content": 1,
                            "content-available": 1,
                            "sound": "default",
                        }
                    }
                },
            }
        }

    def send(self, token: str, message: NotificationMessage) -> None:
        try:
            response = self.client.post(
                FCM_SEND_URL.format(project_id=self.project_id),
                json=self.build_message(token, message),
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"FCM request failed: {e}") from e

        if response.is_error:
            raise NotificationError(f"FCM returned {response.status_code}: {response.text}")

    def close(self) -> None:
        self.client.close()


def get_dispatcher() -> NotificationDispatcher:
    """Build the dispatcher for this process. The caller owns it and closes it on shutdown."""
    if config.FCM_PROJECT_ID and config.FCM_ACCESS_TOKEN:
        return FcmDispatcher(config.FCM_PROJECT_ID, config.FCM_ACCESS_TOKEN)
    logger.warning("FCM credentials not configured, push messages will only be logged")
    return LogDispatcher()


def format_start_at(instant: datetime, tz_name: Optional[str] = None) -> str:
    """Format as YYYY.MM.DD(요일) 오전/오후 hh:mm in the app timezone."""
    local = localize(instant, tz_name or config.APP_TIMEZONE)
    day = KOREAN_DAYS[sunday_weekday(local)]
    meridiem = "오전" if local.hour < 12 else "오후"
    hour = local.hour % 12 or 12
    return f"{local:%Y.%m.%d}({day}) {meridiem} {hour:02d}:{local:%M}"
