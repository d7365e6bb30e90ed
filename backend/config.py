import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_PATH = os.getenv("DATABASE_PATH", "todopop.db")

# Calendar decisions (weekday, day-of-month, "today") are made in this zone
APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Asia/Seoul")

OVERDUE_PAGE_SIZE = int(os.getenv("OVERDUE_PAGE_SIZE", "100"))
OVERDUE_BATCH_DELAY_SECONDS = float(os.getenv("OVERDUE_BATCH_DELAY_SECONDS", "1.0"))

ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "1") == "1"

FCM_PROJECT_ID = os.getenv("FCM_PROJECT_ID")
FCM_ACCESS_TOKEN = os.getenv("FCM_ACCESS_TOKEN")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Shared secret for the /jobs/* trigger routes (X-Job-Secret header); unset disables them
JOB_SECRET = os.getenv("JOB_SECRET")
