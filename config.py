import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional for production, but useful locally

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker + result backend) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (outbound calls) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_CONNECTION_ID = os.environ.get("TELNYX_CONNECTION_ID")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER", "")
    CALL_TO_NUMBER = os.environ.get("CALL_TO_NUMBER", "")
    CALL_TIMEOUT_SECONDS = float(os.environ.get("CALL_TIMEOUT_SECONDS", "15"))

    # --- Scheduler ---
    # "postgres" -> SQL store + Celery eta wake; "memory" -> single-process dev mode
    SCHEDULE_BACKEND = os.environ.get("SCHEDULE_BACKEND", "postgres")
    SCHEDULER_ENTITY_ID = os.environ.get("SCHEDULER_ENTITY_ID", "global-scheduler")
    MIN_DELAY_MINUTES = int(os.environ.get("MIN_DELAY_MINUTES", "1"))
    MAX_DELAY_MINUTES = int(os.environ.get("MAX_DELAY_MINUTES", "60"))
    DISPATCH_DUE_LIMIT = int(os.environ.get("DISPATCH_DUE_LIMIT", "100"))

    # --- Timezone used for human-readable times ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/Los_Angeles")

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "console")  # console | json

settings = Settings()
