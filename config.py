import os

from dotenv import load_dotenv

load_dotenv()

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker + webhook rate limiter) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Twilio (SMS) ---
    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.environ.get("TWILIO_FROM_NUMBER")
    TWILIO_MESSAGING_SERVICE_SID = os.environ.get("TWILIO_MESSAGING_SERVICE_SID")
    TWILIO_TIMEOUT = float(os.environ.get("TWILIO_TIMEOUT", "5"))
    # Public URL Twilio posts to; part of the signed string and used as the
    # status callback for outbound messages.
    WEBHOOK_PUBLIC_URL = os.environ.get("WEBHOOK_PUBLIC_URL")

    # --- Schedule (user-local wall clock) ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/Los_Angeles")
    SMS_MORNING_NUDGE_AT = os.environ.get("SMS_MORNING_NUDGE_AT", "06:15")
    SMS_EVENING_REMINDER_AT = os.environ.get("SMS_EVENING_REMINDER_AT", "21:00")
    SMS_QUIET_HOURS_START = int(os.environ.get("SMS_QUIET_HOURS_START", "22"))
    SMS_QUIET_HOURS_END = int(os.environ.get("SMS_QUIET_HOURS_END", "6"))
    SMS_SCAN_INTERVAL = float(os.environ.get("SMS_SCAN_INTERVAL", "60"))
    SMS_MAX_DAILY_FAILURES = int(os.environ.get("SMS_MAX_DAILY_FAILURES", "1"))

    # --- Queue / retries ---
    SMS_MAX_ATTEMPTS = int(os.environ.get("SMS_MAX_ATTEMPTS", "3"))
    SMS_RETRY_BASE_DELAY = int(os.environ.get("SMS_RETRY_BASE_DELAY", "60"))
    SMS_RETRY_MULTIPLIER = int(os.environ.get("SMS_RETRY_MULTIPLIER", "2"))
    SMS_COMPLETED_RETENTION = int(os.environ.get("SMS_COMPLETED_RETENTION", "86400"))
    SMS_FAILED_RETENTION = int(os.environ.get("SMS_FAILED_RETENTION", "604800"))
    SMS_WORKER_CONCURRENCY = int(os.environ.get("SMS_WORKER_CONCURRENCY", "5"))
    SMS_SEND_RATE_LIMIT = os.environ.get("SMS_SEND_RATE_LIMIT", "60/m")
    # Quiet-hours deferrals hop at most this far ahead so they stay under the
    # broker visibility timeout.
    SMS_MAX_DEFER_SECONDS = int(os.environ.get("SMS_MAX_DEFER_SECONDS", "2700"))
    BROKER_VISIBILITY_TIMEOUT = int(os.environ.get("BROKER_VISIBILITY_TIMEOUT", "3600"))

    # --- Webhook ---
    WEBHOOK_RATE_LIMIT_PER_MINUTE = int(os.environ.get("WEBHOOK_RATE_LIMIT_PER_MINUTE", "20"))

    # --- Deep links embedded in message bodies ---
    DEEP_LINK_MORNING = os.environ.get("DEEP_LINK_MORNING", "gtsd://today")
    DEEP_LINK_EVENING = os.environ.get("DEEP_LINK_EVENING", "gtsd://today?reminder=pending")

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

settings = Settings()
