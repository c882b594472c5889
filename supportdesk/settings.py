import os

from dotenv import load_dotenv, find_dotenv

# Load .env from project root if present (real env always wins)
load_dotenv(find_dotenv(usecwd=True), override=False)

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://127.0.0.1:8000")
APP_URL = os.getenv("APP_URL", "https://app.supportdesk.local").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dev.db")

# ==== Assistant provider ====
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "30"))
OPENAI_MAX_RETRIES = int(os.getenv("OPENAI_MAX_RETRIES", "2"))

ASSISTANT_POLL_INTERVAL = float(os.getenv("ASSISTANT_POLL_INTERVAL", "1.0"))
ASSISTANT_RUN_TIMEOUT = float(os.getenv("ASSISTANT_RUN_TIMEOUT", "120"))
ASSISTANT_REPLY_WINDOW = int(os.getenv("ASSISTANT_REPLY_WINDOW", "20"))

# ==== Slack ====
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")
SLACK_API_BASE = os.getenv("SLACK_API_BASE", "https://slack.com/api").rstrip("/")

# ==== OneSignal (transactional email) ====
ONESIGNAL_API_BASE = os.getenv("ONESIGNAL_API_BASE", "https://api.onesignal.com").rstrip("/")
ONESIGNAL_API_KEY = os.getenv("ONESIGNAL_API_KEY", "")
ONESIGNAL_APP_ID = os.getenv("ONESIGNAL_APP_ID", "")
ONESIGNAL_DAILY_SUMMARY_TEMPLATE = os.getenv("ONESIGNAL_DAILY_SUMMARY_TEMPLATE", "")
ONESIGNAL_SUPER_ADMIN_SUMMARY_TEMPLATE = os.getenv("ONESIGNAL_SUPER_ADMIN_SUMMARY_TEMPLATE", "")
ONESIGNAL_NEGATIVE_SENTIMENT_TEMPLATE = os.getenv("ONESIGNAL_NEGATIVE_SENTIMENT_TEMPLATE", "")
NEGATIVE_SENTIMENT_THRESHOLD = float(os.getenv("NEGATIVE_SENTIMENT_THRESHOLD", "-0.3"))

# ==== Auth ====
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me")
AUTH_JWT_ALGORITHMS = [a.strip() for a in os.getenv("AUTH_JWT_ALGORITHMS", "HS256").split(",") if a.strip()]
