# config.py

import os

from dotenv import load_dotenv

load_dotenv()

# === Slack application ===
SLACK_CLIENT_ID = os.getenv("SLACK_CLIENT_ID", "")
SLACK_CLIENT_SECRET = os.getenv("SLACK_CLIENT_SECRET", "")
SLACK_REDIRECT_URI = os.getenv("SLACK_REDIRECT_URI", "")
SLACK_SCOPES = os.getenv("SLACK_SCOPES", "channels:read,chat:write,groups:read,im:read,mpim:read")
SLACK_API_BASE = os.getenv("SLACK_API_BASE", "https://slack.com/api/")
SLACK_AUTHORIZE_URL = os.getenv("SLACK_AUTHORIZE_URL", "https://slack.com/oauth/v2/authorize")

# === Storage ===
DATABASE_PATH = os.getenv("DATABASE_PATH", "scheduler.db")

# === Dispatcher ===
DISPATCH_INTERVAL_SECONDS = float(os.getenv("DISPATCH_INTERVAL_SECONDS", "5"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# === Web server ===
PORT = int(os.getenv("PORT", "5000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
