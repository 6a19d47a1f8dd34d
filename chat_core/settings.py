"""Messaging settings read from the environment."""

import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

ENV = os.getenv("ENV")
ENV_IS_PROD = ENV == "prod"
COMMIT_HASH = os.getenv("COMMIT_HASH")

APP_ADDR = os.getenv("HOST", "0.0.0.0")
APP_PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() == "true"

# Content and paging limits
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))
PREVIEW_LENGTH = 100
MESSAGES_PAGE_SIZE = int(os.getenv("MESSAGES_PAGE_SIZE", "50"))
SEARCH_RESULT_LIMIT = int(os.getenv("SEARCH_RESULT_LIMIT", "50"))

# Per-sender cap, messages per minute
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "30"))

# Store access
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "10"))
STORE_MAX_RETRIES = int(os.getenv("STORE_MAX_RETRIES", "3"))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.1"))

# Realtime fan-out
SUBSCRIPTION_QUEUE_SIZE = int(os.getenv("SUBSCRIPTION_QUEUE_SIZE", "256"))

# External collaborators
PROFILE_SERVICE_URL = os.getenv("PROFILE_SERVICE_URL", "http://localhost:8003")
PROFILE_SERVICE_API_KEY = os.getenv("PROFILE_SERVICE_API_KEY", "")
PROFILE_CACHE_SIZE = int(os.getenv("PROFILE_CACHE_SIZE", "1000"))
PUSH_NOTIFY_URL = os.getenv("PUSH_NOTIFY_URL", "http://localhost:8004")
PUSH_NOTIFY_API_KEY = os.getenv("PUSH_NOTIFY_API_KEY", "")
