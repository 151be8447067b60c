# botrelay/core/config.py
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./botrelay.db")

# Blocking upstream calls only; streams have no clock.
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "30"))

DEFAULT_FALLBACK_MESSAGE = os.getenv(
    "DEFAULT_FALLBACK_MESSAGE",
    "Sorry, I can't answer your question right now. Please try again later.",
)

API_KEY_PREFIX = "ak_"
DEFAULT_API_KEY_PERMISSIONS = "chat"
DEFAULT_RATE_LIMIT = int(os.getenv("DEFAULT_RATE_LIMIT", "100"))
DEFAULT_HISTORY_LIMIT = 50

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080",
    ).split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
