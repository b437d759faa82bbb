"""Configuration for the auction engine and its web API."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'auction.db'}",
)


def _parse_int(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


# Web auth (JWT secret, initial master bootstrap)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = _parse_int(os.getenv("JWT_EXPIRE_DAYS"), 7)
INITIAL_MASTER_USERNAME = os.getenv("INITIAL_MASTER_USERNAME", "master")
INITIAL_MASTER_PASSWORD = os.getenv("INITIAL_MASTER_PASSWORD", "")  # Set to bootstrap the master account

# Settlement: whole-operation retries after a storage failure (0 disables)
SETTLEMENT_RETRIES = _parse_int(os.getenv("SETTLEMENT_RETRIES"), 1)

# Per-subscriber buffer for live auction updates; oldest message dropped when full
NOTIFICATION_QUEUE_SIZE = _parse_int(os.getenv("NOTIFICATION_QUEUE_SIZE"), 100)

# Server
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _parse_int(os.getenv("API_PORT"), 8000)
