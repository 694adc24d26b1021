import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Environment driven configuration for the storefront API."""

    def __init__(self):
        self.database_url: Optional[str] = os.getenv("DATABASE_URL")
        self.database_name: Optional[str] = os.getenv("DATABASE_NAME")
        self.stripe_webhook_secret: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.cors_origins: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.port: int = int(os.getenv("PORT", 8000))


@lru_cache
def get_settings() -> Settings:
    return Settings()
