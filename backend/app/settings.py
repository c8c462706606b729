from __future__ import annotations

import hashlib
import logging
import os
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite+aiosqlite:///./app.db", alias="DATABASE_URL")
    secret_key: str = Field(default="CHANGE_ME", alias="SECRET_KEY")
    algorithm: str = "HS256"
    origin: str = Field(default="", alias="ORIGIN")

    table_count: int = Field(default=3, alias="TABLE_COUNT")
    table_theme: str = Field(default="fort-creek", alias="TABLE_THEME")
    buy_in: Decimal = Field(default=Decimal("1.00"), alias="TABLE_BUY_IN")
    starting_score: int = 120

    forfeit_seconds: int = 120
    draw_vote_seconds: int = 30
    tick_interval: float = 1.0
    trick_linger_seconds: float = 1.0
    all_pass_reveal_seconds: float = 3.0
    draw_reset_seconds: float = 10.0

    class Config:
        env_file = ".env"
        extra = "ignore"

    def allowed_origins(self) -> list[str]:
        return ["http://localhost:5173"] + [x.strip() for x in self.origin.split(",") if x.strip()]

    def masked_secret(self) -> str:
        if not self.secret_key:
            return "<empty>"
        if len(self.secret_key) <= 4:
            return "***"
        return f"{self.secret_key[:2]}***{self.secret_key[-2:]}"

    def log_status(self) -> None:
        env_name = os.getenv("RENDER_SERVICE_NAME") or os.getenv("RENDER_EXTERNAL_URL") or os.getenv(
            "ENV", "unknown"
        )
        secret_hash = hashlib.sha256(self.secret_key.encode()).hexdigest()[:8]
        logger.info(
            "Settings: secret_key=%s (hash=%s), env=%s, tables=%s, buy_in=%s",
            self.masked_secret(),
            secret_hash,
            env_name,
            self.table_count,
            self.buy_in,
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.log_status()
    return settings


settings = get_settings()
