from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    log_level: str = "INFO"
    api_version: str = "1.0.0"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_version=os.getenv("API_VERSION", "1.0.0"),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
