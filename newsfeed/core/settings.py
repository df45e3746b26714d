from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_path: str
    host: str
    port: int
    log_level: str
    send_queue_size: int

    @staticmethod
    def from_env() -> "Settings":
        def _s(name: str, default: str) -> str:
            return os.getenv(name, default).strip()

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            db_path=_s("DB_PATH", "./_local/data/newsfeed.db"),
            host=_s("HOST", "0.0.0.0"),
            port=_i("PORT", "3000"),
            log_level=_s("LOG_LEVEL", "info").lower(),
            send_queue_size=_i("SEND_QUEUE_SIZE", "256"),
        )
