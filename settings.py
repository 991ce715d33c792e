from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class Settings:
    primary_database_url: str = ""
    embedded_db_path: str = "./ai_copilot.db"
    google_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    ingest_batch_size: int = 200
    preview_rows: int = 5
    sample_rows: int = 5

    max_content_length: int = 10 * 1024 * 1024
    rate_limit_default: str = "120 per minute"
    ask_rate_limit: str = "20 per minute"
    upload_rate_limit: str = "10 per minute"
    rate_limit_storage_uri: str = "memory://"
    rate_limit_enabled: bool = True

    log_level: str = "INFO"

    @property
    def llm_configured(self) -> bool:
        return bool(self.google_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            primary_database_url=(os.getenv("PRIMARY_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip(),
            embedded_db_path=os.getenv("EMBEDDED_DB_PATH", "./ai_copilot.db"),
            google_api_key=(os.getenv("GOOGLE_API_KEY") or "").strip(),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            ingest_batch_size=int(os.getenv("INGEST_BATCH_SIZE", "200")),
            preview_rows=int(os.getenv("PREVIEW_ROWS", "5")),
            sample_rows=int(os.getenv("SAMPLE_ROWS", "5")),
            max_content_length=int(os.getenv("MAX_CONTENT_LENGTH", str(10 * 1024 * 1024))),
            rate_limit_default=os.getenv("RATE_LIMIT_DEFAULT", "120 per minute"),
            ask_rate_limit=os.getenv("ASK_RATE_LIMIT", "20 per minute"),
            upload_rate_limit=os.getenv("UPLOAD_RATE_LIMIT", "10 per minute"),
            rate_limit_storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
            rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "1") == "1",
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
