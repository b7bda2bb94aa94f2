# api/_settings.py
import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

DEFAULT_MODEL = "gemini-2.0-flash"
LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"

logger = logging.getLogger("chat_relay")


class Settings(BaseModel):
    """Server configuration, read once when the app is built."""

    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_MODEL
    allowed_origins: List[str] = ["*"]
    log_level: str = "INFO"
    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = os.getenv("ALLOWED_ORIGINS", "*")
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY", "").strip(),
            gemini_model=os.getenv("GEMINI_MODEL") or DEFAULT_MODEL,
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            log_level=_log_level(os.getenv("LOG_LEVEL", "INFO")),
            langfuse_public_key=os.getenv("LANGFUSE_PUBLIC_KEY") or None,
            langfuse_secret_key=os.getenv("LANGFUSE_SECRET_KEY") or None,
            langfuse_host=os.getenv("LANGFUSE_HOST") or None,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def tracing_enabled(self) -> bool:
        return all([self.langfuse_public_key, self.langfuse_secret_key, self.langfuse_host])


def _log_level(value: str) -> str:
    level = value.strip().upper()
    return level if level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    logger.setLevel(settings.log_level)
