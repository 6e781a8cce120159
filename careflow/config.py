# careflow/config.py
import logging
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()  # load environment variables from .env

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    JWT_SECRET: str = "change_this_secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    FRONTEND_ORIGINS: Optional[str] = None
    FRONTEND_URL: Optional[str] = None

    # Scheduling
    MAX_TASK_OCCURRENCES: int = 10
    RECURRENCE_HORIZON_DAYS: int = 90
    SCHEDULER_ENABLED: bool = True

    # Realtime
    TYPING_IDLE_SECONDS: float = 10.0
    DEDUP_WINDOW: int = 1000

    LOG_LEVEL: str = "INFO"

    def frontend_origins(self) -> List[str]:
        """Return the allowed frontend origins.

        Priority:
        - FRONTEND_ORIGINS (comma-separated)
        - FRONTEND_URL (single URL)
        - default localhost ports used by common frontends
        """
        if self.FRONTEND_ORIGINS:
            return [o.strip() for o in self.FRONTEND_ORIGINS.split(",") if o.strip()]
        if self.FRONTEND_URL:
            return [self.FRONTEND_URL.strip()]
        return ["http://localhost:3000", "http://localhost:5173"]


settings = Settings()


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
