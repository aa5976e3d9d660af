from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = None
    APP_PORT: int = 8081
    NOTIFICATION_QUEUE: str = "notifications"
    # used when DATABASE_URL is not set
    NOTIFICATION_QUEUE_FILE: str = ".queue/notifications.json"
    RUN_WORKER: bool = True

    EMAIL_MODE: str = "live"  # "shadow" redirects every e-mail
    EMAIL_SHADOW_ADDRESS: str = "shadow-inbox@grievance.local"
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_FROM_EMAIL: str = "noreply@grievance.local"
    SENDGRID_FROM_NAME: str = "Grievance Desk"

    @property
    def database_url(self) -> Optional[str]:
        return self.DATABASE_URL

    @property
    def shadow_address(self) -> Optional[str]:
        if self.EMAIL_MODE.lower() != "shadow":
            return None
        return self.EMAIL_SHADOW_ADDRESS

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
