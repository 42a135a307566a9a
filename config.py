from __future__ import annotations
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "solespace"

    APP_URL: str = "http://127.0.0.1:8000"
    PAYMONGO_SECRET_KEY: str = ""
    PAYMONGO_API_URL: str = "https://api.paymongo.com/v1"
    PAYMONGO_WEBHOOK_SECRET: Optional[str] = None
    # Fixed hosted link for manual testing; overrides the stored one
    PAYMONGO_PAYMENT_LINK: Optional[str] = None

    # When set, POST/PUT/DELETE requests must echo it in X-CSRF-TOKEN
    CSRF_TOKEN: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    # None keeps network calls without a timeout
    HTTP_TIMEOUT: Optional[float] = None


settings = Settings()
