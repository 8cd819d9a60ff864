"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    LOG_LEVEL: str
    ADMIN_USERNAMES: frozenset
    ADAPTIVE_METRICS_WINDOW: int
    HINT_TREND_MONTHS: int
    HINT_UPSERT_RETRIES: int
    SESSION_IDLE_MINUTES: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        raw_admins = os.getenv("ADMIN_USERNAMES", "")
        self.ADMIN_USERNAMES = frozenset(u.strip() for u in raw_admins.split(",") if u.strip())
        self.ADAPTIVE_METRICS_WINDOW = int(os.getenv("ADAPTIVE_METRICS_WINDOW", "5"))
        self.HINT_TREND_MONTHS = int(os.getenv("HINT_TREND_MONTHS", "6"))
        self.HINT_UPSERT_RETRIES = int(os.getenv("HINT_UPSERT_RETRIES", "5"))
        self.SESSION_IDLE_MINUTES = int(os.getenv("SESSION_IDLE_MINUTES", "120"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        for name in ("ADAPTIVE_METRICS_WINDOW", "HINT_TREND_MONTHS", "HINT_UPSERT_RETRIES", "SESSION_IDLE_MINUTES"):
            if getattr(self, name) < 1:
                raise RuntimeError(f"{name} must be >= 1")


settings = Settings()
