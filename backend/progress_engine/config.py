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
    LEDGER_MAX_RETRIES: int
    RATE_LIMIT_SWEEP_SECONDS: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
        self.RATE_LIMIT_SWEEP_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "300"))  # 5 minutes
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.LEDGER_MAX_RETRIES < 1:
            raise RuntimeError("LEDGER_MAX_RETRIES must be >= 1")
        if self.RATE_LIMIT_SWEEP_SECONDS <= 0:
            raise RuntimeError("RATE_LIMIT_SWEEP_SECONDS must be > 0")


settings = Settings()
