import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL", "sqlite:///./care_intelligence.db")

    # Batch pass scheduling
    INTELLIGENCE_WORKER_ENABLED: bool = os.getenv("INTELLIGENCE_WORKER_ENABLED", "false").lower() == "true"
    # How often the worker checks for tenants whose pass interval has elapsed
    INTELLIGENCE_WORKER_TICK_MINUTES: int = int(os.getenv("INTELLIGENCE_WORKER_TICK_MINUTES", "15"))
    INTELLIGENCE_SUBJECT_WORKERS: int = int(os.getenv("INTELLIGENCE_SUBJECT_WORKERS", "4"))
    INTELLIGENCE_TENANT_WORKERS: int = int(os.getenv("INTELLIGENCE_TENANT_WORKERS", "4"))

    # SQLite busy timeout (seconds) used when several pass workers write at once
    SQLITE_BUSY_TIMEOUT: int = int(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

    CORS_ORIGINS: list = ["http://localhost:5000", "http://127.0.0.1:5000"]

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL or SQLite connection string."
            )

    class Config:
        env_file = ".env"


settings = Settings()
