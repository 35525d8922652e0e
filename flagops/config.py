import warnings
from typing import List, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Known insecure placeholder salts (must never be used in production) ──
_INSECURE_SALTS = {
    "change_this",
    "salt",
}


class Settings(BaseSettings):
    APP_NAME: str = "FlagOps Control Plane"
    APP_ENV: str = "development"  # also the environment flags are evaluated in
    API_V1_STR: str = "/api/v1"

    # CORS
    BACKEND_CORS_ORIGINS: str = ""

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "flagops"
    DATABASE_URL: Optional[str] = None  # full override, e.g. sqlite:///./flagops.db

    # Connection pool
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800  # 30 min
    DB_ECHO: bool = False
    SLOW_QUERY_THRESHOLD_MS: int = 500

    # Logging
    LOG_LEVEL: Optional[str] = None  # default: INFO in production / staging, DEBUG otherwise

    # Rollout bucketing
    FLAG_BUCKET_SALT: str = ""  # changing it reshuffles every sticky rollout
    FLAG_DEFAULT_ENVIRONMENTS: List[str] = ["production", "staging"]

    # Resolution safe default
    FLAG_FAIL_OPEN: bool = True           # non kill-switch flags resolve ON when evaluation fails
    FLAG_LAST_KNOWN_GOOD_SIZE: int = 10_000

    # Evaluation logging (log_checks)
    EVAL_LOG_ENABLED: bool = True
    EVAL_LOG_QUEUE_SIZE: int = 1000       # records beyond this are dropped
    EVAL_LOG_BATCH_SIZE: int = 100
    EVAL_LOG_SINK: str = "log"            # log / db

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Block startup if rollout salt or DB credentials are insecure in production / staging."""
        if self.is_deployed:
            if self.FLAG_BUCKET_SALT in _INSECURE_SALTS:
                raise ValueError(
                    f"FLAG_BUCKET_SALT is a placeholder ('{self.FLAG_BUCKET_SALT}'). "
                    "Leave it empty or set a fixed random value; it must never change once rollouts start."
                )
            if self.DATABASE_URL is None and self.POSTGRES_PASSWORD in ("postgres", ""):
                raise ValueError(
                    "POSTGRES_PASSWORD is set to default 'postgres'. "
                    "Set a strong password in .env or environment."
                )
            if self.EVAL_LOG_QUEUE_SIZE > 100_000:
                warnings.warn(
                    "EVAL_LOG_QUEUE_SIZE is very large; dropped evaluation logs are preferable "
                    "to unbounded memory growth.",
                    UserWarning,
                    stacklevel=2,
                )
        if self.EVAL_LOG_SINK not in ("log", "db"):
            raise ValueError("EVAL_LOG_SINK must be 'log' or 'db'")
        return self

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"
        )

    @property
    def is_deployed(self) -> bool:
        """Production and staging get JSON logs and the startup security checks."""
        return self.APP_ENV in ("production", "staging")

settings = Settings()
