from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/account_portal"

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # MAIL SCHEDULER SETTINGS
    # =================================================================
    MAIL_SCHEDULER_STATE_DIR: str = str(BASE_DIR / "cache")
    MAIL_SCHEDULER_BATCH_SIZE: int = 5
    MAIL_SCHEDULER_IDLE_SECONDS: float = 10.0
    MAIL_SCHEDULER_JOB_DELAY_SECONDS: float = 1.0
    MAIL_SCHEDULER_CYCLE_DELAY_SECONDS: float = 5.0
    MAIL_SCHEDULER_ERROR_BACKOFF_SECONDS: float = 30.0
    MAIL_SCHEDULER_STOP_POLL_SECONDS: float = 1.0
    MAIL_SCHEDULER_HEARTBEAT_MAX_AGE_SECONDS: float = 60.0
    MAIL_SCHEDULER_ERROR_ALERT_THRESHOLD: int = 5
    MAIL_SCHEDULER_AUTOSTART_ENABLED: bool = True
    MAIL_SCHEDULER_AUTOSTART_SKIP_PATHS: list[str] = [
        "/setup",
        "/login",
        "/register",
        "/forgot-password",
        "/reset-password",
        "/verify",
        "/2fa-verify",
        "/enable-2fa",
        "/css/",
        "/js/",
        "/images/",
        "/favicon.ico",
        "/healthz",
        "/readyz",
        "/health/",
    ]

    # SMTP settings
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_TIMEOUT: float = 60.0
    SMTP_VALIDATE_CERTS: bool = True
    MAIL_FROM_ADDRESS: str = "no-reply@localhost"
    MAIL_FROM_NAME: str = "Account Portal"
    MAIL_TEMPLATE_DIR: str = str(BASE_DIR / "app" / "templates" / "mail")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config

    def get_mail_scheduler_state_dir(self) -> Path:
        """Directory holding the worker's pid/heartbeat/stop/status files."""
        return Path(self.MAIL_SCHEDULER_STATE_DIR)

    def get_smtp_config(self) -> dict:
        """SMTP connection parameters for the mail delivery service."""
        return {
            "host": self.SMTP_HOST,
            "port": self.SMTP_PORT,
            "username": self.SMTP_USERNAME,
            "password": self.SMTP_PASSWORD,
            "timeout": self.SMTP_TIMEOUT,
            "validate_certs": self.SMTP_VALIDATE_CERTS,
        }


settings = Settings()
