"""
Configuration settings for the Momentum cart recovery backend.
Uses pydantic-settings for environment variable management.

DATABASE_URL priority:
  1. DATABASE_URL env var (PostgreSQL in production)
  2. Fallback: SQLite file for local development
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Momentum - Cart Recovery & Churn Detection"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    RESET_DB: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./momentum.db"

    @property
    def is_postgres(self) -> bool:
        return self.DATABASE_URL.startswith("postgresql")

    # Anthropic Claude API (intervention copy)
    ANTHROPIC_API_KEY: str = ""
    AI_MODEL: str = "claude-3-5-haiku-20241022"

    # Customer-facing portal (recovery links)
    PORTAL_URL: str = "https://checkout.example.com"

    # Cart recovery tokens
    CART_RECOVERY_SECRET: str = "dev-only-recovery-secret-not-for-production"
    RECOVERY_TOKEN_EXPIRY_DAYS: int = 7

    # CS chat escalation webhook (optional)
    CS_WEBHOOK_URL: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Security
    SECRET_KEY: str = "momentum-secret-key-change-in-production"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Feature Flags
    ENABLE_AI_FEATURES: bool = True
    AUTO_START_SAVE_FLOW: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
