import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./soundstage.db"
    TEST_DATABASE_URL: Optional[str] = None

    # Auth (identity provider issues HS256 tokens, sub = account id)
    AUTH_JWT_SECRET: Optional[str] = None
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback for dev/tests

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"
    STRIPE_PRICE_STUDIO: Optional[str] = None
    STRIPE_PRICE_CREATOR: Optional[str] = None
    STRIPE_PRICE_ALL_ACCESS: Optional[str] = None

    # Generation gateway (third-party music/media API)
    GENERATION_API_URL: str = "https://studio-api.prod.suno.com/api"
    GENERATION_API_KEY: Optional[str] = None
    GENERATION_TIMEOUT_SECONDS: float = 30.0
    GENERATION_CALLBACK_SECRET: Optional[str] = None

    # Credits
    SIGNUP_CREDITS: int = 50
    DAILY_RESET_HOURS: int = 24
    REFUND_ON_GATEWAY_FAILURE: bool = True

    # App
    CORS_ORIGINS: str = "http://localhost:5173"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()


# Needed for payments and generation to work at all
REQUIRED_KEYS = ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "GENERATION_API_KEY")


def config_problems(cfg: Settings) -> list[str]:
    """Human-readable problems with the configuration. Never includes secret values."""
    production = cfg.ENV.lower() == "production"
    keys = list(REQUIRED_KEYS) + (["AUTH_JWT_SECRET"] if production else [])

    problems = []
    missing = [key for key in keys if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if production and cfg.ALLOW_HEADER_AUTH:
        problems.append("ALLOW_HEADER_AUTH must be disabled in production")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Warn about configuration problems; with strict (or CONFIG_STRICT) raise RuntimeError instead."""
    cfg = settings_obj or settings
    problems = config_problems(cfg)
    if not problems:
        return True
    if cfg.CONFIG_STRICT if strict is None else strict:
        raise RuntimeError("; ".join(problems))
    log = logger or logging.getLogger("soundstage")
    for problem in problems:
        log.warning(problem)
    return False


def cors_origins(settings_obj: Optional[Settings] = None) -> list[str]:
    cfg = settings_obj or settings
    return [o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()]
