import logging
import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Config
# ----------------------------
@dataclass
class Settings:
    database_url: str = "sqlite:///./comforeve.db"
    db_command_timeout: float = 10.0

    # mock | paystack
    gateway_backend: str = "mock"
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    gateway_timeout_seconds: float = 10.0

    app_url: str = "http://localhost:8000"
    mock_webhook_url: str = "http://localhost:8000/api/payments/webhook"
    admin_token: str = ""
    currency: str = "NGN"

    # memory | redis
    ratelimit_backend: str = "memory"
    redis_url: str = "redis://127.0.0.1:6379"
    # peers whose X-Forwarded-For is believed
    trusted_proxies: tuple = ()

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout: float = 15.0
    email_from: str = "Comforeve <no-reply@comforeve.local>"

    log_level: str = "INFO"

    # requests per window, per scope
    rate_limits: dict = field(default_factory=lambda: {
        "verify": (30, 60),
        "book_free": (10, 60),
        "payout": (5, 300),
    })

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            db_command_timeout=float(os.getenv("DB_COMMAND_TIMEOUT", "10")),
            gateway_backend=os.getenv("GATEWAY_BACKEND", "mock").lower(),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
            paystack_base_url=os.getenv(
                "PAYSTACK_BASE_URL", cls.paystack_base_url
            ),
            gateway_timeout_seconds=float(
                os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")
            ),
            app_url=os.getenv("APP_URL", cls.app_url),
            mock_webhook_url=os.getenv(
                "MOCK_WEBHOOK_URL", cls.mock_webhook_url
            ),
            admin_token=os.getenv("ADMIN_TOKEN", ""),
            currency=os.getenv("CURRENCY", "NGN"),
            ratelimit_backend=os.getenv("RATELIMIT_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            trusted_proxies=tuple(
                p.strip()
                for p in os.getenv("TRUSTED_PROXIES", "").split(",")
                if p.strip()
            ),
            smtp_host=os.getenv("SMTP_HOST", ""),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
            smtp_timeout=float(os.getenv("SMTP_TIMEOUT", "15")),
            email_from=os.getenv("EMAIL_FROM", cls.email_from),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    # keep handlers installed by pytest or uvicorn
    if not root.handlers:
        logging.basicConfig(
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    root.setLevel(level)
