from __future__ import annotations
import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LockoutPolicy:
    # 10 failures -> 5 min, 20 -> 10 min, 30 -> 20 min, ...
    threshold: int = 10
    base_seconds: int = 300
    multiplier: int = 2

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if self.base_seconds < 0:
            raise ValueError("lockout base_seconds must not be negative")
        if self.multiplier < 1:
            raise ValueError("lockout multiplier must be at least 1")

    def duration_for(self, failed_attempts: int) -> int:
        crossing = -(-failed_attempts // self.threshold)  # ceil
        return self.base_seconds * self.multiplier ** max(0, crossing - 1)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./boxoffice.db"
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    gateway_backend: str = "mock"  # 'stripe' | 'mock'
    gateway_url: str = "https://api.stripe.com/v1"
    gateway_api_key: str = ""
    gateway_timeout: float = 10.0

    refundq_backend: str = "pg"  # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"

    adhoc_ticket_ttl_days: int = 30
    default_currency: str = "USD"

    log_level: str = "INFO"
    log_json: bool = False

    lockout: LockoutPolicy = field(default_factory=LockoutPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            session_secret=os.getenv("SESSION_SECRET", cls.session_secret),
            admin_username=os.getenv("ADMIN_USERNAME", cls.admin_username),
            admin_password=os.getenv("ADMIN_PASSWORD", cls.admin_password),
            gateway_backend=os.getenv(
                "GATEWAY_BACKEND", cls.gateway_backend
            ).lower(),
            gateway_url=os.getenv("GATEWAY_URL", cls.gateway_url),
            gateway_api_key=os.getenv("GATEWAY_API_KEY", ""),
            gateway_timeout=float(
                os.getenv("GATEWAY_TIMEOUT", str(cls.gateway_timeout))
            ),
            refundq_backend=os.getenv(
                "REFUNDQ_BACKEND", cls.refundq_backend
            ).lower(),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            adhoc_ticket_ttl_days=int(
                os.getenv("ADHOC_TICKET_TTL_DAYS", str(cls.adhoc_ticket_ttl_days))
            ),
            default_currency=os.getenv(
                "DEFAULT_CURRENCY", cls.default_currency
            ).upper(),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            log_json=_env_bool("LOG_JSON"),
            lockout=LockoutPolicy(
                threshold=int(os.getenv("LOCKOUT_THRESHOLD", "10")),
                base_seconds=int(os.getenv("LOCKOUT_BASE_SECONDS", "300")),
                multiplier=int(os.getenv("LOCKOUT_MULTIPLIER", "2")),
            ),
        )
