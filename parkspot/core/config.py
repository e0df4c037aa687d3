# parkspot/core/config.py
import os
import json
from dataclasses import dataclass, field
from typing import Dict, List
from dotenv import load_dotenv

# Load .env into process environment early
load_dotenv()

PAID_TIERS = ("basic", "pro", "enterprise")


def _get(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def _get_list(name: str, default_list: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default_list)
    s = raw.strip()
    # Try JSON first
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
            if isinstance(parsed, list):
                return [str(x) for x in parsed]
        except ValueError:
            pass
    # Fallback to CSV
    return [x.strip() for x in s.split(",") if x.strip()]


def _get_int(name: str, default: int) -> int:
    try:
        return int(float(_get(name, str(default)) or default))
    except ValueError:
        return default


def _get_flag(name: str) -> bool:
    return (_get(name, "0") or "0").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    DATABASE_URL: str | None = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE_S: int = 300
    # Stripe (server-side)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_S: int = 300
    PLAN_PRICE_IDS: Dict[str, str] = field(default_factory=dict)
    PUBLIC_BASE_URL: str | None = None
    # Supabase auth
    SUPABASE_JWT_SECRET: str | None = None
    SUPABASE_JWT_JWKS_URL: str | None = None
    SUPABASE_ISS: str | None = None
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    USER_RL_PER_MIN: int = 10
    REDIS_URL: str | None = None
    ENABLE_HSTS: bool = False
    ENABLE_SWAGGER: bool = False

    def price_for(self, plan_id: str | None) -> str | None:
        if not plan_id:
            return None
        return self.PLAN_PRICE_IDS.get(plan_id) or None

    def missing_required(self) -> List[str]:
        """Names of required variables that are absent.

        Checked by the health endpoint and logged once at startup; requests
        themselves do not re-validate configuration.
        """
        missing = [
            name
            for name in ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
            if not getattr(self, name)
        ]
        if not (self.SUPABASE_JWT_SECRET or self.SUPABASE_JWT_JWKS_URL):
            missing.append("SUPABASE_JWT_SECRET|SUPABASE_JWT_JWKS_URL")
        return missing


def _plan_price_ids() -> Dict[str, str]:
    prices: Dict[str, str] = {}
    for tier in PAID_TIERS:
        price = (_get(f"STRIPE_PRICE_{tier.upper()}") or "").strip()
        if price:
            prices[tier] = price
    return prices


def get_settings() -> Settings:
    public_base = (_get("PUBLIC_BASE_URL") or "").strip().rstrip("/") or None
    return Settings(
        DATABASE_URL=_get("DATABASE_URL", "sqlite:///data/parkspot.db"),
        DB_ECHO=_get("DB_ECHO") == "1",
        DB_POOL_SIZE=_get_int("DB_POOL_SIZE", 5),
        DB_MAX_OVERFLOW=_get_int("DB_MAX_OVERFLOW", 10),
        DB_POOL_RECYCLE_S=_get_int("DB_POOL_RECYCLE_S", 300),
        STRIPE_SECRET_KEY=_get("STRIPE_SECRET_KEY"),
        STRIPE_WEBHOOK_SECRET=_get("STRIPE_WEBHOOK_SECRET"),
        STRIPE_WEBHOOK_TOLERANCE_S=_get_int("STRIPE_WEBHOOK_TOLERANCE_S", 300),
        PLAN_PRICE_IDS=_plan_price_ids(),
        PUBLIC_BASE_URL=public_base,
        SUPABASE_JWT_SECRET=_get("SUPABASE_JWT_SECRET"),
        SUPABASE_JWT_JWKS_URL=_get("SUPABASE_JWT_JWKS_URL"),
        SUPABASE_ISS=_get("SUPABASE_ISS") or _get("SUPABASE_JWT_ISSUER"),
        CORS_ORIGINS=_get_list("CORS_ORIGINS", ["*"]),
        USER_RL_PER_MIN=_get_int("USER_RL_PER_MIN", 10),
        REDIS_URL=_get("REDIS_URL"),
        ENABLE_HSTS=_get_flag("ENABLE_HSTS"),
        ENABLE_SWAGGER=_get_flag("ENABLE_SWAGGER"),
    )
