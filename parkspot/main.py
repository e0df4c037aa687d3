import datetime as dt
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from parkspot.auth import SupabaseAuthenticator
from parkspot.core.config import Settings, get_settings
from parkspot.core.errors import register_error_handlers
from parkspot.core.logging import setup_logging
from parkspot.data.profiles import ProfileStore
from parkspot.db import build_engine, init_db, ping
from parkspot.routes import billing
from parkspot.services.checkout import CheckoutService
from parkspot.services.plans import PlanCatalog
from parkspot.services.processor import BillingProcessor, StripeProcessor
from parkspot.services.rate_limit import UserRateLimiter
from parkspot.services.reconciler import SubscriptionReconciler
from parkspot.services.verifier import SessionVerifier
from parkspot.services.webhooks import WebhookReceiver

log = logging.getLogger(__name__)

_NO_STORE = {"Cache-Control": "no-store, must-revalidate", "Pragma": "no-cache"}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # Baseline headers
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if self.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=63072000; includeSubDomains; preload",
            )
        return response


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ProfileStore] = None,
    processor: Optional[BillingProcessor] = None,
) -> FastAPI:
    """Build the API. Collaborators default to the environment-configured ones.

    Run with ``uvicorn --factory parkspot.main:create_app``.
    """
    setup_logging()
    cfg = settings or get_settings()
    missing = cfg.missing_required()
    if missing:
        log.warning("config.missing %s; /api/health will report unhealthy", ",".join(missing))

    if store is None:
        engine = build_engine(cfg)
        init_db(engine)
        store = ProfileStore(engine)
    if processor is None:
        processor = StripeProcessor(
            cfg.STRIPE_SECRET_KEY,
            cfg.STRIPE_WEBHOOK_SECRET,
            cfg.STRIPE_WEBHOOK_TOLERANCE_S,
        )

    app = FastAPI(
        title="Parkspot Billing",
        version="1.0",
        docs_url="/docs" if cfg.ENABLE_SWAGGER else None,
        redoc_url="/redoc" if cfg.ENABLE_SWAGGER else None,
    )

    catalog = PlanCatalog(cfg)
    reconciler = SubscriptionReconciler(store, catalog)
    app.state.settings = cfg
    app.state.store = store
    app.state.processor = processor
    app.state.catalog = catalog
    app.state.reconciler = reconciler
    app.state.authenticator = SupabaseAuthenticator(cfg)
    app.state.limiter = UserRateLimiter(cfg.USER_RL_PER_MIN, cfg.REDIS_URL)
    app.state.checkout = CheckoutService(store, processor, catalog, cfg.PUBLIC_BASE_URL)
    app.state.webhooks = WebhookReceiver(processor, reconciler)
    app.state.verifier = SessionVerifier(processor, reconciler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=cfg.ENABLE_HSTS)
    register_error_handlers(app)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/api/health")
    async def health():
        """Configuration and profile-store probe."""
        now = dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()
        absent = cfg.missing_required()
        if absent:
            return JSONResponse(
                {
                    "status": "error",
                    "message": "Missing required environment variables",
                    "missing": absent,
                    "timestamp": now,
                },
                status_code=503,
                headers=_NO_STORE,
            )
        try:
            ping(app.state.store.engine)
        except SQLAlchemyError:
            log.exception("health.db_probe_failed")
            return JSONResponse(
                {"status": "error", "message": "Database connection error", "timestamp": now},
                status_code=503,
                headers=_NO_STORE,
            )
        return JSONResponse(
            {"status": "healthy", "message": "All systems operational", "timestamp": now},
            headers=_NO_STORE,
        )

    app.include_router(billing.router)
    return app
