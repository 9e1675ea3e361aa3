import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from voucher_market.core.config import (
    ADMIN_BOOTSTRAP_EMAIL,
    ADMIN_BOOTSTRAP_PASSWORD,
    APP_VERSION,
    CORS_ORIGINS,
    DATABASE_URL,
    ENV,
    IS_PROD,
)
from voucher_market.core.database import Base, SessionLocal, engine
from voucher_market.core.logging_setup import configure_logging
from voucher_market.core.rate_limiter import RateLimiterService, build_rate_limiter
from voucher_market.core.startup_checks import ensure_migrations_applied, validate_database_environment
from voucher_market.core.timeutils import utcnow
from voucher_market.middleware.observability import ObservabilityMiddleware
from voucher_market.middleware.rate_limit import RateLimitMiddleware
import voucher_market.models  # registers every table on Base.metadata
import voucher_market.services.event_handlers  # subscribes notification handlers

from voucher_market.models.user import User
from voucher_market.routers.auth import router as auth_router
from voucher_market.routers.deals import router as deals_router
from voucher_market.routers.internal_metrics import router as internal_metrics_router
from voucher_market.routers.payments import router as payments_router
from voucher_market.routers.users import router as users_router
from voucher_market.routers.venues import router as venues_router
from voucher_market.routers.vouchers import router as vouchers_router
from voucher_market.services.auth import hash_password
from voucher_market.services.errors import ErrorKind, MarketError

configure_logging()

logger = logging.getLogger(__name__)
BOOTSTRAP_PREFIX = "[ADMIN_BOOTSTRAP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini")))


def _bootstrap_initial_admin() -> None:
    if not ADMIN_BOOTSTRAP_EMAIL or not ADMIN_BOOTSTRAP_PASSWORD:
        logger.info("%s skipped: ADMIN_BOOTSTRAP_EMAIL/ADMIN_BOOTSTRAP_PASSWORD not set", BOOTSTRAP_PREFIX)
        return

    db = SessionLocal()
    try:
        existing = db.query(User).filter(User.email == ADMIN_BOOTSTRAP_EMAIL).first()
        if existing:
            logger.info("%s exists id=%s role=%s", BOOTSTRAP_PREFIX, existing.id, existing.role)
            return

        admin = User(
            email=ADMIN_BOOTSTRAP_EMAIL,
            password_hash=hash_password(ADMIN_BOOTSTRAP_PASSWORD),
            first_name="Admin",
            last_name="User",
            role="admin",
            is_active=True,
            email_verified=True,
        )
        db.add(admin)
        db.commit()
        logger.info("%s created id=%s email=%s", BOOTSTRAP_PREFIX, admin.id, admin.email)
    except Exception:
        db.rollback()
        logger.exception("%s bootstrap failed", BOOTSTRAP_PREFIX)
        raise
    finally:
        db.close()


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        if DATABASE_URL.startswith("sqlite") and not IS_PROD:
            Base.metadata.create_all(bind=engine)
            logger.info("sqlite schema ensured from metadata")
        else:
            ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        _bootstrap_initial_admin()
    except Exception:
        logger.exception("startup failed")
        raise


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


async def market_error_handler(_request: Request, exc: MarketError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Validation failed",
            "code": ErrorKind.VALIDATION.value,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("database error on %s %s", request.method, request.url.path, exc_info=exc)
    detail = "Internal server error" if IS_PROD else f"Database error: {exc.__class__.__name__}: {exc}"
    return JSONResponse(status_code=500, content={"detail": detail, "code": "INTERNAL_ERROR"})


def create_app(*, rate_limiter: RateLimiterService | None = None) -> FastAPI:
    application = FastAPI(
        title="Voucher Market API",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter or build_rate_limiter())
    # added last so it wraps the limiter and sees its 429s
    application.add_middleware(ObservabilityMiddleware)

    application.add_exception_handler(MarketError, market_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(SQLAlchemyError, database_error_handler)

    application.include_router(auth_router)
    application.include_router(users_router)
    application.include_router(venues_router)
    application.include_router(deals_router)
    application.include_router(vouchers_router)
    application.include_router(payments_router)
    application.include_router(internal_metrics_router)

    @application.get("/")
    def root():
        return {"status": "ok", "service": "voucher-market", "version": APP_VERSION}

    @application.get("/health")
    def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat() + "Z",
            "version": APP_VERSION,
            "environment": ENV,
        }

    return application


app = create_app()
