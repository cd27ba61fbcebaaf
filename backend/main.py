"""
Momentum - FastAPI Application Entry Point

Cart abandonment recovery and checkout churn detection.
Provides REST APIs for tracking checkout behaviour, running multi-stage
cart save flows, scoring customer churn risk and delivering recovery
messages.

Serverless friendly:
  - Synchronous DB init on cold start
  - Periodic sweeps (abandonment, dispatch, retries) are exposed as
    endpoints for an external scheduler to call
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import init_db, SessionLocal
from errors import MomentumError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("momentum")

# Track DB readiness
_db_ready = False


def _prepare_database() -> None:
    """Create tables, optionally wipe them, and seed the demo company when empty."""
    from database import engine, Base
    from models import Company

    if settings.RESET_DB:
        logger.warning("RESET_DB is set, dropping every table before startup")
        Base.metadata.drop_all(bind=engine)
    init_db()

    db = SessionLocal()
    try:
        companies = db.query(Company).count()
        if companies:
            logger.info(f"Found {companies} companies, seed skipped")
            return
        from seed_data import seed_database
        company = seed_database(db)
        logger.info(f"Seeded demo company {company.code}")
    except Exception as e:
        logger.error(f"Seeding failed: {e}")
        db.rollback()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _db_ready

    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(
        f"Database backend: {'postgresql' if settings.is_postgres else 'sqlite'}, "
        f"AI content: {'on' if settings.ENABLE_AI_FEATURES and settings.ANTHROPIC_API_KEY else 'off'}, "
        f"auto save flow: {settings.AUTO_START_SAVE_FLOW}"
    )

    try:
        _prepare_database()
        _db_ready = True
    except Exception as e:
        logger.error(f"Database startup failed: {e}")
        _db_ready = False

    yield

    logger.info("Momentum API stopped")


# ---------------------------------------------------------------------------
# Create FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "REST API for Momentum - cart abandonment recovery, "
        "checkout churn detection and multi-channel delivery."
    ),
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS Middleware
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Service-layer errors
# ---------------------------------------------------------------------------
@app.exception_handler(MomentumError)
async def momentum_error_handler(request: Request, exc: MomentumError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# Include all route routers under /api/v1
# ---------------------------------------------------------------------------
from routes import (
    auth_router,
    carts_router,
    cart_save_router,
    checkout_router,
    churn_router,
    delivery_router,
    events_router,
    voice_recovery_router,
)

API_PREFIX = "/api/v1"

all_routers = [
    auth_router,
    carts_router,
    cart_save_router,
    checkout_router,
    churn_router,
    delivery_router,
    events_router,
    voice_recovery_router,
]

# Mount under /api/v1
for r in all_routers:
    app.include_router(r, prefix=API_PREFIX)

# Also mount at root
for r in all_routers:
    app.include_router(r)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/", tags=["Health"])
def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
def health_check():
    result = {
        "status": "healthy",
        "database": "ready" if _db_ready else "initializing",
        "database_backend": "postgresql" if settings.is_postgres else "sqlite",
        "version": settings.APP_VERSION,
        "ai_enabled": bool(settings.ENABLE_AI_FEATURES and settings.ANTHROPIC_API_KEY),
        "auto_save_flow": settings.AUTO_START_SAVE_FLOW,
    }

    if _db_ready:
        from models import Cart
        db = SessionLocal()
        try:
            result["cart_count"] = db.query(Cart).count()
        except Exception as e:
            result["cart_count"] = 0
            result["database"] = f"error: {str(e)}"
        finally:
            db.close()

    return result
