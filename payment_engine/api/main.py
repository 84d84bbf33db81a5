"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from payment_engine.api.middleware import RequestIDMiddleware, MetricsMiddleware
from payment_engine.api.v1 import accounts, sessions, transactions
from payment_engine.infrastructure.database.repositories import AccountRepository
from payment_engine.infrastructure.database.session import SessionLocal
from payment_engine.infrastructure.observability.logging import setup_logging
from payment_engine.services.engine import TransactionEngine
from payment_engine.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def restore_accounts(engine: TransactionEngine) -> int:
    """Load persisted account snapshots into the engine's ledger"""
    db = SessionLocal()
    try:
        return engine.restore(AccountRepository(db).load_all())
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: TransactionEngine = app.state.engine
    try:
        restored = restore_accounts(engine)
        logging.info("Restored account snapshots", extra={"accounts": restored})
    except SQLAlchemyError as e:
        logging.warning(f"Could not restore account snapshots: {e}")
    yield
    await engine.close()


def create_app(engine: TransactionEngine | None = None) -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Secure Transaction Processing Engine",
        description="Trust-limited, fraud-checked payment submission across providers",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine or TransactionEngine.from_settings(settings)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(sessions.router, prefix="/v1", tags=["sessions"])
    app.include_router(transactions.router, prefix="/v1", tags=["transactions"])
    app.include_router(accounts.router, prefix="/v1", tags=["accounts"])

    return app


app = create_app()
