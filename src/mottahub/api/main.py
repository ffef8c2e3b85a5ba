"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from mottahub.api.routes import sync as sync_routes, webhooks
from mottahub.config import get_settings
from mottahub.db.engine import create_store_engine, create_tables


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        engine: Store engine; defaults to one built from DATABASE_URL.
            Routes read it from app.state.engine.
    """
    if engine is None:
        engine = create_store_engine(get_settings().database_url, create=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        create_tables(app.state.engine)
        yield

    app = FastAPI(
        title="Motta Hub Sync API",
        description="Karbon → Motta Hub synchronization",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    return app


# Module-level app instance for uvicorn
app = create_app()
