"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from budget.db.engine import get_engine
from budget.api.routes import revolut as revolut_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="Budget API",
        description="Household budgeting backend with Revolut Open Banking sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(revolut_routes.router, prefix="/revolut", tags=["revolut"])

    return app


# Module-level app instance for uvicorn
app = create_app()
