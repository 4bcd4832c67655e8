"""
Vocilia Verification - FastAPI Application

Main entry point for the weekly verification and fraud scoring backend.

Architecture:
- Customer report → Transaction (with ±2 min / ±2 SEK tolerance window)
- Weekly cycle → one VerificationDatabase per active store
- Business decisions → Tolerance Matcher → Fraud Scorer → verified / fake
- Deadline sweep → expired databases forfeit their transactions
- Completed cycle → Invoice (rewards 2-15% + 20% admin fee)
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .database import build_engine, build_session_factory, init_db
from .routers import (
    cycles_router, databases_router, transactions_router, fraud_router, scheduler_router,
)
from .services.fraud import build_providers
from .services.verification import CycleLockRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    context_provider=None,
    behavioral_provider=None,
    invoice_sink: Optional[Callable[[Any], Any]] = None,
) -> FastAPI:
    """
    Build the application.

    Settings are loaded from the environment at startup unless given.
    Engine, session factory, score providers and cycle locks live on
    app.state for the lifetime of the process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build process-wide collaborators on startup."""
        active = settings or load_settings()
        logging.basicConfig(
            level=active.log_level.upper(),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        engine = build_engine(active.database_url)
        init_db(engine)

        context, behavioral = build_providers(active)
        app.state.settings = active
        app.state.engine = engine
        app.state.session_factory = build_session_factory(engine)
        app.state.context_provider = context_provider or context
        app.state.behavioral_provider = behavioral_provider or behavioral
        app.state.cycle_locks = CycleLockRegistry()
        app.state.invoice_sink = invoice_sink
        logger.info("Vocilia verification service started")

        yield

        engine.dispose()

    app = FastAPI(
        lifespan=lifespan,
        title="Vocilia Verification",
        description="""
        Vocilia Verification - Weekly Verification Cycle and Fraud Scoring

        ## Pipeline
        1. **Cycle**: open a weekly cycle, prepare one verification database per store
        2. **Reconciliation**: businesses download, reconcile against POS data and submit
        3. **Fraud Scoring**: context 40%, behavioral 30%, keywords 20%, transaction 10%
        4. **Deadlines**: databases not submitted in 5 business days expire and forfeit
        5. **Invoicing**: verified transactions earn 2-15% rewards plus a 20% admin fee

        ## Key Principles
        - State transitions are forward-only and logged to the cycle event trail
        - Failed AI or behavioral calls degrade scoring and route to manual review
        - One store failing never blocks the rest of the cycle
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(cycles_router)
    app.include_router(databases_router)
    app.include_router(transactions_router)
    app.include_router(fraud_router)
    app.include_router(scheduler_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "Vocilia Verification",
            "version": "1.0.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
