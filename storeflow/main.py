"""
StoreFlow - FastAPI Application Entry Point.

Event-triggered workflow automation for store operations.
"""

from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging

from storeflow.config import Settings, settings as default_settings
from storeflow.api.routes import events, executions, templates, workflows
from storeflow.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


async def scheduler_loop(runtime: Runtime, interval: float) -> None:
    """Fire due cron triggers and resume due DELAYs every ``interval`` seconds."""
    while True:
        try:
            await runtime.tick()
        except Exception:
            logger.exception("Scheduler tick failed")
        await asyncio.sleep(interval)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to the environment)
        runtime: Pre-built runtime, e.g. with stub collaborators in tests
    """
    settings = settings or default_settings
    runtime = runtime or build_runtime(settings)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        await runtime.toggle.initialize()
        await runtime.engine.recover()

        scheduler = None
        if settings.SCHEDULER_ENABLED:
            scheduler = asyncio.create_task(scheduler_loop(runtime, settings.SCHEDULER_INTERVAL))

        yield

        # Shutdown
        logger.info("Shutting down...")
        if scheduler is not None:
            scheduler.cancel()
            try:
                await scheduler
            except asyncio.CancelledError:
                pass
        await runtime.bus.drain()

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
## Workflow Automation API

Event-triggered workflows for store operations: order confirmations,
cart recovery, stock alerts, subscription lifecycle.

### Features
- **Nodes**: Database, HTTP, action, notification and transform steps
- **Control flow**: Conditions, loops, delays and `onError` edges
- **Triggers**: Domain events (with wildcards), cron schedules, manual runs
- **Durability**: Delayed executions survive restarts

### Quick Start
1. Install a template: `POST /templates/order-confirmation/install`
2. Enable it: `POST /workflows/{id}/enable`
3. Publish an event: `POST /events`
4. Inspect the run: `GET /executions/{id}`
        """,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(workflows.router)
    app.include_router(executions.router)
    app.include_router(events.router)
    app.include_router(templates.router)

    # ============================================================
    # Root Endpoints
    # ============================================================

    @app.get("/", tags=["Root"])
    async def root():
        """API root - returns basic info and links."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "description": "Event-triggered workflow automation for store operations",
            "docs": "/docs",
            "redoc": "/redoc",
            "endpoints": {
                "workflows": "/workflows",
                "executions": "/executions",
                "events": "/events",
                "templates": "/templates",
            },
        }

    @app.get("/health", tags=["Root"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "workflows_count": len(runtime.workflows),
            "executions_count": len(runtime.executions),
            "subscriptions_count": len(runtime.bus.subscriptions()),
            "schedules_count": len(runtime.schedules),
            "suspended_count": len(runtime.checkpoints),
        }

    # ============================================================
    # Error Handlers
    # ============================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
            },
        )

    return app


app = create_app()
