"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database.connection import DatabaseConnection
from database.repositories.bookmark_repo import BookmarkRepository
from database.repositories.job_repo import JobRepository
from database.repositories.nav_repo import NavRepository
from database.repositories.scheduler_repo import SchedulerRepository
from fetcher.amfi_client import AmfiClient
from orchestrator.download_service import DownloadOrchestrator
from scheduler.service import SchedulerService
from scheduler.workflow_client import WorkflowClient
from api.routes import downloads_router, scheduler_router
from shared.config import settings
from shared.errors import ConflictError, NavEngineError, NotFoundError, ValidationError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    db = await DatabaseConnection.init_mongo()

    app.state.orchestrator = DownloadOrchestrator(
        job_repo=JobRepository(db),
        nav_repo=NavRepository(db),
        bookmark_repo=BookmarkRepository(db),
        fetcher=AmfiClient()
    )
    app.state.scheduler_service = SchedulerService(SchedulerRepository(db), WorkflowClient())
    await app.state.scheduler_service.initialize_all()
    logger.info("NAV download engine started")

    yield

    # Shutdown
    app.state.scheduler_service.shutdown_all()
    await app.state.orchestrator.shutdown()
    await DatabaseConnection.close_connections()
    logger.info("NAV download engine stopped")


# Create FastAPI app
app = FastAPI(
    title="NAV Download Engine",
    description="Download orchestration and scheduling for mutual fund NAV data",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS_CODES = {
    ValidationError: 422,
    ConflictError: 409,
    NotFoundError: 404,
}


# Exception handlers
@app.exception_handler(NavEngineError)
async def domain_exception_handler(request: Request, exc: NavEngineError):
    """Map domain errors to HTTP status codes."""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"error": exc.message, "code": exc.code})

    logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": exc.message}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )


# Include routers
app.include_router(downloads_router)
app.include_router(scheduler_router)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "NAV Download Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug
    )
