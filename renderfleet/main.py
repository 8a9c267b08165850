import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from renderfleet.api import export
from renderfleet.api.websocket import ExportProgressNotifier, WebSocketManager
from renderfleet.config import get_settings
from renderfleet.exceptions import ExportError
from renderfleet.export.coordinator import ExportCoordinator

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    coordinator = ExportCoordinator(settings=settings)
    manager = WebSocketManager()
    notifier = ExportProgressNotifier(manager)
    notifier.start(coordinator.progress)
    app.state.coordinator = coordinator
    app.state.websocket_manager = manager
    app.state.progress_notifier = notifier
    yield
    # Shutdown
    await coordinator.shutdown()
    await notifier.stop()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExportError)
async def export_exception_handler(request: Request, exc: ExportError) -> JSONResponse:
    if exc.kind == "planning":
        status_code = 422
    elif exc.kind in ("conflict", "cancelled"):
        status_code = 409
    else:
        status_code = exc.status_code
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": exc.to_error_info()},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Routers
app.include_router(export.router, prefix="/api", tags=["export"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}


@app.get("/api/version")
async def get_version() -> dict[str, str]:
    """Return the service version info."""
    return {"version": settings.app_version, "git_hash": settings.git_hash}
