"""Warden - authentication and role-based access control API."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warden.config import get_settings
from warden.errors import ServiceError, UnauthorizedError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: create tables and seed baseline roles and permissions
    from warden.database import Base, engine, get_db_context
    from warden.services.rbac_loader import load_rbac_config
    from warden.services.sessions import purge_expired_sessions

    # Import all models so they're registered with Base
    from warden import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    with get_db_context() as db:
        load_rbac_config(db)
        purge_expired_sessions(db)
    logger.info("%s started", settings.app_name)

    yield


app = FastAPI(
    title=settings.app_name,
    description="Authentication, session management and role-based access control",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Translate service-layer errors into HTTP responses."""
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    if exc.retryable:
        headers = {"Retry-After": "1"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.error_code},
        headers=headers,
    )


app.add_exception_handler(ServiceError, service_error_handler)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from warden.api import admin, auth  # noqa: E402

app.include_router(auth.router, prefix="/api")
app.include_router(admin.router, prefix="/api")
