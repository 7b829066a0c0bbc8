import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from libtrack.api import (
    administrators,
    books,
    chatbot,
    events,
    faqs,
    fines,
    health,
    kiosk,
    penalties,
    research_papers,
    reservations,
    rules,
    shelves,
)
from libtrack.core.config import settings
from libtrack.core.logging import setup_logging
from libtrack.db.connection import (
    create_db_engines,
    create_service_tables,
    dispose_engines,
    validate_schema_definitions,
)
from libtrack.repositories.base import DuplicateRecordError, RecordNotFound, RepositoryError
from libtrack.schemas.common import ApiResponse
from libtrack.services.books import COVER_SUBDIR
from libtrack.services.errors import ServiceError
from libtrack.services.returns import RECEIPT_SUBDIR
from libtrack.services.scheduler import penalty_scheduler

# --- Setup logging FIRST --- #
setup_logging()
logger = logging.getLogger(__name__)
logger.info("Logging configured.")
# ------------------------ #


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Lifespan: Starting up LibTrack Admin API")
    logger.info("Lifespan: Initializing async database connections")
    await create_db_engines()
    await create_service_tables()

    if settings.VALIDATE_SCHEMA_ON_STARTUP:
        logger.info("Lifespan: Validating database schema definitions")
        await validate_schema_definitions()

    if settings.SCHEDULER_ENABLED:
        penalty_scheduler.start()
    else:
        logger.info("Lifespan: Penalty scheduler disabled by configuration.")

    logger.info("Lifespan: Application startup tasks complete.")
    yield

    logger.info("Lifespan: Shutting down LibTrack Admin API")
    await penalty_scheduler.stop()
    await dispose_engines()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="LibTrack Admin API - penalties, catalog management, kiosk returns and the library assistant",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# --- Envelope error handlers --- #
def _error_response(status_code: int, message: str, error: Optional[str] = None, headers=None, **extras: Any) -> JSONResponse:
    body = ApiResponse(success=False, message=message, error=error or message, **extras)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.model_dump(exclude_none=True)),
        headers=headers,
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    extras = dict(exc.extras)
    error = extras.pop("error", None)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({error})")
    return _error_response(exc.status_code, exc.message, error, **extras)


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound):
    return _error_response(404, str(exc) or "Record not found")


@app.exception_handler(DuplicateRecordError)
async def duplicate_handler(request: Request, exc: DuplicateRecordError):
    return _error_response(409, "Record already exists", str(exc))


@app.exception_handler(RepositoryError)
async def repository_error_handler(request: Request, exc: RepositoryError):
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return _error_response(500, "Database error", str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(exc.status_code, detail, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return _error_response(400, "Validation error", "; ".join(problems))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error_response(500, "Internal server error", str(exc))
# --- End error handlers --- #


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Uploaded covers and receipts, served under the same paths stored in the database
for subdir in (COVER_SUBDIR, RECEIPT_SUBDIR):
    app.mount(
        f"/{subdir}",
        StaticFiles(directory=os.path.join(settings.UPLOAD_DIR, subdir), check_dir=False),
        name=subdir,
    )

# Include routers
app.include_router(penalties.router, prefix=settings.API_PREFIX, tags=["penalties"])
app.include_router(fines.router, prefix=settings.API_PREFIX, tags=["fines"])
app.include_router(books.router, prefix=settings.API_PREFIX, tags=["books"])
app.include_router(research_papers.router, prefix=settings.API_PREFIX, tags=["research-papers"])
app.include_router(reservations.router, prefix=settings.API_PREFIX, tags=["reservations"])
app.include_router(shelves.router, prefix=settings.API_PREFIX, tags=["shelves"])
app.include_router(administrators.router, prefix=settings.API_PREFIX, tags=["administrators"])
app.include_router(rules.router, prefix=settings.API_PREFIX, tags=["rules"])
app.include_router(faqs.router, prefix=settings.API_PREFIX, tags=["faqs"])
app.include_router(kiosk.router, prefix=settings.API_PREFIX, tags=["kiosk"])
app.include_router(chatbot.router, prefix=settings.API_PREFIX, tags=["chatbot"])
app.include_router(events.router, prefix=settings.API_PREFIX, tags=["events"])
app.include_router(health.router, prefix=settings.API_PREFIX, tags=["health"])

logger.info("FastAPI app created and configured.")

if __name__ == "__main__":
    logger.info(f"Starting Uvicorn server. Host={settings.HOST}, Port={settings.PORT}, Reload={settings.DEBUG}")
    uvicorn.run(
        "libtrack.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
