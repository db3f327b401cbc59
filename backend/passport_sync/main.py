"""FastAPI entry point: operator surface plus the sync orchestrator lifecycle."""

from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from passport_sync.api import health, records, sync
from passport_sync.config import settings
from passport_sync.database import close_db, init_db
from passport_sync.logging import configure_logging, request_id_var
from passport_sync.services.sync.service import get_sync_service

configure_logging()
logger = logging.getLogger("passport_sync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    service = get_sync_service()
    try:
        await service.start()
    except Exception:
        # The API stays up so operators can inspect status and trigger runs
        logger.exception("Sync orchestrators failed to start")
    logger.info("%s ready (%d orchestrator(s))", settings.app_name, len(service.orchestrators))

    yield

    try:
        await service.stop()
    except Exception:
        logger.exception("Error stopping sync orchestrators")
    await close_db()
    logger.info("%s stopped", settings.app_name)


def _error_response(status_code: int, message, error_type: str, **extra) -> JSONResponse:
    body = {
        "message": message,
        "status_code": status_code,
        "type": error_type,
        "request_id": request_id_var.get(),
        **extra,
    }
    return JSONResponse(status_code=status_code, content={"error": body})


async def _on_http_error(_request: Request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail, "http_error")


async def _on_validation_error(_request: Request, exc: RequestValidationError):
    return _error_response(422, "Validation error", "validation_error", details=exc.errors())


async def _on_unhandled_error(_request: Request, _exc: Exception):
    logger.exception("Unhandled error")
    return _error_response(500, "Internal server error", "server_error")


async def _bind_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    request_id_var.set(request_id)
    response = await call_next(request)
    response.headers.setdefault("X-Request-Id", request_id)
    return response


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Replicates OpenMRS observations from hospital databases into the "
            "patient passport and gates edits of synced records by their "
            "post-sync window."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    application.middleware("http")(_bind_request_id)

    application.include_router(health.router)
    for module in (sync, records):
        application.include_router(module.router, prefix=settings.api_prefix)

    application.add_exception_handler(HTTPException, _on_http_error)
    application.add_exception_handler(RequestValidationError, _on_validation_error)
    application.add_exception_handler(Exception, _on_unhandled_error)
    return application


app = create_app()
