"""FastAPI application factory for the Wardline tenant data API."""

import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.config import settings
from src.exceptions import AppException
from src.modules.tenancy.service import StatementRegistrar, TenancyService, build_tenancy_service

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: list | None = None,
    retryable: bool = False,
    retry_after: int | None = None,
) -> JSONResponse:
    """Build a structured error JSONResponse.

    Retryable server-side failures carry a ``Retry-After`` header. Messages
    and details never include query results.
    """
    headers = None
    if retryable and status_code >= 500:
        headers = {"Retry-After": str(retry_after or settings.retry_after_seconds)}
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "details": details or [],
                "retryable": retryable,
            }
        },
        headers=headers,
    )


def create_app(
    tenancy: TenancyService | None = None,
    registrars: Iterable[StatementRegistrar] = (),
) -> FastAPI:
    """Build and configure the FastAPI application.

    ``tenancy`` lets tests supply a service built on their own engine; by
    default one is built on the configured engine at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle — build tenancy on startup, dispose engine on shutdown."""
        service = tenancy
        if service is None:
            from src.database.engine import engine

            service = build_tenancy_service(engine, registrars=registrars)
        await service.start()
        app.state.tenancy = service
        yield
        await service.close()

    application = FastAPI(
        title="Wardline Tenant Data API",
        description="Schema-per-tenant data access for hospital operations.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # --- Middleware ---

    # Tenant context middleware: selects the tenant token for each request
    from src.modules.tenancy.middleware import TenantContextMiddleware

    application.add_middleware(TenantContextMiddleware)

    # --- Routers ---
    from src.api.v1 import v1_router

    application.include_router(v1_router)

    # --- Exception Handlers ---

    @application.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return _error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
            retryable=exc.retryable,
            retry_after=exc.retry_after,
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {"field": ".".join(str(loc) for loc in err.get("loc", [])), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(
            status_code=422,
            code="VALIDATION_ERROR",
            message="Validation failed",
            details=details,
        )

    @application.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return _error_response(
            status_code=500,
            code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
        )

    # Health check
    @application.get("/health")
    async def health_check() -> dict:
        return {"status": "ok"}

    return application


app = create_app()
