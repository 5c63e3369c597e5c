from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from skillmint.apps.api.errors import (
    database_unavailable_handler,
    http_exception_handler,
    integrity_exception_handler,
    skillmint_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from skillmint.apps.api.response import API_VERSION
from skillmint.apps.api.routes.admin import router as admin_router
from skillmint.apps.api.routes.health import router as health_router
from skillmint.apps.api.routes.installations import router as installations_router
from skillmint.apps.api.routes.mints import router as mints_router
from skillmint.apps.api.routes.packages import router as packages_router
from skillmint.apps.api.routes.security import router as security_router
from skillmint.core.config import get_settings
from skillmint.core.errors import SkillMintError
from skillmint.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(SkillMintError, skillmint_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_exception_handler)
    app.add_exception_handler(OperationalError, database_unavailable_handler)
    app.add_exception_handler(InterfaceError, database_unavailable_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(packages_router, prefix=f"/{API_VERSION}")
    app.include_router(mints_router, prefix=f"/{API_VERSION}")
    app.include_router(installations_router, prefix=f"/{API_VERSION}")
    # Knowledge vault and invocation pipeline.
    app.include_router(security_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation except health.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=get_settings().app_name, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
