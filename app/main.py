"""
E-Signing Service - Main FastAPI Application
Backend for sending PDFs out for electronic signature.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from app.config import get_cors_origins, get_settings
from app.exceptions import (
    AppException,
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    integrity_error_handler,
    placement_error_handler,
    signing_error_handler,
    validation_exception_handler,
)
from app.pdf.embed import IntegrityViolationError, SigningError
from app.pdf.geometry import PlacementValidationError
from app.routers import documents, health, signing
from app.utils.logging import RequestIdMiddleware, get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(f"Starting E-Signing Service v{health.VERSION} ({settings.environment})")
    yield
    logger.info("Shutting down E-Signing Service")


app = FastAPI(
    title="E-Signing Service",
    description="""Backend service for electronic document signing.

## Authentication

### Owners
Use `Authorization: Bearer <google_id_token>` with a valid Google ID token.

### Recipients
Recipient endpoints under `/v1/sign/{token}` take no header: the sign-link
token from the invitation email is the credential.
""",
    version=health.VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "documents", "description": "Document owner operations"},
        {"name": "signing", "description": "Document signing operations (public, token-based)"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(PlacementValidationError, placement_error_handler)
app.add_exception_handler(IntegrityViolationError, integrity_error_handler)
app.add_exception_handler(SigningError, signing_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(documents.router)
app.include_router(signing.router)


# Custom OpenAPI schema with security schemes
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Google ID Token for document owners",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8080, reload=get_settings().debug)
