"""
wikisign - Page Revision Signatures

Main application entry point.

A signature says: this reviewer approved exactly this content.
Change the content and the signature stops counting.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import router
from .core import SigningError
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
)
from .services import Services, build_services

logger = get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built service bundle (tests, embedding hosts). When
            omitted, services are built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            setup_logging()
            app.state.services = build_services()

        logger.info(
            "Application startup complete",
            store_type=type(app.state.services.store).__name__,
            default_role=app.state.services.config.default_role,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="wikisign",
        description="""
## Page Revision Signatures

Attach an approval signature to one exact revision of a wiki page.

### Rules

- **Exact**: a signature binds to the SHA-1 of the signed revision's text
- **Current only**: only a page's latest revision can be signed
- **One at a time**: a page has at most one valid signature
- **Append-only**: signatures are invalidated, never deleted

### Error codes

`notloggedin`, `nosuchpage`, `contentchanged`, `permissiondenied`, `nohash`, `dberror`
        """,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RequestContextMiddleware)
    app.include_router(router)

    @app.exception_handler(SigningError)
    async def signing_error_handler(request: Request, exc: SigningError):
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": {"code": exc.code, "info": str(exc)}},
        )

    @app.get("/health", tags=["System"])
    async def health():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": "wikisign"}

    @app.get("/metrics", tags=["System"])
    async def metrics(request: Request):
        """Counters and sign latency percentiles."""
        return request.app.state.services.metrics.get_summary()

    return app


app = create_app()
