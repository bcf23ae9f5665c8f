"""File Swap FastAPI Application"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from fileswap.config import settings
from fileswap.core.errors import FileSwapError, InvalidRequest
from fileswap.core.logging import setup_logging
from fileswap.middleware.security import SecurityHeadersMiddleware
from fileswap.api.v1.router import api_router
from fileswap.services.file_swap import FileSwapHandler

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info(f"Starting {settings.APP_NAME}...")

    yield

    # Outstanding tokens die with the handler secret
    logger.info("Application shut down successfully")


async def invalid_request_handler(request: Request, exc: InvalidRequest):
    """Invalid, expired or consumed download tokens"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": InvalidRequest.default_message,
            "message": exc.public_message,
        },
    )


async def file_swap_error_handler(request: Request, exc: FileSwapError):
    """Storage, signing and internal download errors"""
    logger.error(f"File swap error: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": "Internal server error",
            "message": exc.public_message,
        },
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred",
        },
    )


def create_app(file_swap: Optional[FileSwapHandler] = None) -> FastAPI:
    """
    Create the application.

    The app owns exactly one FileSwapHandler: tokens it issues can only be
    redeemed through this app instance.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="One-time encrypted file downloads",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.file_swap = file_swap or FileSwapHandler()

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.add_exception_handler(InvalidRequest, invalid_request_handler)
    app.add_exception_handler(FileSwapError, file_swap_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "healthy",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fileswap.main:app",
        host=settings.PY_HOST,
        port=settings.PY_PORT,
        reload=settings.DEBUG,
        log_config=None,  # Use our custom logging
    )
