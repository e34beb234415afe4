import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..exceptions import (
    ConcurrentModificationError, InvalidTimeRangeError, NoQualifiedResourceError, NotFoundError,
    StoreError,
)
from .deps import get_settings
from .routes import router as api_router

logger = logging.getLogger(__name__)

# Scheduling error -> HTTP status
ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NoQualifiedResourceError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTimeRangeError: status.HTTP_400_BAD_REQUEST,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    StoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(create_tables: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings["log_level"].upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Field Scheduler API",
        description="Appointment suggestions, conflict checks and schedule optimization",
        version="0.1.0",
    )

    if create_tables:
        # Suitable for development; production schemas are managed with migrations
        from ..db.database import engine
        from ..db.models import Base
        Base.metadata.create_all(bind=engine)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
        )

    def register(error_type, status_code):
        async def handler(request: Request, exc: Exception):
            if status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        app.add_exception_handler(error_type, handler)

    for error_type, status_code in ERROR_STATUS_CODES.items():
        register(error_type, status_code)

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
