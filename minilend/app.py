import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from minilend.application import DisbursementService, configure_disbursement_service
from minilend.core.config import QueueSettings
from minilend.core.logging import configure_logging
from minilend.infrastructure import InMemoryDisbursementRepository, MongoDisbursementRepository
from minilend.routes import disbursement

logger = logging.getLogger(__name__)


def _build_service(settings: QueueSettings) -> DisbursementService:
    if settings.mongodb_uri:
        repository = MongoDisbursementRepository.from_uri(settings.mongodb_uri, settings.mongodb_db)
        repository.ensure_indexes()
        logger.info("Using MongoDB job store (database %s)", settings.mongodb_db)
        return DisbursementService(repository, settings)
    logger.warning("MONGODB_URI not set; using the in-memory job store")
    return DisbursementService(InMemoryDisbursementRepository(), settings)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(content, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()))
            message = f"{location}: {errors[0].get('msg')}"
        return JSONResponse({"error": message}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


def create_app(settings: QueueSettings | None = None, service: DisbursementService | None = None) -> FastAPI:
    settings = settings or QueueSettings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="Minilend Disbursement API", version="0.1.0")

    configure_disbursement_service(service or _build_service(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    app.include_router(disbursement.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Minilend Disbursement API",
                "docs": "/docs",
                "health": "/api/disbursement/health",
            }
        )

    return app


app = create_app()
