import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bundlebox.config import Settings
from bundlebox.database import make_engine, make_session_factory
from bundlebox.errors import BundleBoxError, ValidationError
from bundlebox.routers.archives import router as archives_router
from bundlebox.services.blob_store import make_blob_store
from bundlebox.services.encryptor import ArchiveCipher
from bundlebox.services.scanner import ClamdScanner
from bundlebox.services.token_cache import make_token_cache

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    session_factory=None,
    blob_store=None,
    token_cache=None,
    scanner=None,
) -> FastAPI:
    """Build the API with explicit collaborators; anything omitted comes from settings.

    Run with ``uvicorn bundlebox.main:create_app --factory``.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    if session_factory is None:
        session_factory = make_session_factory(make_engine(settings.database_url))

    app = FastAPI(title="bundle_box")
    app.state.settings = settings
    app.state.session_factory = session_factory
    if blob_store is None:
        blob_store = make_blob_store(settings, session_factory)
    if token_cache is None:
        token_cache = make_token_cache(settings)
    if scanner is None:
        scanner = ClamdScanner(settings.clamav_host, settings.clamav_port, settings.clamav_timeout)
    app.state.blob_store = blob_store
    app.state.token_cache = token_cache
    app.state.scanner = scanner
    app.state.cipher = ArchiveCipher(settings.master_key)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(archives_router)

    @app.exception_handler(BundleBoxError)
    async def bundle_box_error(request: Request, exc: BundleBoxError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.kind)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0]["msg"] if errors else None
        error = ValidationError(message)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Unexpected server error"})

    @app.get("/")
    def read_root():
        return {"service": "bundle_box", "status": "ok"}

    return app
