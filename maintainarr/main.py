"""FastAPI application factory (``uvicorn maintainarr.main:create_app --factory``)."""
import logging
import os
import traceback
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from maintainarr.api.routes import router
from maintainarr.config import Config, init_config, set_config
from maintainarr.core.errors import CatalogError, ConflictError, MaintenanceError, NotFoundError, RuleValidationError
from maintainarr.db.database import init_db
from maintainarr.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

# Erreurs métier -> statut HTTP
ERROR_STATUS: Dict[Type[MaintenanceError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    RuleValidationError: 422,
    CatalogError: 502,
}


def config_candidates() -> List[str]:
    """CONFIG_PATH first, then the Docker mount, then ./config for local runs."""
    return [
        os.getenv("CONFIG_PATH", "/config/config.yaml"),
        "/config/config.yaml",
        "./config/config.yaml",
        os.path.join(os.path.dirname(__file__), "..", "config", "config.yaml"),
    ]


def find_config_path() -> str:
    candidates = config_candidates()
    for path in candidates:
        if os.path.exists(path):
            return path

    tried = "\n".join(f"  - {p}" for p in candidates)
    message = (
        "Configuration file not found. Tried:\n"
        f"{tried}\n"
        "Copy config.example.yaml to config/config.yaml (or mount it at /config) "
        "or point CONFIG_PATH at your file."
    )
    logger.error(message)
    raise FileNotFoundError(message)


def _error_body(exc: MaintenanceError) -> dict:
    body = {"detail": str(exc)}
    if isinstance(exc, RuleValidationError):
        body["errors"] = exc.errors
    return body


def create_app(
    config: Optional[Config] = None,
    database_url: Optional[str] = None,
    start_background_scheduler: bool = True,
) -> FastAPI:
    """Construit l'application (config, base, routes, scheduler)."""
    if config is None:
        config_path = find_config_path()
        logger.info(f"Loading configuration from: {config_path}")
        config = init_config(config_path)
    else:
        set_config(config)
    logging.getLogger().setLevel(config.app.log_level)

    data_dir = os.getenv("DATA_DIR", config.app.data_dir)
    try:
        init_db(data_dir, database_url=database_url)
    except Exception:
        logger.error(f"Database setup failed (data directory: {data_dir}); is the volume mounted and writable?")
        raise

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background_scheduler:
            start_scheduler()
        yield
        stop_scheduler()

    app = FastAPI(title="Maintainarr", version="1.0.0", lifespan=lifespan)
    app.include_router(router)

    for error_cls, status_code in ERROR_STATUS.items():
        async def handler(request: Request, exc: MaintenanceError, status_code: int = status_code):
            return JSONResponse(status_code=status_code, content=_error_body(exc))
        app.add_exception_handler(error_cls, handler)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions with detailed logging."""
        logger.exception(f"Unhandled exception in {request.method} {request.url}")
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "type": exc.__class__.__name__,
                "message": f"Internal server error: {str(exc)}",
                "path": str(request.url),
                "method": request.method,
                "traceback": traceback.format_exc(),
            }
        )

    @app.get("/")
    async def root():
        return {"message": "Maintainarr API", "docs": "/docs"}

    return app
