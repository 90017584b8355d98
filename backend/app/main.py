"""
Main FastAPI application for CallGuard.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import admin, analysis, files
from .blob_storage import BlobStorageService
from .compliance_analyzer import ComplianceAnalyzer
from .config import Settings, is_llm_configured, is_storage_configured, settings as default_settings
from .logging_config import setup_logging
from .response_evaluator import ResponseEvaluator

logger = logging.getLogger("callguard.api")
startup_logger = logging.getLogger("callguard.startup")


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[BlobStorageService] = None,
    analyzer: Optional[ComplianceAnalyzer] = None,
    evaluator: Optional[ResponseEvaluator] = None,
) -> FastAPI:
    """
    Build the application.

    Clients passed in are used as-is and never closed by the app. Missing
    clients are built from settings on startup when their credentials are
    configured; endpoints that need an unconfigured client answer 503.
    """
    config = settings or default_settings

    app = FastAPI(
        title=config.app_name,
        description=config.project_name,
        debug=config.debug,
    )
    app.state.settings = config
    app.state.storage = storage
    app.state.analyzer = analyzer
    app.state.evaluator = evaluator
    app.state.pipeline = None
    app.state.owned_clients = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.backend_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(files.router)
    app.include_router(analysis.router)
    app.include_router(admin.router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})

    @app.on_event("startup")
    async def startup_event():
        """Configure logging and build the storage and LLM clients."""
        start_ts = time.perf_counter()
        setup_logging(config.log_level, config.log_file)
        startup_logger.info("[STARTUP] status=begin")

        if app.state.storage is None and is_storage_configured(config):
            app.state.storage = BlobStorageService.from_settings(config)
            app.state.owned_clients.append(app.state.storage)
        if app.state.storage is None:
            startup_logger.warning("AZURE_STORAGE_CONNECTION_STRING not set; storage endpoints will answer 503")
        elif config.initialize_containers_on_startup:
            try:
                await app.state.storage.initialize_containers()
            except Exception as e:
                startup_logger.error(f"Container initialization failed: {e}")

        if is_llm_configured(config):
            if app.state.analyzer is None:
                app.state.analyzer = ComplianceAnalyzer.from_settings(config)
                app.state.owned_clients.append(app.state.analyzer)
            if app.state.evaluator is None:
                app.state.evaluator = ResponseEvaluator.from_settings(config)
                app.state.owned_clients.append(app.state.evaluator)
        if app.state.analyzer is None:
            startup_logger.warning("OPENAI_API_KEY not set; analysis endpoints will answer 503")

        startup_logger.info(
            f"[STARTUP] status=complete elapsed={time.perf_counter() - start_ts:.3f}s "
            f"trigger_mode={config.analysis_trigger_mode} auto_process={config.auto_process_uploads}"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the clients this app created."""
        for client in app.state.owned_clients:
            try:
                await client.close()
            except Exception as e:
                startup_logger.warning(f"Error closing {type(client).__name__}: {e}")
        app.state.owned_clients = []

    @app.get("/")
    async def root():
        """Root endpoint - welcome message."""
        return {
            "message": "Welcome to CallGuard - FDCPA Compliance Monitoring",
            "status": "running",
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "storage": "configured" if app.state.storage is not None else "not_configured",
            "analysis": "configured" if app.state.analyzer is not None else "not_configured",
            "features": {
                "auto_process_uploads": config.auto_process_uploads,
                "analysis_trigger_mode": config.analysis_trigger_mode,
            },
            "timestamp": datetime.now().isoformat(),
        }

    return app


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


app = create_app()
