"""
FastAPI dependencies exposing the per-process clients held on app.state.
"""
from fastapi import HTTPException, Request

from .blob_storage import BlobStorageService
from .compliance_analyzer import ComplianceAnalyzer
from .config import Settings
from .pipeline_orchestrator import AnalysisPipeline
from .response_evaluator import ResponseEvaluator
from .upload import CallLogUploadHandler


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> BlobStorageService:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        raise HTTPException(status_code=503, detail="Storage service is not configured")
    return storage


def get_analyzer(request: Request) -> ComplianceAnalyzer:
    analyzer = getattr(request.app.state, "analyzer", None)
    if analyzer is None:
        raise HTTPException(status_code=503, detail="Analysis service is not configured")
    return analyzer


def get_evaluator(request: Request) -> ResponseEvaluator:
    evaluator = getattr(request.app.state, "evaluator", None)
    if evaluator is None:
        raise HTTPException(status_code=503, detail="Evaluation service is not configured")
    return evaluator


def get_pipeline(request: Request) -> AnalysisPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        # Pipeline needs both clients; report whichever is missing
        get_storage(request)
        get_analyzer(request)
        pipeline = AnalysisPipeline(request.app.state.storage, request.app.state.analyzer, request.app.state.settings)
        request.app.state.pipeline = pipeline
    return pipeline


def get_upload_handler(request: Request) -> CallLogUploadHandler:
    return CallLogUploadHandler(get_storage(request), request.app.state.settings)
