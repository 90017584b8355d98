"""
Analysis pipeline for CallGuard.
Manages the flow: Claim -> Download -> Compliance Analysis -> Store Result -> Final Status
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks

from .blob_storage import BlobStorageService, utc_now_iso
from .compliance_analyzer import ComplianceAnalyzer
from .config import Settings, settings
from .debug_utils import debug_helper
from .logging_config import PerformanceMonitor, log_function_call
from .models import AnalysisResult, CallLog, FileStatus

logger = logging.getLogger('callguard.pipeline')


class AnalysisInProgressError(Exception):
    """An analysis is already running for this file."""

    def __init__(self, filename: str):
        super().__init__(f"Analysis already in progress for {filename}")
        self.filename = filename


class PipelineStatusTracker:
    """
    Tracks the timing and outcome of each pipeline step per file.
    Kept in memory for the lifetime of the process.
    """

    def __init__(self):
        self.steps: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def start_step(self, filename: str, step_name: str):
        self.steps.setdefault(filename, {})[step_name] = {
            "status": "running",
            "start_time": datetime.now().isoformat(),
            "duration_seconds": None,
        }
        logger.debug(f"Pipeline step started: {filename} -> {step_name}")

    def _finish(self, filename: str, step_name: str, status: str, error: Optional[Exception] = None):
        step = self.steps.get(filename, {}).get(step_name)
        if step is None:
            return
        started = datetime.fromisoformat(step["start_time"])
        step["status"] = status
        step["duration_seconds"] = (datetime.now() - started).total_seconds()
        if error is not None:
            step["error"] = f"{type(error).__name__}: {error}"

    def complete_step(self, filename: str, step_name: str):
        self._finish(filename, step_name, "completed")
        logger.debug(f"Pipeline step completed: {filename} -> {step_name}")

    def fail_step(self, filename: str, step_name: str, error: Exception):
        self._finish(filename, step_name, "failed", error)
        logger.error(f"Pipeline step failed: {filename} -> {step_name}: {error}")

    def get_pipeline_status(self, filename: str) -> Dict[str, Any]:
        return dict(self.steps.get(filename, {}))


class AnalysisPipeline:
    """
    Runs compliance analysis for stored call logs.

    ``trigger`` claims a file record (one active analysis per filename) and
    then either runs the analysis inline or hands it to the request's
    background tasks, depending on ``analysis_trigger_mode``.
    """

    def __init__(self, storage: BlobStorageService, analyzer: ComplianceAnalyzer, config: Settings = settings):
        self.storage = storage
        self.analyzer = analyzer
        self.config = config
        self.status_tracker = PipelineStatusTracker()

    @log_function_call
    async def trigger(self, filename: str, background_tasks: Optional[BackgroundTasks] = None) -> Dict[str, Any]:
        """
        Start analysis of a stored call log.

        Raises:
            BlobNotFoundError: the file does not exist
            AnalysisInProgressError: another analysis holds the record
        """
        claimed = await self.storage.claim_for_processing(filename, self.config.processing_stale_after_seconds)
        if not claimed:
            raise AnalysisInProgressError(filename)

        if self.config.analysis_trigger_mode == "await" or background_tasks is None:
            success = await self.run_analysis(filename)
            status = FileStatus.ANALYZED if success else FileStatus.ERROR
            return {
                "success": success,
                "message": f"Analysis for {filename} {'completed' if success else 'failed'}.",
                "status": status.value,
            }

        background_tasks.add_task(self.run_analysis, filename)
        logger.info(f"Analysis queued for {filename}")
        return {
            "success": True,
            "message": f"Analysis for {filename} has been queued.",
            "status": FileStatus.PROCESSING.value,
        }

    async def run_analysis(self, filename: str) -> bool:
        """
        Analyse a claimed file and record the outcome on its file record.

        Expects the record to be in ``processing``. Never raises: failures
        are stored as ``status=error`` with the error message.
        """
        logger.info(f"Starting analysis pipeline for {filename}")
        try:
            with PerformanceMonitor(f"analysis pipeline for {filename}"):
                call_log = await self._step_download(filename)
                result = await self._step_analysis(filename, call_log)
                await self._step_store(filename, result)
            logger.info(f"Pipeline completed for {filename}: risk {result.risk_score}")
            return True
        except Exception as e:
            await self._handle_pipeline_error(filename, e)
            return False

    async def _step_download(self, filename: str) -> CallLog:
        self.status_tracker.start_step(filename, "download")
        try:
            content = await self.storage.download_file(filename)
            call_log = CallLog.model_validate(json.loads(content))
            if not call_log.transcript:
                raise ValueError(f"Call log {filename} has no transcript to analyze")
        except Exception as e:
            self.status_tracker.fail_step(filename, "download", e)
            raise
        self.status_tracker.complete_step(filename, "download")
        return call_log

    async def _step_analysis(self, filename: str, call_log: CallLog) -> AnalysisResult:
        self.status_tracker.start_step(filename, "analysis")
        try:
            result = await self.analyzer.get_compliance_analysis(
                call_log.transcript, max_retries=self.config.analysis_max_retries
            )
        except Exception as e:
            self.status_tracker.fail_step(filename, "analysis", e)
            raise
        self.status_tracker.complete_step(filename, "analysis")
        return result

    async def _step_store(self, filename: str, result: AnalysisResult):
        self.status_tracker.start_step(filename, "store")
        try:
            await self.storage.upload_analysis_result(filename, result)
            await self.storage.update_metadata(filename, {
                "status": FileStatus.ANALYZED,
                "risk_score": result.risk_score,
                "processing_completed_at": utc_now_iso(),
                "error_message": None,
            })
        except Exception as e:
            self.status_tracker.fail_step(filename, "store", e)
            raise
        self.status_tracker.complete_step(filename, "store")

    async def _handle_pipeline_error(self, filename: str, error: Exception):
        logger.error(f"Pipeline error for {filename}: {error}")
        debug_helper.capture_exception(
            "analysis_pipeline",
            error,
            {"filename": filename, "steps": self.status_tracker.get_pipeline_status(filename)},
        )
        try:
            await self.storage.update_metadata(filename, {
                "status": FileStatus.ERROR,
                "error_message": str(error) or type(error).__name__,
                "processing_completed_at": utc_now_iso(),
            })
        except Exception:
            logger.exception(f"Failed to record error status for {filename}")
