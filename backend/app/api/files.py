"""
Call log upload, file record and processing endpoints.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..analytics import metadata_risk_level
from ..blob_storage import BlobNotFoundError, BlobStorageService, InvalidStatusTransitionError
from ..debug_utils import debug_helper
from ..dependencies import get_pipeline, get_storage, get_upload_handler
from ..models import ContainerType, ProcessRequest, StatusRequest, StoredFile
from ..pipeline_orchestrator import AnalysisInProgressError, AnalysisPipeline
from ..upload import CallLogUploadHandler, FileCollisionError

logger = logging.getLogger('callguard.api')

router = APIRouter(prefix="/api", tags=["files"])


def file_summary(stored: StoredFile) -> Dict[str, Any]:
    """Shape a stored file for the dashboard list."""
    meta = stored.metadata
    summary = {
        "id": stored.name,
        "name": stored.name,
        "originalName": meta.original_filename if meta.original_filename != "unknown" else stored.name,
        "size": stored.size,
        "type": meta.content_type,
        "uploadedAt": meta.uploaded_at or stored.uploaded_at,
        "lastModified": stored.uploaded_at,
        "url": stored.path,
        "status": meta.status.value,
        "callId": meta.call_id,
        "agentName": meta.agent_name,
        "agentId": meta.agent_id,
        "callDuration": meta.call_duration,
        "callTimestamp": meta.call_timestamp,
        "callOutcome": meta.call_outcome,
        "riskScore": meta.risk_score,
        "riskLevel": metadata_risk_level(meta),
        "errorMessage": meta.error_message,
    }
    return {k: v for k, v in summary.items() if v is not None}


def _collision_response(error: FileCollisionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"collision": True, "filename": error.filename})


async def _auto_process(request: Request, filename: str, background_tasks: BackgroundTasks) -> Optional[Dict[str, Any]]:
    """Hand a freshly stored file to the pipeline when auto-processing is on."""
    config = request.app.state.settings
    if not config.auto_process_uploads:
        return None
    if getattr(request.app.state, "analyzer", None) is None:
        logger.warning(f"Analysis service not configured; {filename} left in uploaded state")
        return None
    pipeline = get_pipeline(request)
    try:
        return await pipeline.trigger(filename, background_tasks)
    except AnalysisInProgressError as e:
        logger.info(str(e))
        return None
    except Exception as e:
        # The upload itself succeeded; POST /api/process can retry the trigger
        logger.error(f"Failed to trigger analysis for {filename}: {e}")
        debug_helper.capture_exception("auto_process", e, {"filename": filename})
        return {"success": False, "message": "Failed to queue analysis", "status": "uploaded"}


@router.post("/upload")
async def upload_call_log(
    request: Request,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    handler: CallLogUploadHandler = Depends(get_upload_handler),
):
    """Upload a call log JSON file."""
    try:
        result = await handler.upload_call_log(file)
    except FileCollisionError as e:
        return _collision_response(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during upload: {e}")
        debug_helper.capture_exception("upload_call_log", e, {"filename": file.filename if file else "unknown"})
        raise HTTPException(status_code=500, detail="Internal server error during upload")

    processing = await _auto_process(request, result["file"]["name"], background_tasks)
    if processing is not None:
        result["processing"] = processing
    return result


@router.post("/upload/replace")
async def replace_call_log(
    request: Request,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    handler: CallLogUploadHandler = Depends(get_upload_handler),
):
    """Replace an existing call log, keeping a backup of the original."""
    try:
        result = await handler.replace_call_log(file)
    except FileCollisionError as e:
        return _collision_response(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Replace operation error: {e}")
        debug_helper.capture_exception("replace_call_log", e, {"filename": file.filename if file else "unknown"})
        raise HTTPException(status_code=500, detail="Replace operation failed. Please try again.")

    processing = await _auto_process(request, result["filename"], background_tasks)
    if processing is not None:
        result["processing"] = processing
    return result


@router.get("/files")
async def list_files(storage: BlobStorageService = Depends(get_storage)):
    """List all stored call logs with their file records."""
    try:
        listing = await storage.list_files(ContainerType.RAW)
        return {"success": True, "files": [file_summary(f) for f in listing.files], "hasMore": listing.has_more}
    except Exception as e:
        logger.error(f"Failed to list files: {e}")
        debug_helper.capture_exception("list_files", e)
        raise HTTPException(status_code=500, detail="Failed to list files")


@router.post("/files/status")
async def get_status_updates(body: StatusRequest, storage: BlobStorageService = Depends(get_storage)):
    """Current status of the named files. Unknown names are left out."""
    names = body.names()
    try:
        records = await asyncio.gather(*(storage.get_file_metadata(name) for name in names))
    except Exception as e:
        logger.error(f"Failed to get status updates: {e}")
        debug_helper.capture_exception("status_updates", e, {"files": names})
        raise HTTPException(status_code=500, detail="Failed to get status updates")

    updates = []
    for name, metadata in zip(names, records):
        if metadata is None:
            continue
        update = {"name": name, "status": metadata.status.value}
        if metadata.risk_score is not None:
            update["riskScore"] = metadata.risk_score
        if metadata.error_message:
            update["errorMessage"] = metadata.error_message
        updates.append(update)
    return {"updates": updates}


@router.get("/files/{filename}")
async def get_call_log(filename: str, uploadedAt: Optional[str] = None, storage: BlobStorageService = Depends(get_storage)):
    """Return the raw call log JSON. ``uploadedAt`` is accepted for older clients."""
    try:
        content = await storage.download_file(filename)
        return json.loads(content)
    except BlobNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except Exception as e:
        logger.error(f"Failed to fetch call log {filename}: {e}")
        debug_helper.capture_exception("get_call_log", e, {"filename": filename})
        raise HTTPException(status_code=500, detail="Failed to fetch transcript")


@router.patch("/files/{filename}")
async def update_file_metadata(
    filename: str,
    updates: Dict[str, Any] = Body(...),
    container: ContainerType = ContainerType.RAW,
    storage: BlobStorageService = Depends(get_storage),
):
    """Apply a partial update to a file record."""
    try:
        metadata = await storage.update_metadata(filename, updates, container)
        return {"success": True, "message": "Metadata updated successfully.", "metadata": metadata.to_json_dict()}
    except BlobNotFoundError:
        raise HTTPException(status_code=404, detail="File not found.")
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid metadata: {e.errors(include_url=False)}")
    except Exception as e:
        logger.error(f"Update metadata error for {filename}: {e}")
        debug_helper.capture_exception("update_metadata", e, {"filename": filename, "updates": updates})
        raise HTTPException(status_code=500, detail="Failed to update metadata.")


@router.delete("/files/{filename}")
async def delete_call_log(filename: str, uploadedAt: Optional[str] = None, storage: BlobStorageService = Depends(get_storage)):
    """Delete a call log and its analysis. Deleting a missing file succeeds."""
    try:
        await storage.delete_file(filename, ContainerType.RAW)
        await storage.delete_file(filename, ContainerType.PROCESSED)
        return {"success": True, "message": f"{filename} deleted successfully.", "filename": filename}
    except Exception as e:
        logger.error(f"Failed to delete {filename}: {e}")
        debug_helper.capture_exception("delete_call_log", e, {"filename": filename})
        raise HTTPException(status_code=500, detail="Failed to delete file")


@router.get("/files/{filename}/complete")
async def get_complete_call(filename: str, uploadedAt: Optional[str] = None, storage: BlobStorageService = Depends(get_storage)):
    """Transcript and analysis in one round trip. Either part may be null."""
    raw_result, analysis_result = await asyncio.gather(
        storage.download_file(filename, ContainerType.RAW),
        storage.download_analysis_result(filename),
        return_exceptions=True,
    )

    transcript = None
    if isinstance(raw_result, Exception):
        if not isinstance(raw_result, BlobNotFoundError):
            logger.error(f"Failed to load transcript for {filename}: {raw_result}")
    else:
        try:
            call_log = json.loads(raw_result)
            transcript = call_log.get("transcript", call_log) if isinstance(call_log, dict) else call_log
        except ValueError as e:
            logger.error(f"Failed to parse transcript for {filename}: {e}")

    analysis = None
    if isinstance(analysis_result, Exception):
        logger.error(f"Failed to load analysis for {filename}: {analysis_result}")
    else:
        analysis = analysis_result

    return JSONResponse(
        content={"success": True, "transcript": transcript, "analysis": analysis, "filename": filename},
        headers={"Cache-Control": "public, max-age=300, stale-while-revalidate=600"},
    )


@router.post("/process/{filename}")
async def process_call_log(
    filename: str,
    background_tasks: BackgroundTasks,
    body: Optional[ProcessRequest] = None,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
):
    """Start compliance analysis of a stored call log."""
    try:
        return await pipeline.trigger(filename, background_tasks)
    except BlobNotFoundError:
        raise HTTPException(status_code=404, detail=f"File not found: {filename}")
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to queue analysis for {filename}: {e}")
        debug_helper.capture_exception("process_call_log", e, {"filename": filename})
        raise HTTPException(status_code=500, detail="Failed to queue analysis")
