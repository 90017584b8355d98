"""
Storage administration and version endpoints.
"""
import logging
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ..blob_storage import BlobStorageService, clear_all_files
from ..config import Settings
from ..debug_utils import debug_helper
from ..dependencies import get_settings, get_storage

logger = logging.getLogger('callguard.api')

router = APIRouter(prefix="/api", tags=["admin"])

DEFAULT_VERSION = "0.1.0"


def get_app_version() -> str:
    try:
        return version("callguard")
    except PackageNotFoundError:
        return DEFAULT_VERSION


@router.post("/admin/init-storage")
async def init_storage(
    storage: BlobStorageService = Depends(get_storage),
    config: Settings = Depends(get_settings),
):
    """Create the storage containers. Safe to call repeatedly."""
    try:
        await storage.initialize_containers()
    except Exception as e:
        logger.error(f"Storage initialization failed: {e}")
        debug_helper.capture_exception("init_storage", e)
        raise HTTPException(status_code=500, detail="Storage initialization failed")

    return {
        "success": True,
        "message": "Azure Blob Storage initialized successfully",
        "containers": config.container_names,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/admin/init-storage")
async def check_storage(config: Settings = Depends(get_settings), storage: BlobStorageService = Depends(get_storage)):
    """Check the storage connection."""
    try:
        await storage.initialize_containers()
    except Exception as e:
        logger.error(f"Storage connection check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "error": str(e)})

    return {
        "status": "connected",
        "message": "Azure Blob Storage is connected and containers exist",
        "containers": config.container_names,
    }


@router.delete("/admin/clear-storage")
async def clear_storage(
    config: Settings = Depends(get_settings),
    storage: BlobStorageService = Depends(get_storage),
):
    """Delete every stored call log and analysis. Disabled unless ALLOW_STORAGE_CLEAR is set."""
    if not config.allow_storage_clear:
        raise HTTPException(status_code=403, detail="Storage clearing is disabled")

    try:
        counts = await clear_all_files(storage)
    except Exception as e:
        logger.error(f"Clear storage failed: {e}")
        debug_helper.capture_exception("clear_storage", e)
        raise HTTPException(status_code=500, detail="Failed to clear storage")

    return {
        "success": True,
        "message": f"Storage cleared. Deleted {counts['deleted']} files, {counts['failed']} failures.",
        "deletedCount": counts["deleted"],
        "failedCount": counts["failed"],
    }


@router.get("/version")
async def get_version():
    return {"version": get_app_version(), "name": "callguard"}
