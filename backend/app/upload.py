"""
Call log upload handling for CallGuard.
Validates uploaded JSON call logs and stores them in blob storage with
their initial file record.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, UploadFile

from .blob_storage import BlobAlreadyExistsError, BlobStorageError, BlobStorageService, utc_now_iso
from .call_log_parsing import parse_call_log_metadata, validate_call_log_json
from .config import Settings, settings
from .debug_utils import debug_helper, format_size, validate_file_upload
from .logging_config import PerformanceMonitor, log_function_call
from .models import ContainerType, FileMetadata, FileStatus

logger = logging.getLogger('callguard.upload')

ALLOWED_CALL_LOG_EXTENSIONS = [".json"]
ALLOWED_CALL_LOG_CONTENT_TYPES = ["application/json"]

# Uploads are read in chunks so oversized bodies are rejected early
CHUNK_SIZE = 1024 * 1024


class FileCollisionError(Exception):
    """A file with this name is already stored."""

    def __init__(self, filename: str):
        super().__init__(f"File already exists: {filename}")
        self.filename = filename


class CallLogUploadHandler:
    """
    Handles call log uploads: validation, collision detection and storage.
    All validation happens before the first storage call.
    """

    def __init__(self, storage: BlobStorageService, config: Settings = settings):
        self.storage = storage
        self.config = config

    async def read_upload(self, file: UploadFile) -> bytes:
        """Read the upload body, refusing anything over the size limit."""
        max_size = self.config.max_file_size_bytes
        chunks: List[bytes] = []
        total = 0
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > max_size:
                logger.warning(f"Upload exceeds size limit: {file.filename} (> {format_size(max_size)})")
                raise HTTPException(
                    status_code=400,
                    detail=f"File exceeds maximum allowed size ({format_size(max_size)})",
                )
            chunks.append(chunk)
        return b"".join(chunks)

    @log_function_call
    def validate_upload(self, filename: Optional[str], content: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Validate name, size and JSON content of an upload.

        Returns:
            Dict with ``data`` (the parsed call log) and ``warnings``

        Raises:
            HTTPException: 400 on any validation failure
        """
        validation_result = validate_file_upload(
            filename,
            len(content),
            ALLOWED_CALL_LOG_EXTENSIONS,
            self.config.max_file_size_bytes,
            content_type=content_type,
            allowed_content_types=ALLOWED_CALL_LOG_CONTENT_TYPES,
        )
        if not validation_result["is_valid"]:
            logger.error(f"File validation failed: {validation_result['errors']}")
            debug_helper.log_debug_info(
                "file_validation_failed",
                {"filename": filename, "errors": validation_result["errors"], "file_info": validation_result["file_info"]},
            )
            raise HTTPException(status_code=400, detail="; ".join(validation_result["errors"]))

        try:
            data = json.loads(content)
        except (UnicodeDecodeError, ValueError):
            raise HTTPException(status_code=400, detail="File is not valid JSON.")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Call log must be a JSON object.")

        check = validate_call_log_json(data)
        problems = check["errors"] + check["warnings"]
        if check["errors"] and self.config.strict_call_log_validation:
            raise HTTPException(status_code=400, detail="; ".join(check["errors"]))
        if problems:
            logger.info(f"Call log {filename} has {len(problems)} schema warnings")

        return {"data": data, "warnings": problems}

    def build_metadata(self, filename: str, content: bytes, data: Dict[str, Any]) -> FileMetadata:
        call_fields = {k: v for k, v in parse_call_log_metadata(data).items() if v is not None}
        return FileMetadata(
            original_filename=filename,
            uploaded_at=utc_now_iso(),
            size=len(content),
            status=FileStatus.UPLOADED,
            content_type="application/json",
            **call_fields,
        )

    async def upload_call_log(self, file: Optional[UploadFile]) -> Dict[str, Any]:
        """
        Validate and store a new call log.

        Raises:
            HTTPException: 400 on validation failure
            FileCollisionError: when the filename is already stored
        """
        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="No file provided")

        filename = file.filename
        logger.info(f"Call log upload request received: {filename}")

        with PerformanceMonitor("call_log_upload"):
            content = await self.read_upload(file)
            checked = self.validate_upload(filename, content, file.content_type)

            if await self.storage.file_exists(filename):
                logger.info(f"Upload collision: {filename}")
                raise FileCollisionError(filename)

            metadata = self.build_metadata(filename, content, checked["data"])
            try:
                await self.storage.upload_file(filename, content, metadata, overwrite=False)
            except BlobAlreadyExistsError:
                raise FileCollisionError(filename)

        logger.info(f"Upload completed successfully: {filename}")
        return {
            "success": True,
            "file": {"name": filename, **metadata.to_json_dict(exclude_none=True)},
            "warnings": checked["warnings"],
        }

    async def replace_call_log(self, file: Optional[UploadFile]) -> Dict[str, Any]:
        """
        Replace a stored call log, backing up the original first.

        The stale analysis of the original is removed so the record can be
        analysed again from ``uploaded``.
        """
        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="No file provided")

        filename = file.filename
        logger.info(f"Call log replace request received: {filename}")

        content = await self.read_upload(file)
        checked = self.validate_upload(filename, content, file.content_type)

        if not await self.storage.file_exists(filename):
            raise HTTPException(status_code=404, detail="Original file not found. Cannot replace.")

        try:
            backup_filename = await self.storage.backup_file(filename)
        except BlobStorageError as e:
            logger.error(f"Backup failed for {filename}: {e}")
            raise HTTPException(status_code=500, detail="Failed to create backup. Replace operation aborted for safety.")

        try:
            await self.storage.delete_file(filename)
            await self.storage.delete_file(filename, ContainerType.PROCESSED)
        except BlobStorageError as e:
            logger.error(f"Delete failed for {filename}: {e}")
            raise HTTPException(
                status_code=500,
                detail={"error": "Failed to delete original file. Backup was created successfully.", "backupFilename": backup_filename},
            )

        metadata = self.build_metadata(filename, content, checked["data"])
        try:
            result = await self.storage.upload_file(filename, content, metadata, overwrite=False)
        except BlobAlreadyExistsError:
            raise FileCollisionError(filename)
        except BlobStorageError as e:
            logger.error(f"Upload failed after backup for {filename}: {e}")
            raise HTTPException(
                status_code=500,
                detail={"error": "Failed to upload new file. Original was backed up and deleted.", "backupFilename": backup_filename},
            )

        logger.info(f"Replaced {filename}, backup at {backup_filename}")
        return {
            "success": True,
            **result.to_json_dict(),
            "backupFilename": backup_filename,
            "message": "File replaced successfully. Original backed up.",
            "warnings": checked["warnings"],
        }
