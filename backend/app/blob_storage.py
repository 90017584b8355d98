"""
Azure Blob Storage service for CallGuard.

Raw call logs, analysis results and backups live in three containers, keyed
by filename (flat paths). Job status is held in the raw blob's metadata,
which the storage API only accepts as a flat map of strings; the
serialize/deserialize functions below are the single boundary between that
map and the typed FileMetadata model.
"""
import asyncio
import json
import logging
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from azure.core import MatchConditions
from azure.core.exceptions import (
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from .config import Settings, is_storage_configured
from .logging_config import log_file_operation
from .models import (
    AnalysisResult,
    ContainerType,
    DateFilter,
    FileMetadata,
    FileStatus,
    PaginatedFileList,
    StoredFile,
    UploadResult,
    can_transition,
)
from .retry_policy import RetryError, retry_blob_operation

logger = logging.getLogger('callguard.storage')

MAX_METADATA_VALUE_LENGTH = 1024
CONDITIONAL_WRITE_ATTEMPTS = 3


class BlobStorageError(Exception):
    """Storage operation failed after retries."""
    status_code = 500


class BlobNotFoundError(BlobStorageError):
    status_code = 404


class BlobAlreadyExistsError(BlobStorageError):
    status_code = 409


class BlobConditionFailedError(BlobStorageError):
    """The blob changed between read and conditional write."""
    status_code = 412


class InvalidStatusTransitionError(BlobStorageError):
    status_code = 409


def _translate_error(error: RetryError) -> BlobStorageError:
    cause = error.last_error
    status = getattr(cause, 'status_code', None)
    if isinstance(cause, ResourceNotFoundError) or status == 404:
        return BlobNotFoundError(str(error))
    if isinstance(cause, ResourceExistsError) or status == 409:
        return BlobAlreadyExistsError(str(error))
    if isinstance(cause, ResourceModifiedError) or status == 412:
        return BlobConditionFailedError(str(error))
    return BlobStorageError(str(error))


# ============================================================================
# METADATA SERIALIZATION
# ============================================================================

INT_FIELDS = {"size", "call_duration"}
FLOAT_FIELDS = {"risk_score"}


def metadata_key(field_name: str) -> str:
    """Storage key for a FileMetadata field: lower-cased camelCase."""
    return field_name.replace("_", "").lower()


def normalize_metadata_key(key: str) -> str:
    """Fold case and separators so 'RiskScore', 'risk_score' and 'riskscore' match."""
    return key.replace("_", "").replace("-", "").lower()


_FIELD_BY_KEY = {metadata_key(name): name for name in FileMetadata.model_fields}


def _header_safe(value: str) -> str:
    # Metadata travels as HTTP headers: ASCII only, no line breaks
    value = " ".join(value.split())
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return value[:MAX_METADATA_VALUE_LENGTH]


def _to_metadata_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, FileStatus):
        return value.value
    return _header_safe(str(value))


def serialize_metadata(metadata: FileMetadata) -> Dict[str, str]:
    """Flatten typed metadata into the string-only map the store accepts."""
    serialized = {
        metadata_key(name): _to_metadata_string(getattr(metadata, name))
        for name in FileMetadata.model_fields
    }
    serialized["originalfilename"] = serialized["originalfilename"] or "unknown"
    serialized["uploadedat"] = serialized["uploadedat"] or utc_now_iso()
    serialized["status"] = serialized["status"] or FileStatus.UPLOADED.value
    serialized["contenttype"] = serialized["contenttype"] or "application/json"
    return serialized


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def deserialize_metadata(
    raw: Optional[Mapping[str, str]],
    fallback_uploaded_at: Optional[str] = None,
) -> FileMetadata:
    """Rebuild typed metadata from a stored map, tolerating key case drift."""
    normalized = {normalize_metadata_key(k): (v or "") for k, v in (raw or {}).items()}

    values: Dict[str, Any] = {}
    for key, name in _FIELD_BY_KEY.items():
        value = normalized.get(key, "")
        if value == "":
            continue
        if name in INT_FIELDS:
            parsed = _parse_int(value)
            if parsed is not None:
                values[name] = parsed
        elif name in FLOAT_FIELDS:
            parsed = _parse_float(value)
            if parsed is not None:
                values[name] = parsed
        elif name == "status":
            try:
                values[name] = FileStatus(value.strip().lower())
            except ValueError:
                logger.warning(f"Unknown status in blob metadata: {value!r}")
        else:
            values[name] = value

    values.setdefault("uploaded_at", fallback_uploaded_at or utc_now_iso())
    return FileMetadata(**values)


def merge_metadata(current: FileMetadata, updates: Mapping[str, Any]) -> FileMetadata:
    """Apply a partial update (snake_case, camelCase or storage keys) to metadata."""
    merged = current.model_dump()
    for key, value in updates.items():
        name = _FIELD_BY_KEY.get(normalize_metadata_key(key))
        if name is None:
            logger.debug(f"Ignoring unknown metadata key: {key}")
            continue
        merged[name] = value
    return FileMetadata.model_validate(merged)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _matches_date(uploaded_at: str, date_filter: DateFilter) -> bool:
    parsed = _parse_iso(uploaded_at)
    if parsed is None:
        return False
    if date_filter.year and parsed.year != date_filter.year:
        return False
    if date_filter.month and parsed.month != date_filter.month:
        return False
    if date_filter.day and parsed.day != date_filter.day:
        return False
    return True


# ============================================================================
# SERVICE
# ============================================================================

class BlobStorageService:
    """
    Handles all call log file operations against Azure Blob Storage.
    """

    def __init__(self, service_client: BlobServiceClient, containers: Mapping[str, str], sleep=asyncio.sleep):
        self.service_client = service_client
        self.container_names = {ContainerType(k): v for k, v in containers.items()}
        self.containers = {
            ctype: service_client.get_container_client(name)
            for ctype, name in self.container_names.items()
        }
        self._sleep = sleep
        logger.info(f"Blob storage service initialized with containers: {dict((k.value, v) for k, v in self.container_names.items())}")

    @classmethod
    def from_settings(cls, config: Settings) -> "BlobStorageService":
        if not is_storage_configured(config):
            raise BlobStorageError("AZURE_STORAGE_CONNECTION_STRING environment variable is not set")
        client = BlobServiceClient.from_connection_string(config.azure_storage_connection_string)
        return cls(client, config.container_names)

    async def close(self) -> None:
        await self.service_client.close()

    @staticmethod
    def get_file_path(filename: str) -> str:
        """Blob path for a file. Paths are flat: the filename itself."""
        return filename

    def _blob(self, filename: str, container: Union[str, ContainerType] = ContainerType.RAW):
        return self.containers[ContainerType(container)].get_blob_client(self.get_file_path(filename))

    async def _call(self, operation, operation_name: str):
        try:
            return await retry_blob_operation(operation, operation_name, sleep=self._sleep)
        except RetryError as e:
            raise _translate_error(e) from e.last_error

    async def initialize_containers(self) -> None:
        """Create the raw, processed and backups containers if missing."""
        for ctype, client in self.containers.items():
            try:
                await self._call(client.create_container, f"Create container: {self.container_names[ctype]}")
                logger.info(f"Created container: {self.container_names[ctype]}")
            except BlobAlreadyExistsError:
                logger.debug(f"Container already exists: {self.container_names[ctype]}")
            except BlobStorageError as e:
                logger.error(f"Failed to initialize containers: {e}")
                raise BlobStorageError("Container initialization failed") from e
        logger.info("Azure Blob Storage containers initialized")

    @log_file_operation("upload")
    async def upload_file(
        self,
        filename: str,
        content: bytes,
        metadata: FileMetadata,
        container: Union[str, ContainerType] = ContainerType.RAW,
        overwrite: bool = False,
    ) -> UploadResult:
        """
        Upload a file with its metadata.

        Raises BlobAlreadyExistsError when the blob exists and ``overwrite``
        is False, so collision detection does not depend on a prior check.
        """
        blob = self._blob(filename, container)
        await self._call(
            lambda: blob.upload_blob(
                content,
                overwrite=overwrite,
                metadata=serialize_metadata(metadata),
                content_settings=ContentSettings(content_type=metadata.content_type),
            ),
            f"Upload file: {filename}",
        )
        return UploadResult(
            filename=filename,
            url=blob.url,
            uploaded_at=metadata.uploaded_at,
            size=metadata.size,
            path=self.get_file_path(filename),
        )

    async def file_exists(self, filename: str, container: Union[str, ContainerType] = ContainerType.RAW) -> bool:
        blob = self._blob(filename, container)
        return bool(await self._call(blob.exists, f"Check exists: {filename}"))

    async def get_file_metadata(
        self, filename: str, container: Union[str, ContainerType] = ContainerType.RAW
    ) -> Optional[FileMetadata]:
        """Return the file record, or None if the blob does not exist."""
        blob = self._blob(filename, container)
        try:
            properties = await self._call(blob.get_blob_properties, f"Get properties: {filename}")
        except BlobNotFoundError:
            return None
        return deserialize_metadata(properties.metadata, _iso(getattr(properties, "creation_time", None)))

    @log_file_operation("download")
    async def download_file(self, filename: str, container: Union[str, ContainerType] = ContainerType.RAW) -> bytes:
        """Download blob content. Raises BlobNotFoundError if missing."""
        blob = self._blob(filename, container)

        async def _download():
            downloader = await blob.download_blob()
            return await downloader.readall()

        return await self._call(_download, f"Download file: {filename}")

    async def list_files(
        self,
        container: Union[str, ContainerType] = ContainerType.RAW,
        date_filter: Optional[DateFilter] = None,
        prefix: Optional[str] = None,
        max_results: int = 1000,
    ) -> PaginatedFileList:
        """
        List files with their metadata.

        Entries with no content, or that 404 on a follow-up properties call,
        are skipped: the listing can report blobs that no longer exist.
        """
        container_client = self.containers[ContainerType(container)]

        async def _collect():
            return [
                entry async for entry in container_client.list_blobs(
                    name_starts_with=prefix or None, include=["metadata"]
                )
            ]

        entries = await self._call(_collect, f"List files: {self.container_names[ContainerType(container)]}")

        files: List[StoredFile] = []
        has_more = False
        for entry in entries:
            if len(files) >= max_results:
                has_more = True
                break

            if not entry.size:
                logger.warning(f"Skipping blob with no content: {entry.name}")
                continue

            try:
                await self._call(
                    container_client.get_blob_client(entry.name).get_blob_properties,
                    f"Verify blob: {entry.name}",
                )
            except BlobNotFoundError:
                logger.warning(f"Skipping non-existent blob (404): {entry.name}")
                continue

            created = _iso(getattr(entry, "creation_time", None))
            metadata = deserialize_metadata(entry.metadata, created)
            if date_filter and not _matches_date(metadata.uploaded_at, date_filter):
                continue

            files.append(StoredFile(
                name=entry.name,
                path=entry.name,
                size=entry.size,
                uploaded_at=created or metadata.uploaded_at,
                metadata=metadata,
            ))

        return PaginatedFileList(files=files, total=len(files), has_more=has_more)

    async def update_metadata(
        self,
        filename: str,
        updates: Mapping[str, Any],
        container: Union[str, ContainerType] = ContainerType.RAW,
    ) -> FileMetadata:
        """
        Merge a partial update into a file record.

        The write is conditional on the ETag that was read, and is retried
        from a fresh read if another writer got in between.
        """
        blob = self._blob(filename, container)

        for attempt in range(1, CONDITIONAL_WRITE_ATTEMPTS + 1):
            properties = await self._call(blob.get_blob_properties, f"Get properties: {filename}")
            current = deserialize_metadata(properties.metadata, _iso(getattr(properties, "creation_time", None)))
            merged = merge_metadata(current, updates)

            if merged.status != current.status and not can_transition(current.status, merged.status):
                raise InvalidStatusTransitionError(
                    f"Invalid status transition for {filename}: {current.status.value} -> {merged.status.value}"
                )

            try:
                await self._call(
                    lambda: blob.set_blob_metadata(
                        serialize_metadata(merged),
                        etag=properties.etag,
                        match_condition=MatchConditions.IfNotModified,
                    ),
                    f"Update metadata: {filename}",
                )
                return merged
            except BlobConditionFailedError:
                logger.warning(f"Metadata for {filename} changed concurrently (attempt {attempt}), re-reading")

        raise BlobConditionFailedError(f"Failed to update metadata for {filename}: concurrent modification")

    async def claim_for_processing(self, filename: str, stale_after_seconds: Optional[int] = None) -> bool:
        """
        Move a file record to ``processing`` unless an analysis is already running.

        Returns False if the record is already processing (and not stale) or
        another writer claimed it first. Raises BlobNotFoundError if missing.
        """
        blob = self._blob(filename, ContainerType.RAW)
        properties = await self._call(blob.get_blob_properties, f"Get properties: {filename}")
        current = deserialize_metadata(properties.metadata, _iso(getattr(properties, "creation_time", None)))

        if current.status == FileStatus.PROCESSING and not _is_stale(current, stale_after_seconds):
            logger.info(f"Analysis already in progress for {filename}")
            return False

        claimed = current.model_copy(update={
            "status": FileStatus.PROCESSING,
            "processing_started_at": utc_now_iso(),
            "processing_completed_at": None,
            "error_message": None,
        })
        try:
            await self._call(
                lambda: blob.set_blob_metadata(
                    serialize_metadata(claimed),
                    etag=properties.etag,
                    match_condition=MatchConditions.IfNotModified,
                ),
                f"Claim for processing: {filename}",
            )
        except BlobConditionFailedError:
            logger.info(f"Lost processing claim race for {filename}")
            return False
        return True

    @log_file_operation("delete")
    async def delete_file(self, filename: str, container: Union[str, ContainerType] = ContainerType.RAW) -> bool:
        """Delete a blob. Idempotent: returns False if it was already gone."""
        blob = self._blob(filename, container)
        try:
            await self._call(blob.delete_blob, f"Delete file: {filename}")
        except BlobNotFoundError:
            logger.info(f"Blob not found during delete (already deleted): {filename}")
            return False
        return True

    @log_file_operation("backup")
    async def backup_file(self, filename: str) -> str:
        """Copy a raw file into the backups container; returns the backup name."""
        source = self._blob(filename, ContainerType.RAW)
        timestamp = utc_now_iso().replace(":", "-").replace(".", "-")
        stem = filename[:-5] if filename.lower().endswith(".json") else filename
        backup_filename = f"{stem}_backup_{timestamp}.json"
        target = self._blob(backup_filename, ContainerType.BACKUPS)

        await self._call(lambda: target.start_copy_from_url(source.url), f"Backup file: {filename}")
        return backup_filename

    async def upload_analysis_result(self, filename: str, analysis: Union[AnalysisResult, Dict[str, Any]]) -> None:
        """Store an analysis as a sibling blob in the processed container."""
        payload = analysis.to_json_dict() if isinstance(analysis, AnalysisResult) else analysis
        data = json.dumps(payload, indent=2).encode("utf-8")
        blob = self._blob(filename, ContainerType.PROCESSED)
        await self._call(
            lambda: blob.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type="application/json"),
            ),
            f"Upload analysis result: {filename}",
        )

    async def download_analysis_result(self, filename: str) -> Optional[Dict[str, Any]]:
        """Return the stored analysis JSON, or None if there is none yet."""
        try:
            content = await self.download_file(filename, ContainerType.PROCESSED)
        except BlobNotFoundError:
            return None
        return json.loads(content)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _is_stale(metadata: FileMetadata, stale_after_seconds: Optional[int]) -> bool:
    if not stale_after_seconds:
        return False
    started = _parse_iso(metadata.processing_started_at)
    if started is None:
        return True
    return datetime.now(timezone.utc) - started > timedelta(seconds=stale_after_seconds)


async def clear_all_files(storage: BlobStorageService) -> Dict[str, int]:
    """Delete every raw call log and its analysis. Returns deleted/failed counts."""
    listing = await storage.list_files(ContainerType.RAW, max_results=100000)
    logger.warning(f"Clearing storage: {len(listing.files)} files")

    deleted = 0
    failed = 0
    for stored in listing.files:
        try:
            await storage.delete_file(stored.name, ContainerType.RAW)
            await storage.delete_file(stored.name, ContainerType.PROCESSED)
            deleted += 1
        except BlobStorageError as e:
            failed += 1
            logger.error(f"Failed to delete {stored.name}: {e}")
    return {"deleted": deleted, "failed": failed}
