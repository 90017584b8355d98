"""
Data models for CallGuard application.

Wire format is camelCase (the dashboard's JSON shape); attribute names are
snake_case. Every model accepts either form on input.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising to camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


class FileStatus(str, Enum):
    """Processing status of an uploaded call log."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    ERROR = "error"


# uploaded -> processing -> analyzed|error; finished records may be re-analysed
ALLOWED_STATUS_TRANSITIONS = {
    FileStatus.UPLOADED: {FileStatus.PROCESSING},
    FileStatus.PROCESSING: {FileStatus.ANALYZED, FileStatus.ERROR},
    FileStatus.ANALYZED: {FileStatus.PROCESSING},
    FileStatus.ERROR: {FileStatus.PROCESSING},
}

# Client-side statuses that mean "still waiting on the pipeline"
IN_FLIGHT_STATUSES = {"uploaded", "queued", "processing"}


def can_transition(current: FileStatus, new: FileStatus) -> bool:
    """Return True if a file record may move from ``current`` to ``new``."""
    if current == new and current != FileStatus.PROCESSING:
        return True
    return new in ALLOWED_STATUS_TRANSITIONS.get(current, set())


class ContainerType(str, Enum):
    """Logical storage namespaces."""
    RAW = "raw"
    PROCESSED = "processed"
    BACKUPS = "backups"


# ============================================================================
# CALL LOGS
# ============================================================================

# Upload only warns about schema problems, so these models take whatever a
# stored call log holds instead of rejecting it.

def _loose_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _loose_scalar(value: Any) -> Optional[Union[float, str]]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    return value


class TranscriptTurn(CamelModel):
    speaker: str = ""
    timestamp: Optional[Union[float, str]] = None
    text: str = ""

    @field_validator("speaker", "text", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return _loose_text(value) or ""

    @field_validator("timestamp", mode="before")
    @classmethod
    def _scalar_timestamp(cls, value: Any):
        return _loose_scalar(value)


class CallLog(CamelModel):
    """Uploaded debt-collection call transcript."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    call_id: Optional[str] = None
    timestamp: Optional[str] = None
    duration: Optional[Union[float, str]] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    account_number: Optional[str] = None
    transcript: List[TranscriptTurn] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("call_id", "timestamp", "agent_id", "agent_name", "account_number", mode="before")
    @classmethod
    def _display_text(cls, value: Any) -> Optional[str]:
        return _loose_text(value)

    @field_validator("duration", mode="before")
    @classmethod
    def _scalar_duration(cls, value: Any):
        return _loose_scalar(value)

    @field_validator("transcript", mode="before")
    @classmethod
    def _object_turns(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [turn for turn in value if isinstance(turn, dict)]

    @field_validator("metadata", mode="before")
    @classmethod
    def _object_metadata(cls, value: Any):
        return value if isinstance(value, dict) else None


# ============================================================================
# FILE RECORDS
# ============================================================================

class FileMetadata(CamelModel):
    """Typed view of the string-only metadata attached to a raw blob."""

    original_filename: str = "unknown"
    uploaded_at: str = ""
    size: int = 0
    uploader_id: Optional[str] = None
    status: FileStatus = FileStatus.UPLOADED
    content_type: str = "application/json"
    processing_started_at: Optional[str] = None
    processing_completed_at: Optional[str] = None
    error_message: Optional[str] = None
    call_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_id: Optional[str] = None
    call_duration: Optional[int] = None  # seconds
    call_timestamp: Optional[str] = None
    call_outcome: Optional[str] = None
    risk_score: Optional[float] = None


class UploadResult(CamelModel):
    filename: str
    url: str
    uploaded_at: str
    size: int
    path: str


class StoredFile(CamelModel):
    name: str
    path: str
    size: int
    uploaded_at: str
    metadata: FileMetadata


class PaginatedFileList(CamelModel):
    files: List[StoredFile] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class DateFilter(CamelModel):
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None


# ============================================================================
# ANALYSIS
# ============================================================================

class Violation(CamelModel):
    """A transcript segment flagged against the FDCPA rubric."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str
    severity: str
    timestamp: Optional[Union[float, str]] = None
    speaker: Optional[str] = None
    quote: str = ""
    explanation: str = ""
    regulation: str = ""
    suggested_alternative: str = ""


class AnalysisResult(CamelModel):
    risk_score: float = Field(..., ge=0, le=10)
    fdcpa_score: float = Field(..., ge=0, le=10)
    violations: List[Violation] = Field(default_factory=list)
    summary: str
    recommendations: List[str] = Field(default_factory=list)


# ============================================================================
# RESPONSE EVALUATION
# ============================================================================

class ViolationContext(CamelModel):
    type: str
    severity: str = ""
    regulation: str = ""
    explanation: str = ""


class EvaluateRequest(CamelModel):
    original_response: str = ""
    alternative_response: str = ""
    violation_context: Optional[ViolationContext] = None


class EvaluationScores(CamelModel):
    fdcpa_compliance: float
    professionalism: float
    effectiveness: float
    tone_empathy: float
    overall: float


class EvaluationResult(CamelModel):
    scores: EvaluationScores
    improvements: List[str]
    concerns: List[str]
    rationale: str
    recommendation: str


# ============================================================================
# API PAYLOADS
# ============================================================================

class FileReference(CamelModel):
    name: str
    uploaded_at: Optional[str] = None


class StatusRequest(CamelModel):
    files: List[FileReference] = Field(default_factory=list)
    file_names: List[str] = Field(default_factory=list)

    def names(self) -> List[str]:
        ordered = [ref.name for ref in self.files] + list(self.file_names)
        return list(dict.fromkeys(ordered))


class ProcessRequest(CamelModel):
    uploaded_at: Optional[str] = None
