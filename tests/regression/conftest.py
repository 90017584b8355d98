"""
Pytest configuration for regression tests.

Provides in-memory stand-ins for the Azure async blob client and the
OpenAI chat-completions client, so storage, analysis and the HTTP API can
be exercised without network access.
"""

import itertools
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from azure.core import MatchConditions
from azure.core.exceptions import ResourceExistsError, ResourceModifiedError, ResourceNotFoundError

# Add repo root to Python path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

FIXTURES_DIR = Path(ROOT_DIR) / "tests" / "fixtures"

CONTAINERS = {
    "raw": "call-logs-raw",
    "processed": "call-logs-processed",
    "backups": "call-logs-backups",
}

_etags = itertools.count(1)


def http_error(cls, message, status_code, error_code=None):
    """Build an azure-core error the way the SDK surfaces it."""
    error = cls(message=message)
    error.status_code = status_code
    error.error_code = error_code
    return error


# ============================================================================
# AZURE BLOB FAKES
# ============================================================================

class FakeBlob:
    def __init__(self, data: bytes, metadata: dict):
        self.data = data
        self.metadata = metadata
        self.creation_time = datetime.now(timezone.utc)
        self.etag = f'"0x{next(_etags)}"'

    def touch(self):
        self.etag = f'"0x{next(_etags)}"'


class FakeDownloader:
    def __init__(self, data: bytes):
        self._data = data

    async def readall(self):
        return self._data


class FakeBlobClient:
    def __init__(self, container, name):
        self.container = container
        self.blob_name = name
        self.url = f"https://fakeaccount.blob.core.windows.net/{container.name}/{name}"

    def _get(self):
        blob = self.container.blobs.get(self.blob_name)
        if blob is None:
            raise http_error(ResourceNotFoundError, f"The specified blob does not exist: {self.blob_name}", 404, "BlobNotFound")
        return blob

    async def upload_blob(self, data, overwrite=False, metadata=None, content_settings=None):
        self.container.account.record("upload_blob", self.container.name, self.blob_name)
        if not overwrite and self.blob_name in self.container.blobs:
            raise http_error(ResourceExistsError, "The specified blob already exists.", 409, "BlobAlreadyExists")
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.container.blobs[self.blob_name] = FakeBlob(bytes(data), dict(metadata or {}))

    async def exists(self):
        self.container.account.record("exists", self.container.name, self.blob_name)
        return self.blob_name in self.container.blobs

    async def get_blob_properties(self):
        self.container.account.record("get_blob_properties", self.container.name, self.blob_name)
        blob = self._get()
        return SimpleNamespace(
            name=self.blob_name,
            metadata=dict(blob.metadata),
            size=len(blob.data),
            etag=blob.etag,
            creation_time=blob.creation_time,
            copy=SimpleNamespace(status="success", status_description=None),
        )

    async def download_blob(self):
        self.container.account.record("download_blob", self.container.name, self.blob_name)
        return FakeDownloader(self._get().data)

    async def set_blob_metadata(self, metadata=None, etag=None, match_condition=None):
        self.container.account.record("set_blob_metadata", self.container.name, self.blob_name)
        blob = self._get()
        if etag is not None and match_condition == MatchConditions.IfNotModified and etag != blob.etag:
            raise http_error(ResourceModifiedError, "The condition specified using HTTP conditional header(s) is not met.", 412, "ConditionNotMet")
        blob.metadata = dict(metadata or {})
        blob.touch()

    async def delete_blob(self):
        self.container.account.record("delete_blob", self.container.name, self.blob_name)
        self._get()
        del self.container.blobs[self.blob_name]

    async def start_copy_from_url(self, source_url):
        self.container.account.record("start_copy_from_url", self.container.name, self.blob_name)
        source = self.container.account.find_by_url(source_url)
        if source is None:
            raise http_error(ResourceNotFoundError, "The specified blob does not exist.", 404, "CannotVerifyCopySource")
        self.container.blobs[self.blob_name] = FakeBlob(source.data, dict(source.metadata))
        return {"copy_status": "success"}


class FakeContainerClient:
    def __init__(self, account, name):
        self.account = account
        self.name = name
        self.blobs = {}
        self.created = False
        # Names the listing reports but that 404 on a properties call
        self.ghosts = set()

    def get_blob_client(self, name):
        return FakeBlobClient(self, name)

    async def create_container(self):
        self.account.record("create_container", self.name, None)
        if self.created:
            raise http_error(ResourceExistsError, "The specified container already exists.", 409, "ContainerAlreadyExists")
        self.created = True

    async def _iter_blobs(self, name_starts_with=None):
        names = sorted(set(self.blobs) | self.ghosts)
        for name in names:
            if name_starts_with and not name.startswith(name_starts_with):
                continue
            blob = self.blobs.get(name)
            if blob is None:
                yield SimpleNamespace(name=name, size=128, metadata={}, creation_time=datetime.now(timezone.utc))
            else:
                yield SimpleNamespace(name=name, size=len(blob.data), metadata=dict(blob.metadata), creation_time=blob.creation_time)

    def list_blobs(self, name_starts_with=None, include=None):
        self.account.record("list_blobs", self.name, None)
        return self._iter_blobs(name_starts_with)


class FakeBlobServiceClient:
    def __init__(self):
        self.containers = {}
        self.calls = []
        self.failures = {}
        self.closed = False

    def record(self, operation, container, blob):
        self.calls.append((operation, container, blob))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def fail_next(self, operation, *errors):
        """Make the next calls of ``operation`` raise ``errors`` in order."""
        self.failures.setdefault(operation, []).extend(errors)

    def get_container_client(self, name):
        if name not in self.containers:
            self.containers[name] = FakeContainerClient(self, name)
        return self.containers[name]

    def container(self, kind):
        return self.get_container_client(CONTAINERS[kind])

    def find_by_url(self, url):
        for container in self.containers.values():
            for name, blob in container.blobs.items():
                if url.endswith(f"/{container.name}/{name}"):
                    return blob
        return None

    def count(self, operation):
        return sum(1 for call in self.calls if call[0] == operation)

    async def close(self):
        self.closed = True


# ============================================================================
# OPENAI FAKES
# ============================================================================

class FakeChatCompletions:
    """Returns queued responses in order; the last one repeats."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(
            model=kwargs.get("model"),
            choices=[SimpleNamespace(message=SimpleNamespace(role="assistant", content=item))],
        )


class FakeOpenAIClient:
    def __init__(self, responses):
        self.chat = SimpleNamespace(completions=FakeChatCompletions(responses))
        self.closed = False

    async def close(self):
        self.closed = True


VALID_ANALYSIS = {
    "riskScore": 7.5,
    "fdcpaScore": 4,
    "violations": [
        {
            "type": "threatening",
            "severity": "high",
            "timestamp": 28,
            "speaker": "agent",
            "quote": "your employer may hear about this",
            "explanation": "Implies contacting a third party about the debt.",
            "regulation": "FDCPA Section 805(b)",
            "suggestedAlternative": "Let's find a payment amount that works for you.",
        }
    ],
    "summary": "Agent used a third-party disclosure threat before offering a plan.",
    "recommendations": ["Remove references to contacting employers."],
}

VALID_EVALUATION = {
    "scores": {
        "fdcpaCompliance": 9,
        "professionalism": 8.5,
        "effectiveness": 7,
        "toneEmpathy": 8,
        "overall": 8.1,
    },
    "improvements": ["Removes the third-party threat."],
    "concerns": [],
    "rationale": "The alternative keeps the conversation on payment options.",
    "recommendation": "approve",
}


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep debug dumps and log files out of the working tree."""
    monkeypatch.setenv("CALLGUARD_DATA_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def standard_call_bytes():
    return (FIXTURES_DIR / "standard-call.json").read_bytes()


@pytest.fixture
def standard_call(standard_call_bytes):
    return json.loads(standard_call_bytes)


@pytest.fixture
def sleeps():
    """Delays requested through the injected sleep function, in seconds."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def blob_service():
    return FakeBlobServiceClient()


@pytest.fixture
def storage(blob_service, fake_sleep):
    from backend.app.blob_storage import BlobStorageService
    return BlobStorageService(blob_service, CONTAINERS, sleep=fake_sleep)


@pytest.fixture
def make_analyzer(fake_sleep):
    from backend.app.compliance_analyzer import ComplianceAnalyzer

    def _make(*responses):
        return ComplianceAnalyzer(FakeOpenAIClient(responses), model="test-model", sleep=fake_sleep)
    return _make


@pytest.fixture
def make_evaluator():
    from backend.app.response_evaluator import ResponseEvaluator

    def _make(*responses):
        return ResponseEvaluator(FakeOpenAIClient(responses), model="test-model")
    return _make


@pytest.fixture
def settings(tmp_path):
    """Application settings isolated from the environment and .env."""
    from backend.app.config import Settings
    return Settings(
        _env_file=None,
        azure_storage_connection_string="",
        openai_api_key="",
        analysis_trigger_mode="await",
        auto_process_uploads=False,
        initialize_containers_on_startup=False,
        log_file=str(tmp_path / "logs" / "callguard.log"),
    )


@pytest.fixture
def make_client(settings, storage):
    """Build a TestClient around an app with injected fakes."""
    from fastapi.testclient import TestClient
    from backend.app.main import create_app

    def _make(analyzer=None, evaluator=None, **overrides):
        config = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(settings=config, storage=storage, analyzer=analyzer, evaluator=evaluator)
        return TestClient(app)
    return _make


@pytest.fixture
def app():
    """Get FastAPI app instance."""
    from backend.app.main import app
    return app
