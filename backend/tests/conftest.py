"""
Pytest configuration and fixtures for backend tests.

Provides a scripted submission client, a submission service wired to it,
a recording UI sink, and an async HTTP client bound to the app with the
submission service overridden.
"""
import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.api.v1.deps import get_submission_service
from app.services.submission.progress import EtaEstimator
from app.services.submission.service import SubmissionService


DEFAULT_STAGES = [
    {"stage": "validate", "message": "Fetching file details...", "progress": 10},
    {"stage": "process", "message": "Preparing JSON documents...", "progress": 35},
    {"stage": "duplicates", "message": "Checking for duplicate submissions on LHDN...", "progress": 55},
    {"stage": "submit", "message": "Submitting 1 invoice to LHDN...", "progress": 70},
    {"stage": "done", "message": "Processing response...", "progress": 90},
]


BATCH_STAGES = [
    {"stage": "validate", "message": "Checking file readiness...", "progress": 10},
    {"stage": "prepare", "message": "Preparing bulk submission...", "progress": 35},
    {"stage": "submit", "message": "Submitting to LHDN (background)...", "progress": 65},
    {"stage": "response", "message": "Bulk submission started. Finalizing...", "progress": 90},
]


class FakeSubmissionClient:
    """
    Scripted SubmissionClient.

    Emits `stages` through on_stage, optionally waits on a per-file gate,
    then returns (or raises) the scripted result. A list of results is
    consumed one per call; the last one repeats. Batch submissions wait on
    the "batch" gate and consume `batch_results` the same way.
    """

    def __init__(self):
        self.stages: List[Dict[str, Any]] = list(DEFAULT_STAGES)
        self.results: Dict[Any, Any] = {}
        self.default_result: Any = {"success": True, "acceptedDocuments": ["D1"]}
        self.gates: Dict[Any, asyncio.Event] = {}
        self.calls: List[Any] = []
        self.delete_results: Dict[Any, Any] = {}
        self.bulk_delete_response: Any = {"success": True, "summary": {"deleted": 0, "failed": 0}, "failedFiles": []}
        self.deleted: List[Any] = []
        self.batch_stages: List[Dict[str, Any]] = list(BATCH_STAGES)
        self.batch_results: List[Any] = [{"success": True, "message": "Bulk submission initiated for 2 files with 3 total documents"}]
        self.batch_calls: List[List[Any]] = []

    async def submit_single(self, file_id: Any, on_stage: Optional[Any] = None) -> Dict[str, Any]:
        self.calls.append(file_id)
        if on_stage is not None:
            for payload in self.stages:
                on_stage(dict(payload))

        gate = self.gates.get(file_id)
        if gate is not None:
            await gate.wait()

        result = self._next_result(file_id)
        if isinstance(result, BaseException):
            raise result
        return result

    async def bulk_submit_files(self, file_ids: List[Any], on_stage: Optional[Any] = None) -> Dict[str, Any]:
        self.batch_calls.append(list(file_ids))
        if on_stage is not None:
            for payload in self.batch_stages:
                on_stage(dict(payload))

        gate = self.gates.get("batch")
        if gate is not None:
            await gate.wait()

        result = self.batch_results.pop(0) if len(self.batch_results) > 1 else self.batch_results[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def delete_file(self, file_id: Any) -> Dict[str, Any]:
        self.deleted.append(file_id)
        result = self.delete_results.get(file_id, {"success": True})
        if isinstance(result, BaseException):
            raise result
        return result

    async def delete_files(self, file_ids: List[Any]) -> Dict[str, Any]:
        self.deleted.extend(file_ids)
        if isinstance(self.bulk_delete_response, BaseException):
            raise self.bulk_delete_response
        return self.bulk_delete_response

    def _next_result(self, file_id: Any) -> Any:
        scripted = self.results.get(file_id, self.default_result)
        if isinstance(scripted, list):
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return scripted


class RecordingSink:
    """UiSink that keeps every render call."""

    def __init__(self):
        self.frames: List[Dict[str, Any]] = []

    def render(self, stage_key, label, percentage, eta_seconds, error_panel=None):
        self.frames.append({
            "stage": stage_key,
            "label": label,
            "percentage": percentage,
            "eta_seconds": eta_seconds,
            "error_panel": error_panel,
        })

    @property
    def percentages(self) -> List[int]:
        return [frame["percentage"] for frame in self.frames]


async def wait_for_call(client: FakeSubmissionClient, count: int = 1) -> None:
    """Yield to the event loop until the fake client has seen `count` calls."""
    for _ in range(1000):
        if len(client.calls) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("Submission client was never called")


@pytest.fixture
def fake_client() -> FakeSubmissionClient:
    return FakeSubmissionClient()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def submission_service(fake_client: FakeSubmissionClient) -> SubmissionService:
    """Fresh session-scoped service per test."""
    return SubmissionService(client=fake_client, estimator=EtaEstimator())


@pytest_asyncio.fixture(scope="function")
async def async_client(submission_service: SubmissionService):
    """HTTP client for the app with the submission service overridden."""
    app.dependency_overrides[get_submission_service] = lambda: submission_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def make_sink():
    """Factory for additional recording sinks within one test."""
    return RecordingSink
