"""
Tests for the submission API endpoints.
"""
import asyncio

import pytest


BASE = "/api/v1/submissions"


async def _wait_for_calls(client, count=1):
    for _ in range(1000):
        if len(client.calls) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("Submission client was never called")


@pytest.mark.asyncio
async def test_submit_file_success(async_client):
    """Test a successful single submission."""
    response = await async_client.post(f"{BASE}/files/F1/submit")

    assert response.status_code == 200
    data = response.json()
    assert data["target_id"] == "F1"
    assert data["state"] == "done"
    assert data["success"] is True
    assert data["accepted_documents"] == ["D1"]
    assert data["error"] is None
    assert data["retry_available"] is False


@pytest.mark.asyncio
async def test_submit_file_failure(async_client, fake_client):
    """Test that a failed submission returns 200 with a classified error."""
    fake_client.results["F2"] = {"success": False, "error": {"code": "DUPLICATE", "message": "duplicate"}}

    response = await async_client.post(f"{BASE}/files/F2/submit")

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "failed"
    assert data["success"] is False
    assert data["retry_available"] is True
    assert data["error_title"] == "Duplicate Submission"
    assert data["error"]["category"] == "DUPLICATE_SUBMISSION"
    assert data["error"]["error_code"] == "DUPLICATE"
    assert data["error"]["guidance"]


@pytest.mark.asyncio
async def test_submit_file_already_in_progress(async_client, fake_client):
    """Test that a second submit for a busy file returns 409."""
    gate = asyncio.Event()
    fake_client.gates["F3"] = gate
    first = asyncio.create_task(async_client.post(f"{BASE}/files/F3/submit"))
    await _wait_for_calls(fake_client)

    second = await async_client.post(f"{BASE}/files/F3/submit")

    assert second.status_code == 409
    assert "already in progress" in second.json()["detail"]

    gate.set()
    first_response = await first
    assert first_response.status_code == 200
    assert fake_client.calls == ["F3"]


@pytest.mark.asyncio
async def test_retry_unknown_file(async_client):
    """Test that retrying a file never submitted returns 404."""
    response = await async_client.post(f"{BASE}/files/F9/retry")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_retry_after_failure(async_client, fake_client):
    """Test retry of a failed submission."""
    fake_client.results["F1"] = [
        {"success": False, "error": {"code": "NETWORK_ERROR", "message": "Network error"}},
        {"success": True, "acceptedDocuments": ["D1"]},
    ]
    failed = await async_client.post(f"{BASE}/files/F1/submit")
    assert failed.json()["error"]["category"] == "NETWORK_ISSUE"

    response = await async_client.post(f"{BASE}/files/F1/retry")

    assert response.status_code == 200
    assert response.json()["state"] == "done"
    assert fake_client.calls == ["F1", "F1"]


@pytest.mark.asyncio
async def test_cancel_without_running_submission(async_client):
    """Test cancel when nothing is in flight."""
    response = await async_client.post(f"{BASE}/files/F1/cancel")

    assert response.status_code == 200
    assert response.json() == {
        "target_id": "F1",
        "cancelled": False,
        "message": "No submission in progress",
    }


@pytest.mark.asyncio
async def test_progress(async_client):
    """Test progress polling before and after a submission."""
    missing = await async_client.get(f"{BASE}/files/F1/progress")
    assert missing.status_code == 404

    await async_client.post(f"{BASE}/files/F1/submit")
    response = await async_client.get(f"{BASE}/files/F1/progress")

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "done"
    assert data["stage"] == "done"
    assert data["percentage"] == 100
    assert data["updated_at"]


@pytest.mark.asyncio
async def test_bulk_submit_partial(async_client, fake_client):
    """Test bulk submit where one file fails."""
    fake_client.results["B"] = {"success": False, "error": "locked"}

    response = await async_client.post(
        f"{BASE}/files/bulk-submit",
        json={"file_ids": ["A", "B"], "labels": {"B": "B.xlsx"}},
    )

    assert response.status_code == 200
    data = response.json()
    assert (data["requested"], data["succeeded"], data["failed"]) == (2, 1, 1)
    assert data["status"] == "partial"
    assert data["title"] == "Partial Success"
    assert data["failures"] == ["B.xlsx: locked"]
    assert [outcome["id"] for outcome in data["outcomes"]] == ["A", "B"]


@pytest.mark.asyncio
@pytest.mark.parametrize("file_ids", [[], ["  "]])
async def test_bulk_submit_requires_ids(async_client, file_ids):
    """Test that an empty id list is rejected."""
    response = await async_client.post(f"{BASE}/files/bulk-submit", json={"file_ids": file_ids})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_batch_submit(async_client, fake_client):
    """Test a server-side batch submission and polling its progress."""
    response = await async_client.post(f"{BASE}/files/batch-submit", json={"file_ids": ["11", "12"]})

    assert response.status_code == 200
    data = response.json()
    assert data["target_id"].startswith("batch-")
    assert data["state"] == "done"
    assert data["file_ids"] == ["11", "12"]
    assert data["message"] == "Bulk submission initiated for 2 files with 3 total documents"
    assert fake_client.batch_calls == [["11", "12"]]

    progress = await async_client.get(f"{BASE}/files/{data['target_id']}/progress")
    assert progress.status_code == 200
    assert progress.json()["percentage"] == 100


@pytest.mark.asyncio
async def test_batch_submit_with_file_in_progress(async_client, fake_client):
    """Test that a batch with a busy file returns 409."""
    gate = asyncio.Event()
    fake_client.gates["12"] = gate
    first = asyncio.create_task(async_client.post(f"{BASE}/files/12/submit"))
    await _wait_for_calls(fake_client)

    response = await async_client.post(f"{BASE}/files/batch-submit", json={"file_ids": ["11", "12"]})

    assert response.status_code == 409
    assert fake_client.batch_calls == []
    gate.set()
    await first


@pytest.mark.asyncio
async def test_bulk_delete_partial(async_client, fake_client):
    """Test bulk delete where one file is locked."""
    fake_client.bulk_delete_response = {
        "success": True,
        "summary": {"deleted": 2, "failed": 1},
        "failedFiles": [{"filename": "C.xlsx", "error": "locked"}],
    }

    response = await async_client.request(
        "DELETE", f"{BASE}/files/bulk", json={"file_ids": ["A", "B", "C"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "partial"
    assert data["failures"] == ["C.xlsx: locked"]
    assert data["message"] == "Successfully deleted 2 file(s).\n1 file(s) failed:\nC.xlsx: locked"
    assert fake_client.deleted == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_delete_file(async_client, fake_client):
    """Test single file delete, successful and refused."""
    fake_client.delete_results["F2"] = {"success": False, "error": "File is locked"}

    deleted = await async_client.delete(f"{BASE}/files/F1")
    refused = await async_client.delete(f"{BASE}/files/F2")

    assert deleted.json()["success"] is True
    assert deleted.json()["message"] == "File deleted"
    assert refused.json()["success"] is False
    assert refused.json()["message"] == "Failed to delete file: File is locked"


@pytest.mark.asyncio
async def test_health(async_client):
    """Test the health endpoint."""
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
