"""
Submission API Endpoints

Provides endpoints for:
- Submitting one uploaded file or several files to LHDN
- Handing a batch of files to the server-side bulk submission
- Retrying and cancelling a submission
- Polling submission progress
- Deleting one or several uploaded files
"""
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException

from app.api.v1.deps import get_submission_service
from app.schemas.submission import (
    AttemptResponse,
    BatchSubmitResponse,
    BulkDeleteRequest,
    BulkSubmitRequest,
    BulkSummaryResponse,
    CancelResponse,
    DeleteResponse,
    ErrorDetailSchema,
    NormalizedErrorSchema,
    OperationOutcomeItem,
    ProgressResponse,
)
from app.services.submission.bulk import BulkSummary
from app.services.submission.errors import NormalizedError, error_classifier
from app.services.submission.orchestrator import AttemptResult
from app.services.submission.service import SubmissionService, UnknownTargetError

logger = logging.getLogger(__name__)

router = APIRouter()

Service = Annotated[SubmissionService, Depends(get_submission_service)]


def _convert_error(error: Optional[NormalizedError]) -> Optional[NormalizedErrorSchema]:
    if error is None:
        return None
    return NormalizedErrorSchema(
        error_code=error.error_code,
        category=error.category.value,
        original_message=error.original_message,
        user_message=error.user_message,
        guidance=list(error.guidance),
        field_description=error.field_description,
        status_code=error.status_code,
        details=[
            ErrorDetailSchema(
                message=detail.message,
                code=detail.code,
                target=detail.target,
                property_name=detail.property_name,
                property_path=detail.property_path,
            )
            for detail in error.details
        ],
    )


def _convert_attempt(result: AttemptResult) -> AttemptResponse:
    """Convert an attempt result to the response schema."""
    if result.rejected:
        raise HTTPException(status_code=409, detail=result.notice)

    error_title = None
    if result.error is not None:
        error_title = error_classifier.profile_for(result.error.category).title

    return AttemptResponse(
        target_id=str(result.target_id),
        state=result.state.value if result.state else None,
        success=result.success,
        accepted_documents=list(result.accepted_documents),
        rejected_documents=list(result.rejected_documents),
        submission_uid=result.submission_uid,
        error=_convert_error(result.error),
        error_title=error_title,
        notice=result.notice,
        message=result.message,
        retry_available=result.retry_available,
    )


def _convert_summary(summary: BulkSummary, action: str) -> BulkSummaryResponse:
    """Convert a bulk summary to the response schema."""
    presentation = summary.presentation(action)
    return BulkSummaryResponse(
        requested=summary.requested,
        succeeded=summary.succeeded,
        failed=summary.failed,
        status=presentation["status"],
        title=presentation["title"],
        message=presentation["message"],
        failures=presentation["failures"],
        outcomes=[
            OperationOutcomeItem(
                id=str(outcome.id),
                label=outcome.label,
                success=outcome.success,
                error=_convert_error(outcome.error),
            )
            for outcome in summary.outcomes
        ],
    )


# ============ Submission Endpoints ============

@router.post("/files/bulk-submit", response_model=BulkSummaryResponse)
async def bulk_submit_files(service: Service, request: BulkSubmitRequest):
    """
    Submit several files; each file is an independent submission.

    Always returns 200 with a summary; per-file failures are listed in
    `outcomes` and `failures`.
    """
    summary = await service.submit_bulk(request.file_ids, labels=request.labels)
    return _convert_summary(summary, "submitted")


@router.post("/files/batch-submit", response_model=BatchSubmitResponse)
async def batch_submit_files(service: Service, request: BulkSubmitRequest):
    """
    Hand several files to the server-side bulk submission as one batch.

    LHDN processing continues in the background. Poll, cancel or retry the
    batch through the returned `target_id`. Returns 409 if any of the files
    is already being submitted.
    """
    result = await service.submit_batch(request.file_ids)
    attempt = _convert_attempt(result)
    return BatchSubmitResponse(
        **attempt.model_dump(),
        file_ids=[str(file_id) for file_id in service.batch_files(result.target_id) or ()],
    )


@router.post("/files/{file_id}/submit", response_model=AttemptResponse)
async def submit_file(file_id: str, service: Service):
    """
    Submit all documents of one uploaded file to LHDN.

    Returns 409 if a submission for this file is already in progress.
    """
    result = await service.submit_one(file_id)
    return _convert_attempt(result)


@router.post("/files/{file_id}/retry", response_model=AttemptResponse)
async def retry_file(file_id: str, service: Service):
    """
    Replay the last submission of a file.

    Returns 404 if the file was not submitted in this session and 409 if a
    submission for it is still in progress.
    """
    try:
        result = await service.retry(file_id)
    except UnknownTargetError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _convert_attempt(result)


@router.post("/files/{file_id}/cancel", response_model=CancelResponse)
async def cancel_file(file_id: str, service: Service):
    """
    Cancel the running submission of a file.

    Cancellation is advisory: the request already sent to LHDN is not aborted.
    """
    cancelled = service.cancel(file_id)
    message = "Submission cancelled" if cancelled else "No submission in progress"
    return CancelResponse(target_id=file_id, cancelled=cancelled, message=message)


@router.get("/files/{file_id}/progress", response_model=ProgressResponse)
async def get_file_progress(file_id: str, service: Service):
    """Latest progress frame for a file."""
    snapshot = service.progress(file_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No progress recorded for {file_id}")

    state = service.state_of(file_id)
    return ProgressResponse(
        target_id=file_id,
        state=state.value if state else None,
        stage=snapshot["stage"],
        label=snapshot["label"],
        percentage=snapshot["percentage"],
        eta_seconds=snapshot["etaSeconds"],
        error_panel=snapshot["errorPanel"],
        updated_at=snapshot["updatedAt"],
    )


# ============ Delete Endpoints ============

@router.delete("/files/bulk", response_model=BulkSummaryResponse)
async def delete_files(service: Service, request: BulkDeleteRequest):
    """Delete several uploaded files; partial success is reported per file."""
    summary = await service.delete_files(request.file_ids, labels=request.labels)
    return _convert_summary(summary, "deleted")


@router.delete("/files/{file_id}", response_model=DeleteResponse)
async def delete_file(file_id: str, service: Service):
    """Delete one uploaded file."""
    outcome = await service.delete_file(file_id)
    message = "File deleted" if outcome.success else f"Failed to delete file: {outcome.error.reason}"
    return DeleteResponse(
        id=file_id,
        success=outcome.success,
        message=message,
        error=_convert_error(outcome.error),
    )
