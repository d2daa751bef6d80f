"""
Submission Schemas

Schemas for:
- Single and bulk submission to LHDN
- Retry, cancel and progress polling
- Single and bulk file deletion
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator


# ============ Error Schemas ============

class ErrorDetailSchema(BaseModel):
    """One validation detail reported by LHDN."""
    message: str = ""
    code: Optional[str] = None
    target: Optional[str] = None
    property_name: Optional[str] = None
    property_path: Optional[str] = None


class NormalizedErrorSchema(BaseModel):
    """Classified error with remediation guidance."""
    error_code: str
    category: str
    original_message: str
    user_message: str
    guidance: List[str] = Field(default_factory=list)
    field_description: Optional[str] = None
    status_code: Optional[int] = None
    details: List[ErrorDetailSchema] = Field(default_factory=list)


# ============ Submission Schemas ============

class BulkSubmitRequest(BaseModel):
    """Request to submit several uploaded files."""
    file_ids: List[str] = Field(..., min_length=1, description="Uploaded file IDs to submit")
    labels: Optional[Dict[str, str]] = Field(None, description="Display names keyed by file ID")

    @field_validator("file_ids")
    @classmethod
    def strip_ids(cls, v: List[str]) -> List[str]:
        ids = [file_id.strip() for file_id in v if file_id and file_id.strip()]
        if not ids:
            raise ValueError("At least one file ID is required")
        return ids


class AttemptResponse(BaseModel):
    """Result of one submission attempt."""
    target_id: str
    state: Optional[str] = None
    success: bool
    accepted_documents: List[Any] = Field(default_factory=list)
    rejected_documents: List[Any] = Field(default_factory=list)
    submission_uid: Optional[str] = None
    error: Optional[NormalizedErrorSchema] = None
    error_title: Optional[str] = None
    notice: Optional[str] = None
    message: Optional[str] = None
    retry_available: bool = False


class BatchSubmitResponse(AttemptResponse):
    """Result of a server-side bulk submission tracked as one attempt."""
    file_ids: List[str] = Field(default_factory=list)


class CancelResponse(BaseModel):
    """Result of a cancel request."""
    target_id: str
    cancelled: bool
    message: str


class ProgressResponse(BaseModel):
    """Latest progress frame rendered for a file."""
    target_id: str
    state: Optional[str] = None
    stage: str
    label: str
    percentage: int = Field(..., ge=0, le=100)
    eta_seconds: Optional[int] = None
    error_panel: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None


# ============ Bulk Result Schemas ============

class OperationOutcomeItem(BaseModel):
    """Outcome for a single file in a bulk operation."""
    id: str
    label: Optional[str] = None
    success: bool
    error: Optional[NormalizedErrorSchema] = None


class BulkSummaryResponse(BaseModel):
    """Folded result of a bulk operation."""
    requested: int
    succeeded: int
    failed: int
    status: str  # success, partial, failure
    title: str
    message: str
    failures: List[str] = Field(default_factory=list)
    outcomes: List[OperationOutcomeItem] = Field(default_factory=list)


# ============ Delete Schemas ============

class BulkDeleteRequest(BaseModel):
    """Request to delete several uploaded files."""
    file_ids: List[str] = Field(..., min_length=1, description="Uploaded file IDs to delete")
    labels: Optional[Dict[str, str]] = Field(None, description="Display names keyed by file ID")


class DeleteResponse(BaseModel):
    """Result of deleting one file."""
    id: str
    success: bool
    message: str
    error: Optional[NormalizedErrorSchema] = None
