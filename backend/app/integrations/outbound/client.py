"""
Outbound files API client for LHDN MyInvois submissions.

Wraps the outbound-files-manual REST API that prepares, checks and submits
the invoices of an uploaded Excel file to LHDN, and reports each step through
an `on_stage` callback:

    validate -> process -> duplicates -> [confirm] -> submit -> done

A server-side bulk submission of several files reports

    validate -> prepare -> submit -> response

Handles:
- Throttling (minimum gap between calls, keeps us under ~85 requests/minute)
- Application-level retry with exponential backoff for 429/5xx/timeouts
- Fallback verification when the submit call drops on the network
- Typed errors that carry status code and the raw response payload
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.core.config import settings
from app.services.logging import submission_logger

logger = logging.getLogger(__name__)


READY_STATUSES = ("processed", "ready to submit")

StageCallback = Callable[[Dict[str, Any]], Any]
ConfirmHook = Callable[[Dict[str, Any]], Awaitable[bool]]


class SubmissionClientError(Exception):
    """Base exception for outbound files API errors"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
        self.code = code

    @property
    def is_network_error(self) -> bool:
        """Socket dropped or timed out; the request may still have landed."""
        return self.status_code == 0 or self.code in ("TIMEOUT", "NETWORK_ERROR")

    @property
    def is_retryable(self) -> bool:
        if self.is_network_error or self.status_code == 429:
            return True
        return self.status_code is not None and 500 <= self.status_code < 600


class SubmissionCancelled(Exception):
    """The user declined to continue before the submit step."""


class OutboundFilesClient:
    """
    Async client for the outbound files API.

    One instance is shared per session so the throttle applies across all
    submissions it issues.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        confirm_before_submit: Optional[ConfirmHook] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (defaults to settings.SUBMISSION_API_URL)
            api_token: Bearer token (defaults to settings.SUBMISSION_API_TOKEN)
            confirm_before_submit: Optional hook awaited before the submit step;
                returning False cancels the submission
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Awaitable sleep used for throttling and backoff
        """
        self.base_url = base_url or settings.SUBMISSION_API_URL
        self.api_token = api_token or settings.SUBMISSION_API_TOKEN
        self.confirm_before_submit = confirm_before_submit
        self._sleep = sleep
        self._throttle_lock = asyncio.Lock()
        self._last_call_at = 0.0

        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.METADATA_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Submission flow
    # ------------------------------------------------------------------

    async def submit_single(self, file_id: Any, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        """
        Submit all documents of one uploaded file to LHDN.

        Returns:
            Completion payload {success, acceptedDocuments, rejectedDocuments,
            submissionUid}

        Raises:
            SubmissionClientError: On any failed step
            SubmissionCancelled: If the confirm hook declined
        """
        await self._throttle()
        await self._emit(on_stage, "validate", "Fetching file details...", 10)

        details = await self._retrying(lambda attempt: self.get_file_details(file_id), retries=1)
        status = str(details.get("processing_status") or "").lower()
        if status not in READY_STATUSES:
            raise SubmissionClientError("File is not ready for submission", status_code=400)

        invoice_count = self._invoice_count(details)
        if invoice_count > settings.MAX_DOCUMENTS_PER_SUBMISSION:
            raise SubmissionClientError(
                f"Contains {invoice_count} documents which exceeds LHDN limit of "
                f"{settings.MAX_DOCUMENTS_PER_SUBMISSION}",
                status_code=400,
            )

        await self._emit(on_stage, "process", "Preparing JSON documents...", 35)
        prepared = await self.prepare(file_id)
        logger.info("Prepared documents for file %s: %s", file_id, (prepared.get("data") or {}).get("preparedCount"))

        await self._emit(on_stage, "duplicates", "Checking for duplicate submissions on LHDN...", 55)
        duplicates = await self.check_duplicates(file_id)
        found = (duplicates.get("data") or {}).get("duplicates") or []
        if found:
            logger.warning("Duplicate check for file %s reported %s duplicate(s)", file_id, len(found))

        if self.confirm_before_submit is not None:
            proceed = await self.confirm_before_submit({"fileId": file_id, "invoiceCount": invoice_count})
            if not proceed:
                logger.info("User cancelled file %s before submit", file_id)
                raise SubmissionCancelled("User cancelled before submit")

        async def attempt_submit(attempt: int) -> Dict[str, Any]:
            await self._emit_submit_started(file_id, attempt, on_stage)
            result = await self.post_submit(file_id)
            submission_uid = (result.get("data") or {}).get("submissionUid")
            if result.get("success") and submission_uid:
                await self._emit_lhdn_status(submission_uid, on_stage)
            return result

        try:
            result = await self._retrying(
                attempt_submit,
                retries=settings.RETRY_ATTEMPTS,
                base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            )
        except SubmissionClientError as e:
            if not e.is_network_error:
                raise
            result = await self._verify_after_network_failure(file_id, on_stage, e)

        await self._emit(on_stage, "done", "Processing response...", 90)

        if not result.get("success"):
            raise SubmissionClientError(self._error_message(result, "Submission failed"), payload=result)

        await self._emit(on_stage, "done", "Finalizing...", 98)
        return self._completion(result)

    async def bulk_submit_files(self, file_ids: List[Any], on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        """
        Hand several uploaded files to the server-side bulk submission.

        The server only validates the batch and queues it; LHDN processing
        happens in the background, so success here means "started".

        Returns:
            {success, message, data: {fileCount, totalDocuments, files}}

        Raises:
            SubmissionClientError: If the server refused the batch
        """
        if not file_ids:
            return {"success": False, "error": "No files selected for bulk submission"}

        await self._throttle()
        await self._emit(on_stage, "validate", "Checking file readiness...", 10)
        await self._emit(on_stage, "prepare", "Preparing bulk submission...", 35)

        result = await self._retrying(
            lambda attempt: self.post_bulk_submit(file_ids),
            retries=1,
            base_delay_ms=settings.BULK_SUBMIT_RETRY_BASE_DELAY_MS,
        )
        await self._emit(on_stage, "submit", "Submitting to LHDN (background)...", 65)

        if not result.get("success"):
            raise SubmissionClientError(self._error_message(result, "Bulk submission failed"), payload=result)

        await self._emit(on_stage, "response", "Bulk submission started. Finalizing...", 90)
        return result

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_file_details(self, file_id: Any) -> Dict[str, Any]:
        data = await self._request(
            "GET", f"/uploaded-files/{file_id}/details",
            context="get_file_details",
            timeout=settings.METADATA_TIMEOUT_SECONDS,
        )
        if not data.get("success"):
            raise SubmissionClientError(
                self._error_message(data, "Failed to get file details"), status_code=400, payload=data,
            )
        return data.get("data") or {}

    async def prepare(self, file_id: Any) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/uploaded-files/{file_id}/prepare",
            context="prepare",
            timeout=settings.PREPARE_TIMEOUT_SECONDS,
        )

    async def check_duplicates(self, file_id: Any) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/uploaded-files/{file_id}/check-duplicates",
            context="check_duplicates",
            timeout=settings.DUPLICATE_CHECK_TIMEOUT_SECONDS,
        )

    async def post_submit(self, file_id: Any) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/uploaded-files/{file_id}/submit-single",
            context="submit_single",
            timeout=settings.SUBMIT_TIMEOUT_SECONDS,
        )

    async def post_bulk_submit(self, file_ids: List[Any]) -> Dict[str, Any]:
        return await self._request(
            "POST", "/bulk-submit-files",
            context="bulk_submit_files",
            timeout=settings.BULK_SUBMIT_TIMEOUT_SECONDS,
            json={"fileIds": list(file_ids)},
        )

    async def get_submission_status(self, submission_uid: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/submission-status/{submission_uid}",
            context="submission_status",
            timeout=settings.DUPLICATE_CHECK_TIMEOUT_SECONDS,
        )

    async def delete_file(self, file_id: Any) -> Dict[str, Any]:
        """Delete one uploaded file. Returns {success, error?}."""
        await self._throttle()
        return await self._request("DELETE", f"/uploaded-files/{file_id}", context="delete_file")

    async def delete_files(self, file_ids: List[Any]) -> Dict[str, Any]:
        """
        Delete several uploaded files in one call.

        Returns:
            {success, summary: {deleted, failed}, failedFiles: [{filename, error}]}
        """
        await self._throttle()
        return await self._request(
            "DELETE", "/uploaded-files/bulk",
            context="delete_files",
            json={"fileIds": list(file_ids)},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        timeout: Optional[float] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self.client.request(
                method, path, json=json, timeout=timeout or settings.METADATA_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Timeout in {context}: {e}")
            raise SubmissionClientError(f"Request timed out during {context}", code="TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.error(f"HTTP error in {context}: {e}")
            raise SubmissionClientError(
                f"Network error during {context}: {e}", status_code=0, code="NETWORK_ERROR",
            ) from e

        data = self._parse_body(response)
        if not response.is_success:
            self._handle_error(response, data, context)
        return data if isinstance(data, dict) else {"success": True, "data": data}

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _handle_error(self, response: httpx.Response, data: Any, context: str) -> None:
        """
        Raise a SubmissionClientError for a non-2xx response.

        The parsed body is kept as `payload` so the error classifier can dig
        out LHDN codes and details.
        """
        message = self._error_message(data, f"{context} failed (status {response.status_code})")
        logger.error(f"Outbound API error in {context}: status={response.status_code}, error={message}")
        raise SubmissionClientError(message=message, status_code=response.status_code, payload=data)

    @staticmethod
    def _error_message(data: Any, default: str) -> str:
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, str) and error:
                return error
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if data.get("message"):
                return str(data["message"])
        if isinstance(data, str) and data.strip():
            return data.strip()
        return default

    async def _throttle(self) -> None:
        """Ensure at least THROTTLE_GAP_MS between outbound calls."""
        async with self._throttle_lock:
            gap = settings.THROTTLE_GAP_MS / 1000.0
            wait = self._last_call_at + gap - time.monotonic()
            if self._last_call_at and wait > 0:
                await self._sleep(wait)
            self._last_call_at = time.monotonic()

    async def _retrying(
        self,
        fn: Callable[[int], Awaitable[Dict[str, Any]]],
        retries: int = 2,
        base_delay_ms: int = 1200,
    ) -> Dict[str, Any]:
        """Call fn(attempt), backing off base_delay * 2^attempt on transient errors."""
        attempt = 0
        while True:
            try:
                return await fn(attempt)
            except SubmissionClientError as e:
                if not e.is_retryable or attempt >= retries:
                    if attempt:
                        submission_logger.operation_failed("outbound_request", str(e), retry_count=attempt)
                    raise
                backoff_ms = round(base_delay_ms * (2 ** attempt))
                logger.warning(f"Retrying in {backoff_ms}ms (attempt {attempt + 1}): {e}")
                await self._sleep(backoff_ms / 1000.0)
                attempt += 1

    async def _emit_submit_started(self, file_id: Any, attempt: int, on_stage: Optional[StageCallback]) -> None:
        suffix = f" (retry {attempt})" if attempt else ""
        if on_stage is None:
            return
        try:
            details = await self.get_file_details(file_id)
        except SubmissionClientError as e:
            logger.warning(f"Failed to get file metadata for progress tracking: {e}")
            await self._emit(on_stage, "submit", f"Submitting to LHDN...{suffix}", 70)
            return

        invoice_numbers = ((details.get("metadata") or {}).get("prepared") or {}).get("invoiceNumbers") or []
        count = len(invoice_numbers)
        await self._emit(
            on_stage, "submit",
            f"Submitting {count} invoice{'' if count == 1 else 's'} to LHDN...{suffix}",
            70,
            realTimeInfo={
                "currentInvoice": invoice_numbers[0] if invoice_numbers else "Unknown",
                "totalInvoices": count,
                "processed": 0,
                "remaining": count,
            },
        )

    async def _emit_lhdn_status(self, submission_uid: str, on_stage: Optional[StageCallback]) -> None:
        if on_stage is None:
            return
        try:
            status_data = await self.get_submission_status(submission_uid)
        except SubmissionClientError as e:
            logger.warning(f"Failed to get submission status for {submission_uid}: {e}")
            return

        data = status_data.get("data") or {}
        if not (status_data.get("success") and data.get("success")):
            logger.warning(f"Submission status check failed for {submission_uid}")
            return

        count = (data.get("details") or {}).get("documentCount") or 0
        await self._emit(
            on_stage, "submit",
            f"Processing {count} document{'' if count == 1 else 's'} on LHDN...",
            85,
            realTimeInfo={
                "submissionUid": submission_uid,
                "status": data.get("status") or "processing",
                "totalInvoices": count,
                "processed": count,
                "remaining": 0,
            },
        )

    async def _verify_after_network_failure(
        self,
        file_id: Any,
        on_stage: Optional[StageCallback],
        error: SubmissionClientError,
    ) -> Dict[str, Any]:
        """
        The submit request may have been processed even though the socket
        dropped. Check the file details once; re-raise `error` if the
        submission cannot be confirmed.
        """
        logger.warning(f"Network error during submit of {file_id}, attempting fallback verification")
        await self._emit(on_stage, "submit", "Submission dispatched. Verifying status...", 80)
        await self._sleep(settings.SUBMIT_VERIFY_DELAY_MS / 1000.0)

        try:
            details = await self.get_file_details(file_id)
        except SubmissionClientError:
            raise error

        lhdn_response = details.get("lhdn_response") or (details.get("metadata") or {}).get("lhdn_response")
        status = str(details.get("processing_status") or "").lower()
        accepted = ((lhdn_response or {}).get("data") or {}).get("acceptedDocuments") or []

        landed = status == "submitted" or (
            isinstance(lhdn_response, dict) and (lhdn_response.get("status") == "success" or accepted)
        )
        if not landed:
            raise error

        logger.info(f"Fallback verification confirmed submission of {file_id}")
        return {
            "success": True,
            "data": {
                "submissionUid": ((lhdn_response or {}).get("data") or {}).get("submissionUid"),
                "acceptedDocuments": accepted,
            },
            "lhdnResponse": lhdn_response,
        }

    @staticmethod
    def _completion(result: Dict[str, Any]) -> Dict[str, Any]:
        data = result.get("data") if isinstance(result.get("data"), dict) else {}
        return {
            "success": True,
            "acceptedDocuments": result.get("acceptedDocuments") or data.get("acceptedDocuments") or [],
            "rejectedDocuments": result.get("rejectedDocuments") or data.get("rejectedDocuments") or [],
            "submissionUid": data.get("submissionUid") or result.get("submissionUid"),
        }

    @staticmethod
    def _invoice_count(details: Dict[str, Any]) -> int:
        raw = details.get("invoice_count") or (details.get("metadata") or {}).get("invoiceCount") or 0
        try:
            return int(raw)
        except (TypeError, ValueError):
            return 0

    @staticmethod
    async def _emit(on_stage: Optional[StageCallback], stage: str, message: str, progress: int, **extra) -> None:
        if on_stage is None:
            return
        payload = {"stage": stage, "message": message, "progress": progress}
        payload.update(extra)
        result = on_stage(payload)
        if inspect.isawaitable(result):
            await result


def get_outbound_client() -> OutboundFilesClient:
    """
    Get an outbound files client configured from settings.

    Returns:
        OutboundFilesClient: Configured client
    """
    return OutboundFilesClient()
