"""
Bulk Operation Aggregator

Fans out one operation per id, waits for every one of them to settle, and
folds the per-item results into a single BulkSummary.

Key features:
- Bounded concurrency (asyncio.Semaphore) to respect the authority's rate limits
- Settle-all: a failing item never short-circuits the others
- Id-keyed outcome map; completion order is irrelevant
- Per-item timeout converted into a NETWORK_ISSUE outcome
- Folding of the bulk delete endpoint response into the same summary shape
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from app.core.config import settings
from app.services.logging import submission_logger
from app.services.submission.errors import ErrorClassifier, NormalizedError, error_classifier
from app.services.submission.progress import ProgressFrame, ProgressSink

logger = logging.getLogger(__name__)


class BulkStatus(str, Enum):
    """How the outcome set of a bulk operation should be presented."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class OperationOutcome:
    """Result of one item of a bulk operation."""
    id: Any
    success: bool
    error: Optional[NormalizedError] = None
    label: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or str(self.id)

    @property
    def failure_line(self) -> Optional[str]:
        if self.success:
            return None
        reason = self.error.reason if self.error else "Unknown error"
        return f"{self.display_name}: {reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "success": self.success,
            "label": self.label,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class BulkSummary:
    """Finalized result of a bulk operation: succeeded + failed == requested."""
    requested: int
    succeeded: int
    failed: int
    outcomes: Tuple[OperationOutcome, ...]

    @classmethod
    def from_outcomes(cls, ids: List[Any], outcomes: Dict[Any, OperationOutcome]) -> "BulkSummary":
        """Fold an id-keyed outcome map into a summary, in request order."""
        ordered = tuple(outcomes[item_id] for item_id in ids)
        succeeded = sum(1 for outcome in ordered if outcome.success)
        return cls(
            requested=len(ordered),
            succeeded=succeeded,
            failed=len(ordered) - succeeded,
            outcomes=ordered,
        )

    @property
    def status(self) -> BulkStatus:
        if self.failed == 0:
            return BulkStatus.SUCCESS
        if self.succeeded == 0:
            return BulkStatus.FAILURE
        return BulkStatus.PARTIAL

    @property
    def failed_outcomes(self) -> List[OperationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def failure_lines(self) -> List[str]:
        return [outcome.failure_line for outcome in self.failed_outcomes]

    def presentation(self, action: str = "processed") -> Dict[str, Any]:
        """Title and message for the UI, chosen from the outcome set."""
        lines = "\n".join(self.failure_lines)
        if self.status == BulkStatus.SUCCESS:
            title = "Success"
            message = f"Successfully {action} {self.succeeded} file(s)."
        elif self.status == BulkStatus.FAILURE:
            title = "Failed"
            message = f"No files were {action}:\n{lines}"
        else:
            title = "Partial Success"
            message = f"Successfully {action} {self.succeeded} file(s).\n{self.failed} file(s) failed:\n{lines}"
        return {
            "status": self.status.value,
            "title": title,
            "message": message,
            "failures": self.failure_lines,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "status": self.status.value,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


BulkOperation = Callable[[Any], Awaitable[Any]]


class BulkOperationAggregator:
    """
    Runs a bulk operation as N independent item operations.

    Every requested id gets exactly one OperationOutcome.
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        max_concurrency: Optional[int] = None,
        item_timeout: Optional[float] = None,
        progress_sink: Optional[ProgressSink] = None,
    ):
        self.classifier = classifier or error_classifier
        self.max_concurrency = max(1, max_concurrency or settings.BULK_MAX_CONCURRENCY)
        self.item_timeout = item_timeout or settings.BULK_ITEM_TIMEOUT_SECONDS
        self.progress_sink = progress_sink

    async def submit_bulk(
        self,
        ids: Iterable[Any],
        operation: BulkOperation,
        labels: Optional[Dict[Any, str]] = None,
        operation_name: str = "submit",
    ) -> BulkSummary:
        """Issue one operation per id and wait for all of them to settle."""
        ordered = list(dict.fromkeys(ids))
        labels = labels or {}
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes: Dict[Any, OperationOutcome] = {}

        async def run_one(item_id: Any) -> None:
            async with semaphore:
                outcome = await self._settle(item_id, operation, labels.get(item_id))
            outcomes[item_id] = outcome
            self._report_progress(len(outcomes), len(ordered))

        await asyncio.gather(*(run_one(item_id) for item_id in ordered))

        summary = BulkSummary.from_outcomes(ordered, outcomes)
        self._log_summary(operation_name, summary)
        return summary

    def fold_bulk_delete(
        self,
        ids: Iterable[Any],
        response: Any,
        labels: Optional[Dict[Any, str]] = None,
    ) -> BulkSummary:
        """
        Fold a `DELETE /files/bulk` response into a BulkSummary.

        failedFiles entries are matched back to ids by explicit id, then by
        label, then by filename stem. Every other id counts as deleted unless
        some reported failure could not be matched, in which case deletion of
        the remaining ids is not confirmed and they are reported as failed.
        """
        ordered = list(dict.fromkeys(ids))
        labels = labels or {}
        outcomes: Dict[Any, OperationOutcome] = {}

        if not isinstance(response, dict) or not response.get("success"):
            error = self.classifier.normalize(response or {"message": "Bulk delete failed"})
            for item_id in ordered:
                outcomes[item_id] = OperationOutcome(item_id, False, error, labels.get(item_id))
        else:
            by_label = {str(label): item_id for item_id, label in labels.items()}
            unmatched: List[str] = []
            for entry in response.get("failedFiles") or []:
                if not isinstance(entry, dict):
                    continue
                error = self.classifier.normalize(entry.get("error") or "Delete failed")
                item_id = self._match_failed_entry(entry, ordered, by_label, outcomes)
                if item_id is None:
                    logger.warning("Bulk delete reported an unknown failed file: %s", entry.get("filename"))
                    unmatched.append(f"{entry.get('filename') or 'unknown file'}: {error.reason}")
                    continue
                outcomes[item_id] = OperationOutcome(
                    id=item_id,
                    success=False,
                    error=error,
                    label=entry.get("filename") or labels.get(item_id),
                )

            reported_failed = (response.get("summary") or {}).get("failed")
            if isinstance(reported_failed, int) and reported_failed != len(outcomes):
                logger.warning(
                    "Bulk delete summary reports %s failures but %s failed files were listed",
                    reported_failed, len(outcomes),
                )

            # A failure we cannot pin to an id leaves every other id unconfirmed
            unconfirmed = None
            if unmatched:
                unconfirmed = self.classifier.normalize({
                    "code": "DELETE_NOT_CONFIRMED",
                    "message": "Deletion not confirmed; server reported " + "; ".join(unmatched),
                })
            elif isinstance(reported_failed, int) and reported_failed > len(outcomes):
                unconfirmed = self.classifier.normalize({
                    "code": "DELETE_NOT_CONFIRMED",
                    "message": (
                        f"Deletion not confirmed; server reported {reported_failed} failure(s) "
                        f"but listed {len(outcomes)}"
                    ),
                })

            for item_id in ordered:
                if item_id in outcomes:
                    continue
                if unconfirmed is not None:
                    outcomes[item_id] = OperationOutcome(item_id, False, unconfirmed, labels.get(item_id))
                else:
                    outcomes[item_id] = OperationOutcome(item_id, True, label=labels.get(item_id))

        summary = BulkSummary.from_outcomes(ordered, outcomes)
        self._log_summary("delete", summary)
        return summary

    async def _settle(self, item_id: Any, operation: BulkOperation, label: Optional[str]) -> OperationOutcome:
        try:
            result = await asyncio.wait_for(operation(item_id), timeout=self.item_timeout)
        except asyncio.TimeoutError:
            logger.warning("Bulk item %s timed out after %ss", item_id, self.item_timeout)
            error = self.classifier.normalize({
                "code": "TIMEOUT",
                "message": f"Request timed out after {self.item_timeout:g}s",
            })
            return OperationOutcome(item_id, False, error, label)
        except Exception as exc:
            logger.warning("Bulk item %s failed: %s", item_id, exc)
            return OperationOutcome(item_id, False, self.classifier.normalize(exc), label)
        return self.outcome_for(item_id, result, label)

    def outcome_for(self, item_id: Any, result: Any, label: Optional[str] = None) -> OperationOutcome:
        """Convert whatever an item operation returned into an OperationOutcome."""
        if isinstance(result, OperationOutcome):
            return result
        if result is None or result is True:
            return OperationOutcome(item_id, True, label=label)
        if result is False:
            error = self.classifier.normalize({"message": "Operation failed"})
            return OperationOutcome(item_id, False, error, label)

        if isinstance(result, dict):
            success = bool(result.get("success", True))
            raw_error = result.get("error") or result
        else:
            success = bool(getattr(result, "success", True))
            raw_error = getattr(result, "error", None) or {"message": "Operation failed"}

        if success:
            return OperationOutcome(item_id, True, label=label)
        return OperationOutcome(item_id, False, self.classifier.normalize(raw_error), label)

    @staticmethod
    def _match_failed_entry(
        entry: Dict[str, Any],
        ordered: List[Any],
        by_label: Dict[str, Any],
        taken: Dict[Any, OperationOutcome],
    ) -> Optional[Any]:
        candidates = [item_id for item_id in ordered if item_id not in taken]

        for key in ("fileId", "id"):
            value = entry.get(key)
            if value is not None:
                for item_id in candidates:
                    if str(item_id) == str(value):
                        return item_id

        filename = entry.get("filename")
        if not filename:
            return None
        filename = str(filename)
        if filename in by_label and by_label[filename] in candidates:
            return by_label[filename]

        stem = filename.rsplit(".", 1)[0]
        for item_id in candidates:
            if str(item_id) in (filename, stem):
                return item_id
        return None

    def _report_progress(self, settled: int, total: int) -> None:
        if self.progress_sink is None or total == 0:
            return
        self.progress_sink(ProgressFrame(
            percent=settled * 100 // total,
            label=f"Processed {settled} of {total}",
        ))

    @staticmethod
    def _log_summary(operation: str, summary: BulkSummary) -> None:
        submission_logger.bulk_completed(
            operation=operation,
            requested=summary.requested,
            succeeded=summary.succeeded,
            failed=summary.failed,
            status=summary.status.value,
        )
