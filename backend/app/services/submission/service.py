"""
Submission Service

Session-scoped entry point used by the API layer.

Holds what must outlive a single attempt:
- the in-flight registry (one running attempt per target)
- the ETA history shared by all attempts of the session
- the latest orchestrator and retry descriptor per target (file or batch)
- the progress board serving polls
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from app.services.logging import submission_logger
from app.services.submission.board import ProgressBoard
from app.services.submission.bulk import BulkOperationAggregator, BulkSummary, OperationOutcome
from app.services.submission.errors import ErrorClassifier, error_classifier
from app.services.submission.locks import InFlightRegistry
from app.services.submission.orchestrator import (
    AttemptResult,
    StageCallback,
    SubmissionClient,
    SubmissionOrchestrator,
    UiSink,
)
from app.services.submission.progress import EtaEstimator
from app.services.submission.retry import OperationDescriptor, RetryCoordinator
from app.services.submission.stages import SequencerState

logger = logging.getLogger(__name__)


class SubmissionMode(str, Enum):
    SINGLE = "single"
    BULK = "bulk"


@dataclass(frozen=True)
class SubmissionRequest:
    """One user action; discarded after completion. Ids keep request order."""
    target_ids: Tuple[Any, ...]
    mode: SubmissionMode = SubmissionMode.SINGLE

    def __post_init__(self):
        object.__setattr__(self, "target_ids", tuple(dict.fromkeys(self.target_ids)))
        if not self.target_ids:
            raise ValueError("A submission request needs at least one target id")
        if self.mode == SubmissionMode.SINGLE and len(self.target_ids) != 1:
            raise ValueError("A single submission targets exactly one id")

    @classmethod
    def single(cls, target_id: Any) -> "SubmissionRequest":
        return cls((target_id,), SubmissionMode.SINGLE)

    @classmethod
    def bulk(cls, target_ids: Iterable[Any]) -> "SubmissionRequest":
        return cls(tuple(target_ids), SubmissionMode.BULK)


class UnknownTargetError(Exception):
    """Retry requested for a target that was never submitted in this session."""

    def __init__(self, target_id: Any):
        self.target_id = target_id
        super().__init__(f"No previous submission for {target_id}")


class SubmissionService:
    """Coordinates submissions, retries, cancels and deletes for one session."""

    def __init__(
        self,
        client: SubmissionClient,
        classifier: Optional[ErrorClassifier] = None,
        registry: Optional[InFlightRegistry] = None,
        estimator: Optional[EtaEstimator] = None,
        board: Optional[ProgressBoard] = None,
        aggregator: Optional[BulkOperationAggregator] = None,
    ):
        self.client = client
        self.classifier = classifier or error_classifier
        self.registry = registry or InFlightRegistry()
        self.estimator = estimator or EtaEstimator()
        self.board = board or ProgressBoard()
        self.aggregator = aggregator or BulkOperationAggregator(classifier=self.classifier)
        self._orchestrators: Dict[Any, SubmissionOrchestrator] = {}
        self._retries: Dict[Any, RetryCoordinator] = {}
        # Structure: {batch_id: (file_id, ...)}
        self._batches: Dict[Any, Tuple[Any, ...]] = {}

    async def submit(
        self,
        request: SubmissionRequest,
        sink: Optional[UiSink] = None,
    ) -> Union[AttemptResult, BulkSummary]:
        if request.mode == SubmissionMode.BULK:
            return await self.submit_bulk(request.target_ids)
        target_id = request.target_ids[0]
        return await self.submit_one(target_id, sink)

    async def submit_one(self, target_id: Any, sink: Optional[UiSink] = None) -> AttemptResult:
        """Run one submission; rejected with a notice if the target is busy."""
        if not self.registry.acquire(target_id):
            return self._reject(target_id)
        try:
            descriptor = OperationDescriptor(
                id=target_id,
                params={"file_id": target_id},
                invoke=self._invoke_submit,
            )
            self._retries[target_id] = RetryCoordinator(descriptor)

            orchestrator = SubmissionOrchestrator(
                target_id, classifier=self.classifier, estimator=self.estimator,
            )
            self._orchestrators[target_id] = orchestrator
            self._attach_sinks(orchestrator, target_id, sink)
            return await orchestrator.run(descriptor)
        finally:
            self.registry.release(target_id)

    async def submit_bulk(
        self,
        target_ids: Iterable[Any],
        labels: Optional[Mapping[Any, str]] = None,
    ) -> BulkSummary:
        """Submit every id independently and fold the results."""
        labels = dict(labels or {})

        async def submit_item(target_id: Any) -> Union[AttemptResult, OperationOutcome]:
            result = await self.submit_one(target_id)
            if result.rejected:
                error = self.classifier.normalize({"code": "IN_FLIGHT", "message": result.notice})
                return OperationOutcome(target_id, False, error, labels.get(target_id))
            if result.state == SequencerState.CANCELLED:
                error = self.classifier.normalize({"code": "CANCELLED", "message": "Submission cancelled"})
                return OperationOutcome(target_id, False, error, labels.get(target_id))
            return self.aggregator.outcome_for(target_id, result, labels.get(target_id))

        return await self.aggregator.submit_bulk(target_ids, submit_item, labels, operation_name="submit")

    async def submit_batch(self, file_ids: Iterable[Any], sink: Optional[UiSink] = None) -> AttemptResult:
        """
        Hand several files to the server-side bulk submission as one attempt.

        The attempt is tracked under a generated batch id, which the caller
        uses for progress, cancel and retry. Rejected if the batch or any of
        its files is already being submitted.
        """
        ids = tuple(dict.fromkeys(file_ids))
        if not ids:
            raise ValueError("A batch submission needs at least one file id")

        batch_id = f"batch-{uuid.uuid4().hex[:12]}"
        lock_keys = (batch_id,) + ids
        busy = self._acquire_all(lock_keys)
        if busy is not None:
            return self._reject(busy)
        try:
            descriptor = OperationDescriptor(
                id=batch_id,
                params={"file_ids": list(ids)},
                invoke=self._invoke_batch,
            )
            self._retries[batch_id] = RetryCoordinator(descriptor)
            self._batches[batch_id] = ids

            orchestrator = SubmissionOrchestrator(
                batch_id, classifier=self.classifier, estimator=self.estimator,
            )
            self._orchestrators[batch_id] = orchestrator
            self._attach_sinks(orchestrator, batch_id, sink)
            return await orchestrator.run(descriptor)
        finally:
            self._release_all(lock_keys)

    def batch_files(self, batch_id: Any) -> Optional[Tuple[Any, ...]]:
        return self._batches.get(batch_id)

    async def retry(self, target_id: Any, sink: Optional[UiSink] = None) -> AttemptResult:
        """
        Replay the last submission of `target_id` (a file or a batch id).

        Raises:
            UnknownTargetError: If the target was never submitted
        """
        coordinator = self._retries.get(target_id)
        orchestrator = self._orchestrators.get(target_id)
        if coordinator is None or orchestrator is None:
            raise UnknownTargetError(target_id)
        lock_keys = (target_id,) + self._batches.get(target_id, ())
        busy = self._acquire_all(lock_keys)
        if busy is not None:
            return self._reject(busy)
        try:
            sinks = [self.board.sink_for(target_id)]
            if sink is not None:
                sinks.append(sink)
            return await coordinator.retry(orchestrator, *sinks)
        finally:
            self._release_all(lock_keys)

    def cancel(self, target_id: Any) -> bool:
        """Advisory cancel of the running attempt; False if none is running."""
        orchestrator = self._orchestrators.get(target_id)
        if orchestrator is None or not self.registry.is_locked(target_id):
            return False
        return orchestrator.cancel()

    def progress(self, target_id: Any) -> Optional[Dict[str, Any]]:
        return self.board.snapshot(target_id)

    def state_of(self, target_id: Any) -> Optional[SequencerState]:
        orchestrator = self._orchestrators.get(target_id)
        return orchestrator.state if orchestrator else None

    async def delete_file(self, file_id: Any, label: Optional[str] = None) -> OperationOutcome:
        try:
            response = await self.client.delete_file(file_id)
        except Exception as e:
            logger.warning(f"Delete of {file_id} failed: {e}")
            return OperationOutcome(file_id, False, self.classifier.normalize(e), label)

        outcome = self.aggregator.outcome_for(file_id, response, label)
        if outcome.success:
            self._forget(file_id)
        return outcome

    async def delete_files(
        self,
        file_ids: Iterable[Any],
        labels: Optional[Mapping[Any, str]] = None,
    ) -> BulkSummary:
        ids = list(dict.fromkeys(file_ids))
        try:
            response: Any = await self.client.delete_files(ids)
        except Exception as e:
            logger.warning(f"Bulk delete of {len(ids)} file(s) failed: {e}")
            response = e

        summary = self.aggregator.fold_bulk_delete(ids, response, dict(labels or {}))
        for outcome in summary.outcomes:
            if outcome.success:
                self._forget(outcome.id)
        return summary

    async def _invoke_submit(self, params: Mapping[str, Any], on_stage: StageCallback) -> Dict[str, Any]:
        return await self.client.submit_single(params["file_id"], on_stage)

    async def _invoke_batch(self, params: Mapping[str, Any], on_stage: StageCallback) -> Dict[str, Any]:
        return await self.client.bulk_submit_files(list(params["file_ids"]), on_stage)

    def _acquire_all(self, keys: Tuple[Any, ...]) -> Optional[Any]:
        """Take every lock or none; returns the first busy key on failure."""
        taken: List[Any] = []
        for key in keys:
            if not self.registry.acquire(key):
                for held in taken:
                    self.registry.release(held)
                return key
            taken.append(key)
        return None

    def _release_all(self, keys: Tuple[Any, ...]) -> None:
        for key in keys:
            self.registry.release(key)

    def _attach_sinks(self, orchestrator: SubmissionOrchestrator, target_id: Any, sink: Optional[UiSink]) -> None:
        orchestrator.attach(self.board.sink_for(target_id))
        if sink is not None:
            orchestrator.attach(sink)

    def _reject(self, target_id: Any) -> AttemptResult:
        result = AttemptResult.in_flight(target_id)
        submission_logger.attempt_rejected(target_id, result.notice)
        return result

    def _forget(self, target_id: Any) -> None:
        self._orchestrators.pop(target_id, None)
        self._retries.pop(target_id, None)
        self._batches.pop(target_id, None)
        self.board.forget(target_id)
