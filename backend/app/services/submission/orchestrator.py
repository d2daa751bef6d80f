"""
Submission Orchestrator

One orchestrator drives one submission of one target: it owns the
StageSequencer and ProgressReporter of that submission, feeds them the
client's stage events and folds the completion payload into an
AttemptResult. The UI subscribes through a sink instead of reading shared
state.

Outcomes:
- completion {success: true}           -> Done
- completion {success: false} / raise  -> Failed with a classified error
- SubmissionCancelled from the client  -> Cancelled
- task cancelled (bulk item timeout)   -> Failed (TIMEOUT), then re-raised
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from app.integrations.outbound.client import SubmissionCancelled
from app.services.logging import submission_logger
from app.services.submission.errors import ErrorClassifier, NormalizedError, error_classifier
from app.services.submission.progress import EtaEstimator, ProgressFrame, ProgressReporter
from app.services.submission.stages import SequencerState, Stage, StageEvent, StageSequencer

logger = logging.getLogger(__name__)


StageCallback = Callable[[Dict[str, Any]], None]
AttemptInvoker = Callable[[StageCallback], Awaitable[Any]]


class SubmissionClient(Protocol):
    """Network collaborator that performs the actual submission."""

    async def submit_single(self, file_id: Any, on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        ...

    async def bulk_submit_files(self, file_ids: List[Any], on_stage: Optional[StageCallback] = None) -> Dict[str, Any]:
        ...

    async def delete_file(self, file_id: Any) -> Dict[str, Any]:
        ...

    async def delete_files(self, file_ids: List[Any]) -> Dict[str, Any]:
        ...


class UiSink(Protocol):
    """Presentation layer; the only shape the UI must accept."""

    def render(
        self,
        stage_key: str,
        label: str,
        percentage: int,
        eta_seconds: Optional[int],
        error_panel: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


def eta_seconds(eta_millis: Optional[float]) -> Optional[int]:
    """Whole seconds for display, never below 1 while work remains."""
    if eta_millis is None:
        return None
    return max(1, round(eta_millis / 1000))


@dataclass(frozen=True)
class CompletionResult:
    """Parsed completion contract returned by the submission client."""
    success: bool
    accepted_documents: Tuple[Any, ...] = ()
    rejected_documents: Tuple[Any, ...] = ()
    error: Any = None
    submission_uid: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "CompletionResult":
        if not isinstance(payload, dict):
            return cls(success=bool(payload), error=None if payload else "Submission failed")
        return cls(
            success=bool(payload.get("success")),
            accepted_documents=tuple(payload.get("acceptedDocuments") or ()),
            rejected_documents=tuple(payload.get("rejectedDocuments") or ()),
            error=payload.get("error"),
            submission_uid=payload.get("submissionUid"),
            message=payload.get("message"),
        )

    @property
    def fully_rejected(self) -> bool:
        """LHDN answered but rejected every document."""
        return bool(self.rejected_documents) and not self.accepted_documents


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one submission attempt as surfaced to the caller."""
    target_id: Any
    state: Optional[SequencerState]
    success: bool
    accepted_documents: Tuple[Any, ...] = ()
    rejected_documents: Tuple[Any, ...] = ()
    error: Optional[NormalizedError] = None
    notice: Optional[str] = None
    submission_uid: Optional[str] = None
    message: Optional[str] = None

    @property
    def retry_available(self) -> bool:
        return self.state in (SequencerState.FAILED, SequencerState.CANCELLED)

    @property
    def rejected(self) -> bool:
        """Never started because another attempt held the target."""
        return self.state is None and self.notice is not None

    @classmethod
    def in_flight(cls, target_id: Any) -> "AttemptResult":
        return cls(
            target_id=target_id,
            state=None,
            success=False,
            notice=f"A submission for {target_id} is already in progress. Please wait for it to finish.",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetId": self.target_id,
            "state": self.state.value if self.state else None,
            "success": self.success,
            "acceptedDocuments": list(self.accepted_documents),
            "rejectedDocuments": list(self.rejected_documents),
            "error": self.error.to_dict() if self.error else None,
            "notice": self.notice,
            "retryAvailable": self.retry_available,
            "submissionUid": self.submission_uid,
            "message": self.message,
        }


class SubmissionOrchestrator:
    """
    Owns the state of one target's submission.

    Retries reuse the same orchestrator after StageSequencer.reset().
    """

    def __init__(
        self,
        target_id: Any,
        classifier: Optional[ErrorClassifier] = None,
        estimator: Optional[EtaEstimator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target_id = target_id
        self.classifier = classifier or error_classifier
        self.reporter = ProgressReporter(estimator=estimator, clock=clock)
        self.sequencer = StageSequencer(target_id, classifier=self.classifier, reporter=self.reporter)
        self.sequencer.subscribe(self._log_terminal_state)
        self._completion: Optional[CompletionResult] = None
        self._detachers: List[Callable[[], None]] = []

    @property
    def state(self) -> SequencerState:
        return self.sequencer.state

    @property
    def frame(self) -> ProgressFrame:
        return self.reporter.frame

    def attach(self, sink: UiSink) -> None:
        """Subscribe a UI sink to progress frames and terminal states."""
        def on_frame(frame: ProgressFrame) -> None:
            sink.render(
                frame.stage or SequencerState.IDLE.value,
                frame.label,
                frame.percent,
                eta_seconds(frame.eta_millis),
            )

        def on_state(state: SequencerState, event: Optional[StageEvent]) -> None:
            stage_key = self.sequencer.stage.value if self.sequencer.stage else Stage.VALIDATE.value
            if state == SequencerState.FAILED and self.sequencer.error is not None:
                error = self.sequencer.error
                sink.render(
                    stage_key,
                    self.classifier.profile_for(error.category).title,
                    self.reporter.percent,
                    None,
                    self.classifier.error_panel(error),
                )
            elif state == SequencerState.CANCELLED:
                sink.render(stage_key, "Submission cancelled", self.reporter.percent, None)

        self._detachers.append(self.reporter.subscribe(on_frame))
        self._detachers.append(self.sequencer.subscribe(on_state))

    def detach_all(self) -> None:
        for detach in self._detachers:
            detach()
        self._detachers.clear()

    def on_stage(self, payload: Any) -> None:
        """Stage callback handed to the submission client."""
        event = payload if isinstance(payload, StageEvent) else StageEvent.from_payload(payload or {})
        self.sequencer.transition(event)

    def cancel(self) -> bool:
        """Advisory cancel; the in-flight request is not aborted."""
        return self.sequencer.cancel()

    def reset(self) -> None:
        self._completion = None
        self.sequencer.reset()

    async def run(self, invoke: AttemptInvoker) -> AttemptResult:
        """Run one attempt to a terminal state; never raises for client errors."""
        try:
            payload = await invoke(self.on_stage)
        except SubmissionCancelled:
            self.sequencer.cancel()
            return self.result()
        except asyncio.CancelledError:
            # Timed out or aborted by the caller; leave a retryable failure behind
            self.fail({"code": "TIMEOUT", "message": "Submission did not complete in time"})
            raise
        except Exception as e:
            logger.warning(f"Submission attempt for {self.target_id} raised: {e}")
            return self.fail(e)
        return self.complete(payload)

    def complete(self, payload: Any) -> AttemptResult:
        """Fold the completion payload into the attempt state."""
        if self.sequencer.state in (SequencerState.FAILED, SequencerState.CANCELLED):
            return self.result()

        completion = CompletionResult.from_payload(payload)
        self._completion = completion
        if not completion.success:
            return self.fail(completion.error or payload)
        if completion.fully_rejected:
            return self.fail(payload)

        self.sequencer.transition(StageEvent(Stage.DONE, message="Submission completed", progress=100))
        self.reporter.complete()
        submission_logger.submission_completed(
            target_id=self.target_id,
            accepted_count=len(completion.accepted_documents),
            rejected_count=len(completion.rejected_documents),
        )
        return self.result()

    def fail(self, raw_error: Any) -> AttemptResult:
        self.sequencer.transition(StageEvent(stage=None, error=raw_error or "Submission failed"))
        return self.result()

    def result(self) -> AttemptResult:
        completion = self._completion
        return AttemptResult(
            target_id=self.target_id,
            state=self.sequencer.state,
            success=self.sequencer.state == SequencerState.DONE,
            accepted_documents=completion.accepted_documents if completion else (),
            rejected_documents=completion.rejected_documents if completion else (),
            error=self.sequencer.error,
            submission_uid=completion.submission_uid if completion else None,
            message=completion.message if completion else None,
        )

    def _log_terminal_state(self, state: SequencerState, event: Optional[StageEvent]) -> None:
        if state == SequencerState.FAILED and self.sequencer.error is not None:
            error = self.sequencer.error
            submission_logger.submission_failed(
                target_id=self.target_id,
                category=error.category.value,
                error_code=error.error_code,
                error_message=error.original_message,
            )
        elif state == SequencerState.CANCELLED:
            submission_logger.submission_cancelled(self.target_id)
