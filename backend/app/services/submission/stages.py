"""
Submission Stage Sequencer

State machine over the stages of one submission attempt:

    Idle -> Validating -> Processing -> CheckingDuplicates -> Submitting -> Done

with terminal states Failed and Cancelled.

Stage events may arrive out of order or be retransmitted. Progression is
decided by the canonical stage order (validate < process < duplicates <
submit < done), never by arrival time. An event carrying an error moves the
attempt to Failed regardless of its stage value.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.services.logging import submission_logger
from app.services.submission.errors import ErrorClassifier, NormalizedError, error_classifier

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Named phases of the submission lifecycle, in canonical order."""
    VALIDATE = "validate"
    PROCESS = "process"
    DUPLICATES = "duplicates"
    SUBMIT = "submit"
    DONE = "done"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)

    def at_least(self, other: "Stage") -> bool:
        """True when this stage is as advanced as `other` or more."""
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> Optional["Stage"]:
        """Parse a wire stage name; unknown names yield None."""
        if isinstance(value, Stage):
            return value
        if not isinstance(value, str):
            return None
        name = value.strip().lower()
        name = STAGE_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            return None


STAGE_ORDER = (Stage.VALIDATE, Stage.PROCESS, Stage.DUPLICATES, Stage.SUBMIT, Stage.DONE)

# Stage names used by the bulk submit flow
STAGE_ALIASES: Dict[str, str] = {
    "prepare": Stage.PROCESS.value,
    "response": Stage.DONE.value,
}


class SequencerState(str, Enum):
    """States of one submission attempt."""
    IDLE = "idle"
    VALIDATING = "validating"
    PROCESSING = "processing"
    CHECKING_DUPLICATES = "checking_duplicates"
    SUBMITTING = "submitting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


STATE_FOR_STAGE: Dict[Stage, SequencerState] = {
    Stage.VALIDATE: SequencerState.VALIDATING,
    Stage.PROCESS: SequencerState.PROCESSING,
    Stage.DUPLICATES: SequencerState.CHECKING_DUPLICATES,
    Stage.SUBMIT: SequencerState.SUBMITTING,
    Stage.DONE: SequencerState.DONE,
}

TERMINAL_STATES = frozenset({SequencerState.DONE, SequencerState.FAILED, SequencerState.CANCELLED})


def _clamp_progress(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0, min(100, int(value)))


@dataclass(frozen=True)
class StageEvent:
    """One progress notification emitted by the submission client."""
    stage: Optional[Stage]
    message: str = ""
    progress: Optional[int] = None
    eta_millis: Optional[float] = None
    error: Any = None
    real_time_info: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StageEvent":
        """Build an event from the camelCase `on_stage` callback payload."""
        eta = payload.get("etaMillis", payload.get("eta"))
        return cls(
            stage=Stage.parse(payload.get("stage")),
            message=str(payload.get("message") or ""),
            progress=_clamp_progress(payload.get("progress")),
            eta_millis=float(eta) if isinstance(eta, (int, float)) and not isinstance(eta, bool) else None,
            error=payload.get("error") or None,
            real_time_info=payload.get("realTimeInfo"),
        )


StateListener = Callable[[SequencerState, Optional[StageEvent]], None]


class StageSequencer:
    """
    Tracks the stage of a single submission attempt.

    Errors are normalized through the ErrorClassifier and accepted events are
    forwarded to the ProgressReporter, when one is attached.
    """

    def __init__(
        self,
        target_id: Any = None,
        classifier: Optional[ErrorClassifier] = None,
        reporter: Optional[Any] = None,
    ):
        self.target_id = target_id
        self.classifier = classifier or error_classifier
        self.reporter = reporter
        self._listeners: List[StateListener] = []
        self._state = SequencerState.IDLE
        self._stage: Optional[Stage] = None
        self._last_event: Optional[StageEvent] = None
        self._error: Optional[NormalizedError] = None

    @property
    def state(self) -> SequencerState:
        return self._state

    @property
    def stage(self) -> Optional[Stage]:
        return self._stage

    @property
    def error(self) -> Optional[NormalizedError]:
        return self._error

    @property
    def last_event(self) -> Optional[StageEvent]:
        return self._last_event

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def transition(self, event: StageEvent) -> bool:
        """
        Apply one stage event.

        Returns True when the event was accepted, False when it was discarded
        (attempt already failed or cancelled, stage regression, retransmission,
        or unknown stage).
        """
        if self._state in (SequencerState.FAILED, SequencerState.CANCELLED):
            logger.debug("Discarding stage event for %s in state %s", self.target_id, self._state.value)
            return False

        if event.error is not None:
            self._error = self.classifier.normalize(event.error)
            self._last_event = event
            self._set_state(SequencerState.FAILED, event)
            return True

        stage = event.stage
        if stage is None:
            logger.debug("Ignoring stage event without a known stage for %s", self.target_id)
            return False

        if self._stage is not None and not stage.at_least(self._stage):
            logger.debug(
                "Ignoring out-of-order stage %s for %s (current %s)",
                stage.value, self.target_id, self._stage.value,
            )
            return False

        if event == self._last_event:
            return False

        self._stage = stage
        self._last_event = event
        if self.reporter is not None:
            self.reporter.update(stage, event)
        self._set_state(STATE_FOR_STAGE[stage], event)
        return True

    def cancel(self) -> bool:
        """Move to Cancelled unless the attempt already ended."""
        if self.is_terminal:
            return False
        self._set_state(SequencerState.CANCELLED, None)
        return True

    def reset(self) -> None:
        """Return to Idle before a retry and clear ETA history."""
        self._stage = None
        self._last_event = None
        self._error = None
        if self.reporter is not None:
            self.reporter.reset()
        self._set_state(SequencerState.IDLE, None)

    def _set_state(self, state: SequencerState, event: Optional[StageEvent]) -> None:
        changed = state != self._state
        self._state = state
        if changed:
            submission_logger.stage_changed(
                target_id=self.target_id,
                state=state.value,
                stage=self._stage.value if self._stage else None,
                progress=event.progress if event else None,
            )
        for listener in list(self._listeners):
            listener(state, event)
