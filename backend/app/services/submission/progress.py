"""
Progress Reporter

Converts phase-local percentages into one 0-100 progress value and keeps an
ETA estimate for the remaining work.

Weight tables:
- File processing flow: upload 0-40%, parse 40-70%, validate 70-90%,
  complete 90-100%
- Submission flow: equal share per stage (validate, process, duplicates,
  submit, done)

ETA is an exponentially weighted moving average of per-stage durations seen
in earlier completed attempts of this session, seeded from configured
defaults. History is cleared on reset().
"""
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from app.core.config import settings


@dataclass(frozen=True)
class PhaseWeight:
    """Share of the overall progress bar owned by one phase."""
    phase: str
    start: float
    span: float

    @property
    def weight(self) -> float:
        return self.span / 100.0


FILE_PROCESSING_PHASES: Tuple[PhaseWeight, ...] = (
    PhaseWeight("upload", 0, 40),
    PhaseWeight("parse", 40, 30),
    PhaseWeight("validate", 70, 20),
    PhaseWeight("complete", 90, 10),
)


def equal_phases(names: Iterable[str]) -> Tuple[PhaseWeight, ...]:
    """Divide the bar equally across an ordered list of phases."""
    names = list(names)
    span = 100.0 / len(names)
    return tuple(PhaseWeight(name, index * span, span) for index, name in enumerate(names))


SUBMISSION_PHASES = equal_phases(["validate", "process", "duplicates", "submit", "done"])


def _phase_name(phase: Any) -> str:
    return getattr(phase, "value", phase)


@dataclass(frozen=True)
class ProgressFrame:
    """Payload handed to the progress sink."""
    percent: int
    label: str
    eta_millis: Optional[float] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percent": self.percent,
            "etaMillis": self.eta_millis,
            "label": self.label,
            "stage": self.stage,
        }


ProgressSink = Callable[[ProgressFrame], None]


class EtaEstimator:
    """Session-scoped EWMA of observed stage durations (milliseconds)."""

    def __init__(
        self,
        defaults: Optional[Dict[str, float]] = None,
        smoothing: Optional[float] = None,
    ):
        self.defaults = dict(settings.eta_default_stage_ms if defaults is None else defaults)
        self.smoothing = settings.ETA_SMOOTHING if smoothing is None else smoothing
        self._averages: Dict[str, float] = {}

    @property
    def has_history(self) -> bool:
        return bool(self._averages)

    def observe(self, stage: str, duration_ms: float) -> float:
        """Fold one observed duration into the average for `stage`."""
        previous = self._averages.get(stage, self.defaults.get(stage))
        if previous is None:
            average = duration_ms
        else:
            average = self.smoothing * duration_ms + (1 - self.smoothing) * previous
        self._averages[stage] = average
        return average

    def expected(self, stage: str) -> float:
        return self._averages.get(stage, self.defaults.get(stage, 0.0))

    def clear(self) -> None:
        self._averages.clear()


class ProgressReporter:
    """
    Keeps the overall progress of one attempt and notifies sinks.

    Progress never goes backwards between resets.
    """

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        phases: Tuple[PhaseWeight, ...] = SUBMISSION_PHASES,
        estimator: Optional[EtaEstimator] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._phases = {weight.phase: weight for weight in phases}
        self._order = [weight.phase for weight in phases]
        self.estimator = estimator or EtaEstimator()
        self._clock = clock
        self._sinks: List[ProgressSink] = [sink] if sink else []

        self._percent = 0
        self._label = ""
        self._eta_millis: Optional[float] = None
        self._stage: Optional[str] = None
        self._stage_started_at: Optional[float] = None
        self._durations: Dict[str, float] = {}
        self._zeroed = False

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def frame(self) -> ProgressFrame:
        return ProgressFrame(self._percent, self._label, self._eta_millis, self._stage)

    def subscribe(self, sink: ProgressSink) -> Callable[[], None]:
        """Register a sink; returns a function that removes it."""
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    def compute_overall(self, phase: Any, phase_percent: float) -> int:
        """baseOffset(phase) + phasePercent * weight(phase), floored to 0-100."""
        name = _phase_name(phase)
        if name not in self._phases:
            raise ValueError(f"Unknown progress phase: {name}")
        weight = self._phases[name]
        local = max(0.0, min(100.0, float(phase_percent)))
        return max(0, min(100, math.floor(weight.start + local * weight.weight)))

    def update(self, stage: Any, event: Any) -> ProgressFrame:
        """Apply an accepted stage event and notify sinks."""
        name = _phase_name(stage)
        now = self._clock()
        self._enter(name, now)

        progress = getattr(event, "progress", None)
        target = progress if progress is not None else self.compute_overall(name, 0)

        eta = getattr(event, "eta_millis", None)
        if eta is None:
            eta = self.estimate_remaining(name, now)

        label = getattr(event, "message", "") or self._label
        return self._emit(max(self._percent, int(target)), label, eta)

    def report_phase(self, phase: Any, phase_percent: float, label: str = "") -> ProgressFrame:
        """Report progress inside one phase of the weight table."""
        name = _phase_name(phase)
        now = self._clock()
        self._enter(name, now)
        overall = self.compute_overall(name, phase_percent)
        return self._emit(max(self._percent, overall), label or self._label, self.estimate_remaining(name, now))

    def estimate_remaining(self, stage: Any, now: Optional[float] = None) -> Optional[float]:
        """Remaining milliseconds: rest of the current stage plus all later stages."""
        name = _phase_name(stage)
        if name not in self._phases:
            return None
        now = self._clock() if now is None else now

        elapsed_ms = 0.0
        if self._stage == name and self._stage_started_at is not None:
            elapsed_ms = (now - self._stage_started_at) * 1000.0

        index = self._order.index(name)
        remaining = max(0.0, self.estimator.expected(name) - elapsed_ms)
        remaining += sum(self.estimator.expected(later) for later in self._order[index + 1:])
        return remaining if remaining > 0 else None

    def complete(self) -> None:
        """Commit this attempt's stage durations into the session history."""
        self._close_stage(self._clock())
        for stage, duration in self._durations.items():
            self.estimator.observe(stage, duration)
        self._durations.clear()
        self._stage_started_at = None

    def reset(self, label: str = "Retrying...") -> None:
        """
        Clear attempt state and ETA history.

        Emits a single 0% frame; a reset right after another reset emits
        nothing, so each retry produces exactly one zero.
        """
        self.estimator.clear()
        self._durations.clear()
        self._stage = None
        self._stage_started_at = None
        self._percent = 0
        self._eta_millis = None
        self._label = label
        if not self._zeroed:
            self._zeroed = True
            self._notify(self.frame)

    def _enter(self, name: str, now: float) -> None:
        if name != self._stage:
            self._close_stage(now)
            self._stage = name
            self._stage_started_at = now

    def _close_stage(self, now: float) -> None:
        if self._stage is None or self._stage_started_at is None:
            return
        elapsed_ms = (now - self._stage_started_at) * 1000.0
        self._durations[self._stage] = self._durations.get(self._stage, 0.0) + elapsed_ms
        self._stage_started_at = now

    def _emit(self, percent: int, label: str, eta_millis: Optional[float]) -> ProgressFrame:
        self._percent = max(0, min(100, percent))
        self._label = label
        self._eta_millis = eta_millis
        self._zeroed = False
        frame = self.frame
        self._notify(frame)
        return frame

    def _notify(self, frame: ProgressFrame) -> None:
        for sink in list(self._sinks):
            sink(frame)
