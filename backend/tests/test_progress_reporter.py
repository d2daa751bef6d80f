"""
Tests for the progress reporter and ETA estimator.

Tests cover:
- Weighted overall progress for both phase tables
- Monotonic progress between resets
- ETA from defaults, from history, and from the client
- Reset semantics (single zero frame, history cleared)
"""
import pytest

from app.core.config import Settings
from app.services.submission.progress import (
    FILE_PROCESSING_PHASES,
    EtaEstimator,
    ProgressReporter,
    equal_phases,
)
from app.services.submission.stages import Stage, StageEvent


DEFAULTS = {"validate": 800, "process": 1500, "duplicates": 900, "submit": 5000, "done": 500}


class FakeClock:
    """Monotonic clock driven by the test (seconds)."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, millis):
        self.now += millis / 1000.0


def _reporter(frames=None, clock=None, **kwargs):
    return ProgressReporter(
        sink=frames.append if frames is not None else None,
        estimator=EtaEstimator(defaults=DEFAULTS, smoothing=0.3),
        clock=clock or FakeClock(),
        **kwargs,
    )


class TestComputeOverall:
    """Tests for compute_overall()."""

    @pytest.mark.parametrize("phase,percent,expected", [
        ("upload", 0, 0),
        ("upload", 100, 40),
        ("parse", 50, 55),
        ("validate", 33, 76),
        ("complete", 100, 100),
    ])
    def test_file_processing_weights(self, phase, percent, expected):
        """Test the upload/parse/validate/complete table."""
        reporter = _reporter(phases=FILE_PROCESSING_PHASES)

        assert reporter.compute_overall(phase, percent) == expected

    @pytest.mark.parametrize("phase,percent,expected", [
        (Stage.VALIDATE, 0, 0),
        (Stage.SUBMIT, 50, 70),
        (Stage.DONE, 100, 100),
    ])
    def test_submission_weights(self, phase, percent, expected):
        """Test the equal-share submission table."""
        assert _reporter().compute_overall(phase, percent) == expected

    def test_phase_percent_is_clamped(self):
        """Test that local percentages outside 0-100 are clamped."""
        reporter = _reporter(phases=FILE_PROCESSING_PHASES)

        assert reporter.compute_overall("parse", 250) == 70
        assert reporter.compute_overall("parse", -5) == 40

    def test_unknown_phase(self):
        """Test that an unknown phase is rejected."""
        with pytest.raises(ValueError, match="Unknown progress phase"):
            _reporter().compute_overall("upload", 10)

    def test_equal_phases(self):
        """Test that equal_phases splits the bar evenly."""
        phases = equal_phases(["a", "b", "c", "d"])

        assert [phase.start for phase in phases] == [0, 25, 50, 75]
        assert all(phase.span == 25 for phase in phases)


class TestUpdate:
    """Tests for update() and report_phase()."""

    def test_event_progress_is_used(self):
        """Test that the client's progress value drives the bar."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "Fetching file details...", 10))

        assert frames[-1].percent == 10
        assert frames[-1].label == "Fetching file details..."
        assert frames[-1].stage == "validate"

    def test_stage_base_offset_without_progress(self):
        """Test the phase start is used when the event has no progress."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.DUPLICATES, StageEvent(Stage.DUPLICATES, "Checking duplicates"))

        assert frames[-1].percent == 40

    def test_progress_is_monotonic(self):
        """Test that a lower value never lowers the bar."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 85))
        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 70))
        reporter.report_phase(Stage.SUBMIT, 10)

        assert [frame.percent for frame in frames] == [85, 85, 85]

    def test_label_is_kept_when_event_has_none(self):
        """Test that an empty message keeps the previous label."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "Fetching file details...", 10))
        reporter.update(Stage.PROCESS, StageEvent(Stage.PROCESS, "", 35))

        assert frames[-1].label == "Fetching file details..."

    def test_subscribe_and_unsubscribe(self):
        """Test that extra sinks can be added and removed."""
        extra = []
        reporter = _reporter()
        unsubscribe = reporter.subscribe(extra.append)

        reporter.report_phase(Stage.VALIDATE, 50)
        unsubscribe()
        reporter.report_phase(Stage.VALIDATE, 100)

        assert len(extra) == 1


class TestEta:
    """Tests for ETA estimation."""

    def test_initial_eta_from_defaults(self):
        """Test that the first frame sums the default stage durations."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "Fetching", 10))

        assert frames[-1].eta_millis == 8700

    def test_eta_subtracts_elapsed_time(self):
        """Test that time spent in the current stage lowers the estimate."""
        clock = FakeClock()
        frames = []
        reporter = _reporter(frames, clock=clock)

        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 70))
        clock.advance(2000)
        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Still submitting", 80))

        assert frames[0].eta_millis == 5500
        assert frames[1].eta_millis == 3500

    def test_client_eta_wins(self):
        """Test that an ETA sent by the client is used as is."""
        frames = []
        reporter = _reporter(frames)

        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 70, eta_millis=1200))

        assert frames[-1].eta_millis == 1200

    def test_no_eta_when_nothing_remains(self):
        """Test that an exhausted estimate is reported as unknown."""
        clock = FakeClock()
        frames = []
        reporter = _reporter(frames, clock=clock)

        reporter.update(Stage.DONE, StageEvent(Stage.DONE, "Processing response", 90))
        clock.advance(1000)
        reporter.update(Stage.DONE, StageEvent(Stage.DONE, "Finishing", 98))

        assert frames[-1].eta_millis is None

    def test_complete_updates_history(self):
        """Test that completed durations are folded into the EWMA."""
        clock = FakeClock()
        reporter = _reporter(clock=clock)

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "v", 10))
        clock.advance(1000)
        reporter.update(Stage.PROCESS, StageEvent(Stage.PROCESS, "p", 35))
        clock.advance(1000)
        reporter.update(Stage.DONE, StageEvent(Stage.DONE, "d", 90))
        clock.advance(500)
        reporter.complete()

        estimator = reporter.estimator
        assert estimator.expected("validate") == pytest.approx(860)
        assert estimator.expected("process") == pytest.approx(1350)
        assert estimator.expected("done") == pytest.approx(500)
        assert estimator.expected("submit") == 5000
        assert estimator.has_history

    def test_history_shapes_next_attempt(self):
        """Test that a second reporter on the same estimator uses the history."""
        estimator = EtaEstimator(defaults=DEFAULTS, smoothing=0.3)
        estimator.observe("validate", 1800)
        frames = []
        reporter = ProgressReporter(sink=frames.append, estimator=estimator, clock=FakeClock())

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "v", 10))

        assert frames[-1].eta_millis == pytest.approx(1100 + 1500 + 900 + 5000 + 500)


class TestReset:
    """Tests for reset()."""

    def test_reset_emits_single_zero(self):
        """Test that consecutive resets emit one zero frame."""
        frames = []
        reporter = _reporter(frames)
        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 70))

        reporter.reset()
        reporter.reset()

        assert [frame.percent for frame in frames] == [70, 0]
        assert frames[-1].label == "Retrying..."
        assert reporter.percent == 0

    def test_reset_clears_history(self):
        """Test that ETA history goes back to the defaults."""
        clock = FakeClock()
        reporter = _reporter(clock=clock)
        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "v", 10))
        clock.advance(3000)
        reporter.complete()
        assert reporter.estimator.expected("validate") != 800

        reporter.reset()

        assert reporter.estimator.expected("validate") == 800
        assert not reporter.estimator.has_history

    def test_progress_restarts_after_reset(self):
        """Test that the bar can rise again from zero after a reset."""
        frames = []
        reporter = _reporter(frames)
        reporter.update(Stage.SUBMIT, StageEvent(Stage.SUBMIT, "Submitting", 70))
        reporter.reset()

        reporter.update(Stage.VALIDATE, StageEvent(Stage.VALIDATE, "Fetching", 10))

        assert frames[-1].percent == 10


class TestEtaEstimator:
    """Tests for the EWMA itself."""

    def test_first_observation_without_default(self):
        """Test that the first observation seeds the average."""
        estimator = EtaEstimator(defaults={}, smoothing=0.3)

        assert estimator.observe("submit", 100) == 100
        assert estimator.observe("submit", 200) == pytest.approx(130)

    def test_expected_without_history_or_default(self):
        """Test that an unknown stage is expected to take no time."""
        assert EtaEstimator(defaults={}, smoothing=0.3).expected("submit") == 0.0

    def test_defaults_from_settings(self):
        """Test parsing of the configured default durations."""
        settings = Settings(ETA_DEFAULT_STAGE_MS="validate=100, submit=2500,broken,done=x")

        assert settings.eta_default_stage_ms == {"validate": 100.0, "submit": 2500.0}
