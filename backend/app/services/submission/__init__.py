# Submission orchestration services
from app.services.submission.errors import ErrorCategory, ErrorClassifier, NormalizedError, error_classifier
from app.services.submission.stages import SequencerState, Stage, StageEvent, StageSequencer
from app.services.submission.progress import EtaEstimator, ProgressFrame, ProgressReporter
from app.services.submission.bulk import BulkOperationAggregator, BulkStatus, BulkSummary, OperationOutcome
from app.services.submission.locks import InFlightRegistry
from app.services.submission.orchestrator import AttemptResult, SubmissionOrchestrator
from app.services.submission.retry import OperationDescriptor, RetryCoordinator
from app.services.submission.service import SubmissionRequest, SubmissionService, UnknownTargetError

__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
    "NormalizedError",
    "error_classifier",
    "SequencerState",
    "Stage",
    "StageEvent",
    "StageSequencer",
    "EtaEstimator",
    "ProgressFrame",
    "ProgressReporter",
    "BulkOperationAggregator",
    "BulkStatus",
    "BulkSummary",
    "OperationOutcome",
    "InFlightRegistry",
    "AttemptResult",
    "SubmissionOrchestrator",
    "OperationDescriptor",
    "RetryCoordinator",
    "SubmissionRequest",
    "SubmissionService",
    "UnknownTargetError",
]
