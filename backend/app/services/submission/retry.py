"""
Retry Coordinator

A failed submission is retried by replaying an immutable descriptor of the
original request rather than a closure over live state.
"""
import copy
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from app.services.logging import submission_logger
from app.services.submission.orchestrator import AttemptResult, StageCallback, SubmissionOrchestrator, UiSink


Invoke = Callable[[Mapping[str, Any], StageCallback], Awaitable[Any]]


@dataclass(frozen=True)
class OperationDescriptor:
    """
    Retryable operation: `invoke(params, on_stage)`.

    `params` is deep-copied and made read-only at construction, so later
    changes to the caller's dict never leak into a replay.
    """
    id: Any
    params: Mapping[str, Any]
    invoke: Invoke

    def __post_init__(self):
        object.__setattr__(self, "params", MappingProxyType(copy.deepcopy(dict(self.params))))

    async def __call__(self, on_stage: StageCallback) -> Any:
        return await self.invoke(self.params, on_stage)


class RetryCoordinator:
    """
    Re-issues one descriptor on user request.

    Does not deduplicate: if the earlier attempt actually reached LHDN, the
    replay comes back as a DUPLICATE_SUBMISSION error.
    """

    def __init__(self, descriptor: OperationDescriptor):
        self.descriptor = descriptor
        self.retry_count = 0

    async def retry(self, orchestrator: SubmissionOrchestrator, *sinks: UiSink) -> AttemptResult:
        """
        Reset the orchestrator, re-subscribe the UI sinks and replay.

        The sinks are attached before the reset so they receive the single
        0% frame it emits.
        """
        self.retry_count += 1
        submission_logger.retry_started(self.descriptor.id, self.retry_count)

        orchestrator.detach_all()
        for sink in sinks:
            orchestrator.attach(sink)
        orchestrator.reset()

        return await orchestrator.run(self.descriptor)
