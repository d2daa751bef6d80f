from functools import lru_cache

from app.integrations.outbound.client import get_outbound_client
from app.services.submission.service import SubmissionService


# =============================================================================
# Submission service: one per process, shared by all requests
# =============================================================================

@lru_cache()
def get_submission_service() -> SubmissionService:
    """
    Session-scoped submission service.

    Holds the in-flight locks, ETA history and retry descriptors, so it must
    be shared across requests. Tests override this dependency.
    """
    return SubmissionService(client=get_outbound_client())


async def close_submission_service() -> None:
    """Close the outbound HTTP client if the service was ever created."""
    if get_submission_service.cache_info().currsize:
        await get_submission_service().client.close()
        get_submission_service.cache_clear()
