from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "E-Invoice Submission Orchestrator"
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS string into a list of origins."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Outbound files API (the service that talks to LHDN MyInvois on our behalf)
    SUBMISSION_API_URL: str = "http://localhost:3000/api/outbound-files-manual"
    SUBMISSION_API_TOKEN: Optional[str] = None

    # Timeouts (seconds) per outbound call type
    SUBMIT_TIMEOUT_SECONDS: float = 120.0
    METADATA_TIMEOUT_SECONDS: float = 20.0
    PREPARE_TIMEOUT_SECONDS: float = 60.0
    DUPLICATE_CHECK_TIMEOUT_SECONDS: float = 30.0
    BULK_SUBMIT_TIMEOUT_SECONDS: float = 30.0

    # Client-side throttle: minimum gap between outbound calls (~85 RPM)
    THROTTLE_GAP_MS: int = 700

    # Application-level retry for transient errors (429/5xx/timeout)
    RETRY_ATTEMPTS: int = 1
    RETRY_BASE_DELAY_MS: int = 2000
    BULK_SUBMIT_RETRY_BASE_DELAY_MS: int = 1500

    # Delay before checking whether a submit that lost its connection landed anyway
    SUBMIT_VERIFY_DELAY_MS: int = 4000

    # LHDN accepts at most 100 documents per submission batch
    MAX_DOCUMENTS_PER_SUBMISSION: int = 100

    # Bulk operations
    BULK_MAX_CONCURRENCY: int = 3
    BULK_ITEM_TIMEOUT_SECONDS: float = 150.0

    # ETA estimation
    ETA_SMOOTHING: float = 0.3
    # Comma-separated stage=millis pairs used before any attempt has completed
    ETA_DEFAULT_STAGE_MS: str = "validate=800,process=1500,duplicates=900,submit=5000,done=500"

    @property
    def eta_default_stage_ms(self) -> Dict[str, float]:
        """Parse ETA_DEFAULT_STAGE_MS into a stage -> millis mapping."""
        defaults: Dict[str, float] = {}
        for pair in self.ETA_DEFAULT_STAGE_MS.split(","):
            if "=" not in pair:
                continue
            stage, _, millis = pair.partition("=")
            try:
                defaults[stage.strip()] = float(millis)
            except ValueError:
                continue
        return defaults

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
