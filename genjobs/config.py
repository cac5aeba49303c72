"""Application configuration using Pydantic Settings."""

from typing import Dict, List

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Cap of the exponential wait between provider attempts
PROVIDER_MAX_BACKOFF = 10.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./genjobs.db"

    # Generation providers
    PRIMARY_PROVIDER_URL: str = "http://localhost:9001"
    PRIMARY_PROVIDER_API_KEY: str = ""
    FALLBACK_PROVIDER_URL: str = "http://localhost:9002"
    FALLBACK_PROVIDER_API_KEY: str = ""
    PROVIDER_TIMEOUT: float = 120.0
    PROVIDER_MAX_ATTEMPTS: int = 3

    # Planner (OpenRouter)
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    PLANNER_MODEL: str = "google/gemini-2.5-pro"
    PLANNER_TIMEOUT: float = 120.0
    PLANNER_MAX_RETRIES: int = 3
    PLANNER_RETRY_DELAY: float = 1.0
    SITE_URL: str = ""
    SITE_NAME: str = "genjobs"
    IMG2IMG_MODELS: List[str] = ["fal-ai/flux-kontext", "openai/gpt-image-1"]

    # Pipelines
    MAX_QUALITY_RETRIES: int = 3
    COMPLETENESS_FAILURE_POLICY: str = "skip"  # 'skip' or 'fail'
    MAX_ASSET_EDGE: int = 1536

    # Watchdog
    WATCHDOG_ENABLED: bool = True
    WATCHDOG_INTERVAL: int = 10
    WATCHDOG_LOCK_TTL: int = 60
    MAX_WATCHDOG_RETRIES: int = 3
    # Must exceed the longest a single step may legitimately run, or recovery
    # re-runs live work and the live result is dropped
    STALE_COMPOSITE_SECONDS: int = 600
    STALE_AGENT_SECONDS: int = 900
    STALE_REFRAME_SECONDS: int = 600
    STALE_BATCH_REFINE_SECONDS: int = 600

    # Dispatch
    DISPATCH_MODE: str = "thread"  # 'thread' or 'http'
    DISPATCH_BASE_URL: str = "http://localhost:8000"
    DISPATCH_TIMEOUT: float = 5.0

    # Blob storage
    BLOB_ROOT: str = "./data/blobs"
    BLOB_URL_PREFIX: str = "blob://"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    def provider_step_budget(self) -> float:
        """Worst case for one provider call: every attempt times out, plus backoff."""
        return self.PROVIDER_TIMEOUT * self.PROVIDER_MAX_ATTEMPTS + PROVIDER_MAX_BACKOFF * (self.PROVIDER_MAX_ATTEMPTS - 1)

    def planner_step_budget(self) -> float:
        """Worst case for one planner call with its fixed-delay retries."""
        return self.PLANNER_TIMEOUT * self.PLANNER_MAX_RETRIES + self.PLANNER_RETRY_DELAY * (self.PLANNER_MAX_RETRIES - 1)

    def step_budgets(self) -> Dict[str, float]:
        """Longest single step per stale threshold setting."""
        provider = self.provider_step_budget()
        return {
            "STALE_COMPOSITE_SECONDS": provider,
            # A planner turn may run one inline provider tool
            "STALE_AGENT_SECONDS": self.planner_step_budget() + provider,
            "STALE_REFRAME_SECONDS": provider,
            "STALE_BATCH_REFINE_SECONDS": provider,
        }

    @model_validator(mode="after")
    def check_stale_thresholds(self):
        for name, budget in self.step_budgets().items():
            threshold = getattr(self, name)
            if threshold <= budget:
                raise ValueError(
                    f"{name}={threshold} must exceed the worst-case step duration of {budget:.0f}s"
                )
        return self


# Global settings instance
settings = Settings()
