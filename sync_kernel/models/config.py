"""Component configuration for the rate budget, fetcher, planner and executor."""

from typing import List

from pydantic import BaseModel, Field


class RateBudgetConfig(BaseModel):
    """Per-tenant quotas. The minute limit keeps headroom below the advertised one."""

    advertised_minute_limit: int = 60
    minute_headroom: int = 2
    day_limit: int = 5000
    minute_window_seconds: float = 60.0
    day_window_seconds: float = 86400.0

    @property
    def minute_limit(self) -> int:
        return max(1, self.advertised_minute_limit - self.minute_headroom)


class FetchConfig(BaseModel):
    """Configuration for the Remote State Fetcher."""

    page_size: int = 100
    max_pages: int = 50                     # Hard ceiling against unstable pagination
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0       # Linear: base * attempt
    parent_concurrency: int = Field(default=5, ge=1)
    parent_status: str = "INPROGRESS"


class PlannerConfig(BaseModel):
    create_only: bool = False               # Existing entities are left as they are


class ExecutorConfig(BaseModel):
    """Configuration for the Idempotent Executor."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0       # Exponential: base * 2**(attempt-1)
    parent_concurrency: int = Field(default=5, ge=1)
    max_parents_per_run: int = 150
    dry_run: bool = False
    default_currency: str = "USD"


class StandardizationConfig(BaseModel):
    """Template for the required task set every active project should carry."""

    required_tasks: List[str] = ["Manhour", "Overtime", "Supply Labour", "Transport"]
    currency: str = "USD"
    rate_minor_units: int = 100
    duration_minutes: int = 1
    category: str = "FIXED"


class DealValidationConfig(BaseModel):
    quote_id_field: str = "quote_id"        # CRM custom field holding the quote reference
    quote_number_field: str = "quote_number"
    value_tolerance_percentage: float = 5.0
    pipeline_id: int = 0                    # 0 = all pipelines
