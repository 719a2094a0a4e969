"""
Process settings, read from `SYNC_KERNEL_*` environment variables or `.env`.

Component configs (`RateBudgetConfig`, `FetchConfig`, ...) stay plain
pydantic models; these settings only derive them.
"""

import logging
from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from sync_kernel.models.config import (
    DealValidationConfig,
    ExecutorConfig,
    FetchConfig,
    RateBudgetConfig,
    StandardizationConfig,
)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SYNC_KERNEL_",
        extra="ignore",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Remote endpoints
    accounting_base_url: str = "https://api.xero.com"
    crm_base_url: str = "https://api.pipedrive.com/api/v2"
    crm_api_key: Optional[SecretStr] = None
    # Static bearer token for local runs; production wires a token provider instead
    access_token: Optional[SecretStr] = None
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # Rate budget
    minute_limit: int = Field(default=60, ge=1)
    minute_headroom: int = Field(default=2, ge=0)
    day_limit: int = Field(default=5000, ge=1)

    # Fetch / execute
    page_size: int = Field(default=100, ge=1)
    max_pages: int = Field(default=50, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=10)
    parent_concurrency: int = Field(default=5, ge=1, le=20)
    max_parents_per_run: int = Field(default=150, ge=1)
    default_currency: str = "USD"

    # Standardization template
    required_tasks: List[str] = ["Manhour", "Overtime", "Supply Labour", "Transport"]

    # Deal validation
    quote_id_field: str = "quote_id"
    quote_number_field: str = "quote_number"
    value_tolerance_percentage: float = Field(default=5.0, ge=0)

    session_db_path: str = ":memory:"
    log_level: str = "INFO"

    def rate_budget_config(self) -> RateBudgetConfig:
        return RateBudgetConfig(
            advertised_minute_limit=self.minute_limit,
            minute_headroom=self.minute_headroom,
            day_limit=self.day_limit,
        )

    def fetch_config(self) -> FetchConfig:
        return FetchConfig(
            page_size=self.page_size,
            max_pages=self.max_pages,
            max_attempts=self.max_attempts,
            parent_concurrency=self.parent_concurrency,
        )

    def executor_config(self, dry_run: bool = False) -> ExecutorConfig:
        return ExecutorConfig(
            max_attempts=self.max_attempts,
            parent_concurrency=self.parent_concurrency,
            max_parents_per_run=self.max_parents_per_run,
            dry_run=dry_run,
            default_currency=self.default_currency,
        )

    def standardization_config(self) -> StandardizationConfig:
        return StandardizationConfig(
            required_tasks=self.required_tasks,
            currency=self.default_currency,
        )

    def deal_validation_config(self) -> DealValidationConfig:
        return DealValidationConfig(
            quote_id_field=self.quote_id_field,
            quote_number_field=self.quote_number_field,
            value_tolerance_percentage=self.value_tolerance_percentage,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
