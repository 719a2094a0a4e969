"""Sync kernel data models."""

from sync_kernel.models.config import (
    DealValidationConfig,
    ExecutorConfig,
    FetchConfig,
    PlannerConfig,
    RateBudgetConfig,
    StandardizationConfig,
)
from sync_kernel.models.entities import (
    ChargeCategory,
    DesiredEntity,
    RemoteEntity,
    RemoteParent,
)
from sync_kernel.models.execution import ErrorKind, ExecutionResult
from sync_kernel.models.plan import (
    ActionPlan,
    ActionPlanItem,
    FetchFailure,
    PlanAction,
    PlanStatistics,
)
from sync_kernel.models.progress import ProgressEvent, ProgressEventType
from sync_kernel.models.rate import RateWindow
from sync_kernel.models.session import (
    FailureEntry,
    Session,
    SessionStatus,
    SessionSummary,
    Step,
    StepStatus,
)
from sync_kernel.models.validation import (
    AccountingQuote,
    CrmDeal,
    DealValidationResult,
    IssueSeverity,
    ValidationIssue,
    ValidationSummary,
)

__all__ = [
    "AccountingQuote",
    "ActionPlan",
    "ActionPlanItem",
    "ChargeCategory",
    "CrmDeal",
    "DealValidationConfig",
    "DealValidationResult",
    "DesiredEntity",
    "ErrorKind",
    "ExecutionResult",
    "ExecutorConfig",
    "FailureEntry",
    "FetchConfig",
    "FetchFailure",
    "IssueSeverity",
    "PlanAction",
    "PlanStatistics",
    "PlannerConfig",
    "ProgressEvent",
    "ProgressEventType",
    "RateBudgetConfig",
    "RateWindow",
    "RemoteEntity",
    "RemoteParent",
    "Session",
    "SessionStatus",
    "SessionSummary",
    "StandardizationConfig",
    "Step",
    "StepStatus",
    "ValidationIssue",
    "ValidationSummary",
]
