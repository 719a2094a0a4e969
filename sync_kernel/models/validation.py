"""CRM deals, accounting quotes and the issues found when comparing them."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class CrmDeal(BaseModel):
    """A won deal from the CRM, normalized at the fetch boundary."""

    deal_id: str
    title: str
    value_minor_units: int
    currency: str = "SGD"
    pipeline_id: int = 0
    won_time: Optional[str] = None
    quote_id: Optional[str] = None
    quote_number: Optional[str] = None


class AccountingQuote(BaseModel):
    quote_id: str
    quote_number: str
    status: str
    total_minor_units: int
    currency: Optional[str] = None
    reference: Optional[str] = None
    title: Optional[str] = None


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    code: str                               # e.g. "missing_quote_id"
    severity: IssueSeverity
    deal_id: str
    deal_title: str
    message: str


class DealValidationResult(BaseModel):
    deal: CrmDeal
    quote: Optional[AccountingQuote] = None
    issues: List[ValidationIssue] = []

    @property
    def valid(self) -> bool:
        return not any(i.severity == IssueSeverity.ERROR for i in self.issues)


class ValidationSummary(BaseModel):
    total_deals: int = 0
    deals_with_quote_id: int = 0
    deals_without_quote_id: int = 0
    quotes_matched: int = 0
    errors: int = 0
    warnings: int = 0
    total_value_minor_units: int = 0
    currency: str = "SGD"
    issues_by_code: Dict[str, int] = {}
    results: List[DealValidationResult] = []
