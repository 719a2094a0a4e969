"""
Deal/quote validation: compares won CRM deals with accounting quotes.

Read-only. Each deal is checked independently; issues are collected rather
than raised so one bad deal never hides the rest.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sync_kernel.models.config import DealValidationConfig
from sync_kernel.models.validation import (
    AccountingQuote,
    CrmDeal,
    DealValidationResult,
    IssueSeverity,
    ValidationIssue,
    ValidationSummary,
)
from sync_kernel.money.units import format_money

logger = logging.getLogger(__name__)

ACCEPTED_QUOTE_STATUSES = ("ACCEPTED", "INVOICED")

MISSING_QUOTE_ID = "missing_quote_id"
QUOTE_NOT_FOUND = "quote_not_found"
QUOTE_NOT_ACCEPTED = "quote_not_accepted"
CURRENCY_MISMATCH = "currency_mismatch"
VALUE_MISMATCH = "value_mismatch"
ZERO_VALUE = "zero_deal_value"
DUPLICATE_QUOTE_NUMBER = "duplicate_quote_number"


class DealQuoteValidator:
    def __init__(self, config: Optional[DealValidationConfig] = None):
        self.config = config or DealValidationConfig()

    def _issue(self, deal: CrmDeal, code: str, severity: IssueSeverity, message: str) -> ValidationIssue:
        return ValidationIssue(
            code=code,
            severity=severity,
            deal_id=deal.deal_id,
            deal_title=deal.title,
            message=message,
        )

    @staticmethod
    def _find_quote(
        deal: CrmDeal,
        by_id: Dict[str, AccountingQuote],
        by_number: Dict[str, AccountingQuote],
    ) -> Optional[AccountingQuote]:
        if deal.quote_id and deal.quote_id in by_id:
            return by_id[deal.quote_id]
        if deal.quote_number:
            return by_number.get(deal.quote_number.upper())
        return None

    def _value_exceeds_tolerance(self, deal_minor: int, quote_minor: int) -> bool:
        if quote_minor == 0:
            return deal_minor != 0
        difference = Decimal(abs(deal_minor - quote_minor))
        allowed = Decimal(abs(quote_minor)) * Decimal(str(self.config.value_tolerance_percentage)) / 100
        return difference > allowed

    def validate_deal(
        self,
        deal: CrmDeal,
        by_id: Dict[str, AccountingQuote],
        by_number: Dict[str, AccountingQuote],
    ) -> DealValidationResult:
        result = DealValidationResult(deal=deal)
        issues: List[ValidationIssue] = []

        if deal.value_minor_units == 0:
            issues.append(self._issue(deal, ZERO_VALUE, IssueSeverity.WARNING, "Deal value is zero"))

        if not deal.quote_id and not deal.quote_number:
            issues.append(
                self._issue(deal, MISSING_QUOTE_ID, IssueSeverity.ERROR, "No quote linked to this deal")
            )
            result.issues = issues
            return result

        quote = self._find_quote(deal, by_id, by_number)
        if quote is None:
            reference = deal.quote_id or deal.quote_number
            issues.append(
                self._issue(
                    deal, QUOTE_NOT_FOUND, IssueSeverity.ERROR,
                    f"Quote {reference} was not found in the accounting system",
                )
            )
            result.issues = issues
            return result

        result.quote = quote
        if quote.status.upper() not in ACCEPTED_QUOTE_STATUSES:
            issues.append(
                self._issue(
                    deal, QUOTE_NOT_ACCEPTED, IssueSeverity.ERROR,
                    f"Quote {quote.quote_number} status is {quote.status}, should be ACCEPTED",
                )
            )
        if quote.currency and deal.currency and quote.currency.upper() != deal.currency.upper():
            issues.append(
                self._issue(
                    deal, CURRENCY_MISMATCH, IssueSeverity.ERROR,
                    f"Deal currency {deal.currency} does not match quote currency {quote.currency}",
                )
            )
        elif self._value_exceeds_tolerance(deal.value_minor_units, quote.total_minor_units):
            issues.append(
                self._issue(
                    deal, VALUE_MISMATCH, IssueSeverity.WARNING,
                    f"Deal value {format_money(deal.value_minor_units, deal.currency)} differs from "
                    f"quote total {format_money(quote.total_minor_units, quote.currency or deal.currency)} "
                    f"by more than {self.config.value_tolerance_percentage}%",
                )
            )
        result.issues = issues
        return result

    def validate(self, deals: List[CrmDeal], quotes: List[AccountingQuote]) -> ValidationSummary:
        by_id = {q.quote_id: q for q in quotes}
        by_number: Dict[str, AccountingQuote] = {}
        for quote in quotes:
            if quote.quote_number:
                by_number.setdefault(quote.quote_number.upper(), quote)

        summary = ValidationSummary(total_deals=len(deals))
        if deals:
            summary.currency = deals[0].currency

        number_owners: Dict[str, List[str]] = {}
        for deal in deals:
            result = self.validate_deal(deal, by_id, by_number)
            summary.results.append(result)
            summary.total_value_minor_units += deal.value_minor_units
            if deal.quote_id or deal.quote_number:
                summary.deals_with_quote_id += 1
            else:
                summary.deals_without_quote_id += 1
            if result.quote is not None:
                summary.quotes_matched += 1
                number_owners.setdefault(result.quote.quote_number.upper(), []).append(deal.deal_id)

        duplicated = {n: ids for n, ids in number_owners.items() if n and len(ids) > 1}
        for result in summary.results:
            if result.quote is None:
                continue
            owners = duplicated.get(result.quote.quote_number.upper())
            if owners:
                others = ", ".join(i for i in owners if i != result.deal.deal_id)
                result.issues.append(
                    self._issue(
                        result.deal, DUPLICATE_QUOTE_NUMBER, IssueSeverity.WARNING,
                        f"Quote {result.quote.quote_number} is also linked to deal(s) {others}",
                    )
                )

        for result in summary.results:
            for issue in result.issues:
                summary.issues_by_code[issue.code] = summary.issues_by_code.get(issue.code, 0) + 1
                if issue.severity == IssueSeverity.ERROR:
                    summary.errors += 1
                else:
                    summary.warnings += 1

        logger.info(
            "Validated %d deals: %d matched quotes, %d errors, %d warnings",
            summary.total_deals,
            summary.quotes_matched,
            summary.errors,
            summary.warnings,
        )
        return summary
