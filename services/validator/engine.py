"""Validation of extracted invoice data against the order it should settle."""
import logging
from typing import List, Optional

from shared.schemas import (
    Discrepancy, DiscrepancyNotice, ExtractedInvoiceData, ValidationVerdict,
)
from shared.taxid import normalize_tax_id

logger = logging.getLogger(__name__)

SEVERE_AMOUNT_PCT = 10.0
MODERATE_AMOUNT_PCT = 5.0

# Only these findings leave an invoice valid and proceedable.
ACCEPTABLE_CODES = frozenset({"amount_minor"})


class ValidationEngine:
    """Scores an ``ExtractedInvoiceData`` against expected order values.

    Rules are independent and cumulative. Confidence starts from the OCR
    confidence and is decremented per finding, floored at 0.
    """

    def __init__(self, default_currency: str = "ARS", low_confidence: float = 0.7, outbox=None):
        self.default_currency = default_currency
        self.low_confidence = low_confidence
        self.outbox = outbox

    def _check_amount(self, expected: float, extracted: Optional[float]) -> Optional[Discrepancy]:
        if extracted is None or expected == 0:
            return None
        difference = abs(expected - extracted)
        if difference == 0:
            return None
        pct = round(difference / expected * 100, 4)
        detail = f"Order {expected:.2f} vs invoice {extracted:.2f} ({pct:.1f}% difference)"
        if pct > SEVERE_AMOUNT_PCT:
            return Discrepancy(
                code="amount_severe",
                severity="severe",
                message=f"Significant amount discrepancy: {detail}",
                recommendation="Review the invoice manually and confirm with the provider",
            )
        if pct > MODERATE_AMOUNT_PCT:
            return Discrepancy(
                code="amount_moderate",
                severity="moderate",
                message=f"Moderate amount discrepancy: {detail}",
                recommendation="Check for discounts or surcharges not included in the order",
            )
        return Discrepancy(
            code="amount_minor",
            severity="minor",
            message=f"Minor amount difference: {detail}",
            recommendation="Acceptable difference, you may proceed",
        )

    def validate(
        self,
        expected_amount: float,
        extracted: ExtractedInvoiceData,
        provider_tax_id: Optional[str] = None,
        expected_currency: Optional[str] = None,
    ) -> ValidationVerdict:
        findings: List[Discrepancy] = []
        penalties = {
            "amount_severe": 0.3,
            "amount_moderate": 0.1,
            "tax_id_mismatch": 0.5,
            "low_ocr_confidence": 0.2,
            "missing_invoice_number": 0.1,
            "unexpected_currency": 0.1,
        }

        amount_finding = self._check_amount(expected_amount or 0.0, extracted.total_amount)
        if amount_finding:
            findings.append(amount_finding)

        invoice_tax_id = normalize_tax_id(extracted.tax_id)
        provider_digits = normalize_tax_id(provider_tax_id)
        if invoice_tax_id and provider_digits and invoice_tax_id != provider_digits:
            findings.append(Discrepancy(
                code="tax_id_mismatch",
                severity="severe",
                message=f"Tax id does not match: invoice {invoice_tax_id} vs provider {provider_digits}",
                recommendation="Verify the invoice belongs to the right provider",
            ))

        if extracted.confidence < self.low_confidence:
            findings.append(Discrepancy(
                code="low_ocr_confidence",
                severity="moderate",
                message=f"Low extraction confidence: {extracted.confidence * 100:.1f}%",
                recommendation="Review the extracted invoice data manually",
            ))

        if not extracted.invoice_number:
            findings.append(Discrepancy(
                code="missing_invoice_number",
                severity="moderate",
                message="Invoice number could not be extracted",
                recommendation="Check that the invoice shows a visible, legible number",
            ))

        tenant_currency = expected_currency or self.default_currency
        if extracted.currency and extracted.currency != tenant_currency:
            findings.append(Discrepancy(
                code="unexpected_currency",
                severity="moderate",
                message=f"Unexpected currency: {extracted.currency} (expected {tenant_currency})",
                recommendation="Check that the invoice is issued in the right currency",
            ))

        confidence = extracted.confidence - sum(penalties.get(f.code, 0.0) for f in findings)
        codes = [f.code for f in findings]
        acceptable = all(code in ACCEPTABLE_CODES for code in codes)
        verdict = ValidationVerdict(
            is_valid=acceptable,
            should_proceed=acceptable,
            confidence=round(max(0.0, confidence), 4),
            findings=findings,
        )
        logger.info(
            f"Validation verdict: valid={verdict.is_valid} confidence={verdict.confidence} "
            f"proceed={verdict.should_proceed} findings={codes}"
        )
        return verdict

    def validate_order(
        self,
        order,
        extracted: ExtractedInvoiceData,
        provider_tax_id: Optional[str] = None,
        user_id=None,
    ) -> ValidationVerdict:
        """Validate against an ``Order`` row and emit a notice when invalid."""
        verdict = self.validate(order.total_amount, extracted, provider_tax_id)
        if not verdict.is_valid and user_id is not None and self.outbox is not None:
            self.outbox.notify_discrepancy(DiscrepancyNotice(
                user_id=user_id,
                order_id=order.id,
                order_number=order.order_number,
                discrepancies=verdict.discrepancies,
                recommendations=verdict.recommendations,
            ))
        return verdict
