"""Value types passed between extraction, validation, orders and payments."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    total: Optional[float] = None


class ExtractedInvoiceData(BaseModel):
    """Best-effort fields pulled out of OCR text. Every field may be absent."""

    invoice_number: Optional[str] = None
    total_amount: Optional[float] = None
    subtotal: Optional[float] = None
    tax_amount: Optional[float] = None
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    tax_id: Optional[str] = None
    provider_name: Optional[str] = None
    currency: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    line_items: List[LineItem] = Field(default_factory=list)

    def to_order_blob(self) -> Dict[str, Any]:
        """Camel-cased blob stored on ``orders.invoice_data``."""
        return {
            "invoiceNumber": self.invoice_number,
            "totalAmount": self.total_amount,
            "currency": self.currency,
            "subtotal": self.subtotal,
            "tax": self.tax_amount,
            "issueDate": self.issue_date,
            "dueDate": self.due_date,
            "providerName": self.provider_name,
            "providerTaxId": self.tax_id,
            "confidence": self.confidence,
        }


class Discrepancy(BaseModel):
    code: str
    severity: str  # minor | moderate | severe
    message: str
    recommendation: str


class ValidationVerdict(BaseModel):
    is_valid: bool
    should_proceed: bool
    confidence: float
    findings: List[Discrepancy] = Field(default_factory=list)

    @property
    def discrepancies(self) -> List[str]:
        return [f.message for f in self.findings]

    @property
    def recommendations(self) -> List[str]:
        return [f.recommendation for f in self.findings]


class BankDetails(BaseModel):
    alias: Optional[str] = None
    cbu: Optional[str] = None
    cuit_cuil: Optional[str] = None
    razon_social: Optional[str] = None


class SettlementPayload(BaseModel):
    order_id: UUID
    order_number: str
    provider_name: str
    amount: float
    currency: str
    payment_method: str
    invoice_number: Optional[str] = None
    bank_info: BankDetails
    invoice_data: Optional[Dict[str, Any]] = None
    status: str
    generated_at: datetime
    payment_message: str


class BroadcastEvent(BaseModel):
    order_id: UUID
    status: str
    receipt_url: Optional[str] = None
    timestamp: datetime
    source: str


class DiscrepancyNotice(BaseModel):
    user_id: UUID
    order_id: UUID
    order_number: str
    discrepancies: List[str]
    recommendations: List[str]


class OperationResult(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    discrepancies: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
