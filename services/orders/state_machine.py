"""Order settlement state machine.

    standby -> esperando_factura -> factura_recibida -> pendiente_de_pago -> pagado
                      ^                                                      |
                      +------------------------ unlink ----------------------+

Every transition is applied as a conditional UPDATE keyed on the status that
was read, so two concurrent links against one order cannot both win.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session

from shared.errors import (
    ConcurrentTransitionError, DocumentNotFoundError, InvalidDocumentError,
    InvalidTransitionError, NoPendingOrderError, OrderNotFoundError, ProviderNotFoundError,
)
from shared.models import Document, DocumentStatus, DocumentType, Order, OrderStatus, Provider
from shared.schemas import BroadcastEvent, ExtractedInvoiceData, ValidationVerdict

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[str, Tuple[frozenset, str]] = {
    "mark_awaiting_invoice": (frozenset({S.STANDBY}), S.ESPERANDO_FACTURA),
    "receive_invoice": (
        frozenset({S.STANDBY, S.ESPERANDO_FACTURA, S.FACTURA_RECIBIDA}),
        S.FACTURA_RECIBIDA,
    ),
    "link_invoice": (
        frozenset({S.STANDBY, S.ESPERANDO_FACTURA, S.FACTURA_RECIBIDA, S.PENDIENTE_DE_PAGO}),
        S.PENDIENTE_DE_PAGO,
    ),
    "link_payment_proof": (
        frozenset({S.ESPERANDO_FACTURA, S.FACTURA_RECIBIDA, S.PENDIENTE_DE_PAGO}),
        S.PAGADO,
    ),
    "unlink": (
        frozenset({S.ESPERANDO_FACTURA, S.FACTURA_RECIBIDA, S.PENDIENTE_DE_PAGO, S.PAGADO}),
        S.ESPERANDO_FACTURA,
    ),
}

LEGACY_STATUS_MAPPING = {
    "pending": S.STANDBY,
    "pending_confirmation": S.STANDBY,
    "pendiente": S.STANDBY,
    "cancelled": S.STANDBY,
    "confirmed": S.ESPERANDO_FACTURA,
    "sent": S.ESPERANDO_FACTURA,
    "enviado": S.ESPERANDO_FACTURA,
    "invoice_received": S.FACTURA_RECIBIDA,
    "documento_recibido": S.FACTURA_RECIBIDA,
    "pago_pendiente": S.PENDIENTE_DE_PAGO,
    "paid": S.PAGADO,
    "finalizado": S.PAGADO,
    "completed": S.PAGADO,
    "delivered": S.PAGADO,
    "comprobante_enviado": S.PAGADO,
}


def normalize_status(status: Optional[str]) -> str:
    """Map historic status labels onto the canonical five."""
    if status in S.ALL:
        return status
    return LEGACY_STATUS_MAPPING.get(status or "", S.STANDBY)


def can_transition(current_status: str, action: str) -> bool:
    allowed, _ = TRANSITIONS[action]
    return normalize_status(current_status) in allowed


class LinkResult(BaseModel):
    document_id: str
    order_id: str
    order_number: str
    link_type: str
    new_status: str
    verdict: Optional[ValidationVerdict] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateMachine:
    def __init__(self, db: Session, outbox, validator=None):
        self.db = db
        self.outbox = outbox
        self.validator = validator

    # Lookups

    def get_order(self, order_id, user_id) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id, Order.user_id == user_id).first()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def get_document(self, document_id, user_id) -> Document:
        document = self.db.query(Document).filter(
            Document.id == document_id, Document.user_id == user_id
        ).first()
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def find_pending_order(self, provider_id, user_id) -> Order:
        """Newest order for the provider that has no receipt attached yet."""
        order = (
            self.db.query(Order)
            .filter(
                Order.provider_id == provider_id,
                Order.user_id == user_id,
                Order.receipt_url.is_(None),
                Order.status != S.PAGADO,
            )
            .order_by(Order.created_at.desc())
            .first()
        )
        if order is None:
            raise NoPendingOrderError(provider_id)
        return order

    # Core transition

    def _apply(self, order: Order, action: str, values: Dict, document: Optional[Document] = None) -> str:
        """Conditionally update ``order`` and the linked document in one commit."""
        allowed, target = TRANSITIONS[action]
        expected = order.status
        if normalize_status(expected) not in allowed:
            self.db.rollback()
            raise InvalidTransitionError(order.id, expected, target)

        values = dict(values, status=target, updated_at=_now())
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConcurrentTransitionError(order.id, expected, target)

        if document is not None:
            self.db.add(document)
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Order {order.id} ({order.order_number}): {expected} -> {target} via {action}")
        return target

    def _broadcast(self, order: Order, receipt_url: Optional[str], source: str) -> None:
        self.outbox.broadcast(BroadcastEvent(
            order_id=order.id,
            status=order.status,
            receipt_url=receipt_url,
            timestamp=_now(),
            source=source,
        ))

    # Transitions

    def mark_awaiting_invoice(self, order_id, user_id) -> Order:
        order = self.get_order(order_id, user_id)
        self._apply(order, "mark_awaiting_invoice", {})
        self._broadcast(order, None, "order_sent")
        return order

    @staticmethod
    def _invoice_values(
        document: Document, extracted: Optional[ExtractedInvoiceData], overwrite_total: bool = True
    ) -> Dict:
        values = {"receipt_url": document.file_url}
        if extracted is not None:
            values.update(
                invoice_data=extracted.to_order_blob(),
                invoice_number=extracted.invoice_number,
                invoice_total=extracted.total_amount,
                invoice_currency=extracted.currency,
                invoice_date=extracted.issue_date,
                extraction_confidence=extracted.confidence,
            )
            if overwrite_total and extracted.total_amount and extracted.total_amount > 0:
                values["total_amount"] = extracted.total_amount
        return values

    @staticmethod
    def _extracted(document: Document) -> Optional[ExtractedInvoiceData]:
        if not document.extracted_data:
            return None
        return ExtractedInvoiceData.model_validate(document.extracted_data)

    def _assign(self, document: Document, order: Order) -> None:
        document.order_id = order.id
        document.status = DocumentStatus.ASSIGNED
        if document.provider_id is None:
            document.provider_id = order.provider_id

    def link_document(self, document_id, order_id, user_id, source: str = "document_link") -> LinkResult:
        """Attach an invoice or payment proof to an order and advance its status."""
        document = self.get_document(document_id, user_id)
        order = self.get_order(order_id, user_id)

        if document.file_type == DocumentType.INVOICE:
            action = "link_invoice"
            values = self._invoice_values(document, self._extracted(document))
        elif document.file_type == DocumentType.PAYMENT_PROOF:
            action = "link_payment_proof"
            values = {"payment_receipt_url": document.file_url, "paid_at": _now()}
        else:
            raise InvalidDocumentError(
                f"Document {document_id} of type '{document.file_type}' cannot be linked to an order"
            )

        self._assign(document, order)
        self._apply(order, action, values, document)
        receipt_url = order.payment_receipt_url if action == "link_payment_proof" else order.receipt_url
        self._broadcast(order, receipt_url, source)
        self.outbox.record_link(self.db, document.id, order.id, document.file_type, user_id)

        return LinkResult(
            document_id=str(document.id),
            order_id=str(order.id),
            order_number=order.order_number,
            link_type=document.file_type,
            new_status=order.status,
        )

    def unlink_document(self, document_id, order_id, user_id) -> LinkResult:
        """Detach a document and send the order back to awaiting invoice."""
        order_id = UUID(str(order_id))
        document = self.get_document(document_id, user_id)
        if document.order_id != order_id:
            raise DocumentNotFoundError(
                document_id, f"Document {document_id} is not linked to order {order_id}"
            )
        order = self.get_order(order_id, user_id)

        values = {"receipt_url": None, "payment_receipt_url": None, "paid_at": None}
        if document.file_type == DocumentType.INVOICE:
            values.update(
                invoice_data=None,
                invoice_number=None,
                invoice_total=None,
                invoice_currency=None,
                invoice_date=None,
                extraction_confidence=None,
            )
        document.order_id = None
        document.status = DocumentStatus.PROCESSED
        self._apply(order, "unlink", values, document)
        self._broadcast(order, None, "document_unlink")

        return LinkResult(
            document_id=str(document.id),
            order_id=str(order.id),
            order_number=order.order_number,
            link_type=document.file_type,
            new_status=order.status,
        )

    def upload_invoice(self, document_id, user_id, provider_id, order_id=None) -> LinkResult:
        """Attach a freshly processed invoice, auto-selecting the order if needed.

        With a validator configured, a verdict that says proceed moves the
        order to ``pendiente_de_pago``; anything else parks it in
        ``factura_recibida`` for manual review with the order total untouched.
        """
        document = self.get_document(document_id, user_id)
        if document.file_type != DocumentType.INVOICE:
            raise InvalidDocumentError(f"Document {document_id} is not an invoice")
        if order_id is None:
            order = self.find_pending_order(provider_id, user_id)
        else:
            order = self.get_order(order_id, user_id)

        extracted = self._extracted(document)
        verdict = None
        if self.validator is not None and extracted is not None:
            provider = self.db.query(Provider).filter(
                Provider.id == order.provider_id, Provider.user_id == user_id
            ).first()
            if provider is None:
                raise ProviderNotFoundError(order.provider_id)
            verdict = self.validator.validate_order(order, extracted, provider.cuit_cuil, user_id)

        if verdict is None or verdict.should_proceed:
            result = self.link_document(document.id, order.id, user_id, source="invoice_upload")
            result.verdict = verdict
            return result

        self._assign(document, order)
        values = self._invoice_values(document, extracted, overwrite_total=False)
        self._apply(order, "receive_invoice", values, document)
        self._broadcast(order, order.receipt_url, "invoice_upload")
        self.outbox.record_link(self.db, document.id, order.id, document.file_type, user_id)
        return LinkResult(
            document_id=str(document.id),
            order_id=str(order.id),
            order_number=order.order_number,
            link_type=document.file_type,
            new_status=order.status,
            verdict=verdict,
        )
