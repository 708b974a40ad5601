"""Settlement payload generation for orders awaiting payment."""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from shared.errors import OrderNotFoundError, ProviderNotFoundError
from shared.models import Order, Provider
from shared.schemas import BankDetails, SettlementPayload

logger = logging.getLogger(__name__)

TRANSFER_METHODS = frozenset({"transfer", "transferencia", "bank_transfer"})


def format_amount(amount: float, currency: str) -> str:
    """Argentine layout: ``ARS 1.234,56``."""
    formatted = f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{currency} {formatted}"


def build_payment_message(
    provider_name: str,
    amount: float,
    currency: str,
    payment_method: str,
    invoice_number: Optional[str] = None,
    alias: Optional[str] = None,
    cbu: Optional[str] = None,
) -> str:
    lines = [
        "PAYMENT DETAILS",
        "",
        f"Provider: {provider_name}",
        f"Amount: {format_amount(amount, currency)}",
    ]
    if invoice_number:
        lines.append(f"Invoice: {invoice_number}")
    lines.append(f"Method: {payment_method.capitalize()}")
    if payment_method.lower() in TRANSFER_METHODS:
        if alias:
            lines.append(f"Alias: {alias}")
        if cbu:
            lines.append(f"CBU: {cbu}")
    lines.append("")
    lines.append("Once the payment is made, upload the receipt to complete the transaction.")
    return "\n".join(lines)


class PaymentDataGenerator:
    def __init__(self, db: Session, default_currency: str = "ARS", default_payment_method: str = "transfer"):
        self.db = db
        self.default_currency = default_currency
        self.default_payment_method = default_payment_method

    def _load(self, order_id, user_id):
        order = self.db.query(Order).filter(Order.id == order_id, Order.user_id == user_id).first()
        if order is None:
            raise OrderNotFoundError(order_id)
        provider = self.db.query(Provider).filter(
            Provider.id == order.provider_id, Provider.user_id == user_id
        ).first()
        if provider is None:
            raise ProviderNotFoundError(order.provider_id)
        return order, provider

    def generate(self, order_id, user_id) -> SettlementPayload:
        """Read-only settlement payload; the order is not modified."""
        order, provider = self._load(order_id, user_id)

        amount = order.invoice_total if order.invoice_total else order.total_amount
        currency = order.invoice_currency or order.currency or self.default_currency
        method = order.payment_method or provider.default_payment_method or self.default_payment_method

        payload = SettlementPayload(
            order_id=order.id,
            order_number=order.order_number,
            provider_name=provider.name,
            amount=amount or 0.0,
            currency=currency,
            payment_method=method,
            invoice_number=order.invoice_number,
            bank_info=BankDetails(
                alias=provider.alias,
                cbu=provider.cbu,
                cuit_cuil=provider.cuit_cuil,
                razon_social=provider.razon_social,
            ),
            invoice_data=order.invoice_data,
            status=order.status,
            generated_at=datetime.now(timezone.utc),
            payment_message=build_payment_message(
                provider.name,
                amount or 0.0,
                currency,
                method,
                invoice_number=order.invoice_number,
                alias=provider.alias,
                cbu=provider.cbu,
            ),
        )
        logger.info(
            f"Generated payment data for order {order.order_number}: "
            f"{payload.currency} {payload.amount} via {payload.payment_method}"
        )
        return payload

    def apply(self, order_id, user_id) -> SettlementPayload:
        """Generate the payload and persist the resolved amount and currency on the order."""
        payload = self.generate(order_id, user_id)
        order = self.db.query(Order).filter(Order.id == order_id, Order.user_id == user_id).one()
        order.total_amount = payload.amount
        order.currency = payload.currency
        self.db.commit()
        logger.info(f"Order {order.order_number} updated with settlement amount {payload.amount}")
        return payload
