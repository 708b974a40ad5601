"""SQLAlchemy models for the settlement pipeline."""
import uuid

from sqlalchemy import (
    Column, Integer, Float, Text, TIMESTAMP, JSON, ForeignKey, CheckConstraint, Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from shared.config import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class OrderStatus:
    STANDBY = "standby"
    ESPERANDO_FACTURA = "esperando_factura"
    FACTURA_RECIBIDA = "factura_recibida"
    PENDIENTE_DE_PAGO = "pendiente_de_pago"
    PAGADO = "pagado"

    ALL = (STANDBY, ESPERANDO_FACTURA, FACTURA_RECIBIDA, PENDIENTE_DE_PAGO, PAGADO)


class DocumentType:
    INVOICE = "invoice"
    PAYMENT_PROOF = "payment_proof"
    OTHER = "other"


class DocumentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ASSIGNED = "assigned"
    ERROR = "error"


class Provider(Base):
    __tablename__ = "providers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    name = Column(Text, nullable=False)
    cuit_cuil = Column(Text, index=True)
    razon_social = Column(Text)
    alias = Column(Text)
    cbu = Column(Text)
    default_payment_method = Column(Text)
    default_delivery_days = Column(JSONType)
    created_at = Column(TIMESTAMP, server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_amount_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    order_number = Column(Text, nullable=False)
    provider_id = Column(Uuid, ForeignKey("providers.id"), nullable=False)
    items = Column(JSONType, default=list)
    currency = Column(Text, default="ARS")
    total_amount = Column(Float, nullable=False, default=0.0)
    status = Column(Text, nullable=False, default=OrderStatus.STANDBY)
    payment_method = Column(Text)

    invoice_data = Column(JSONType)
    invoice_number = Column(Text)
    invoice_total = Column(Float)
    invoice_currency = Column(Text)
    invoice_date = Column(Text)
    extraction_confidence = Column(Float)

    receipt_url = Column(Text)
    payment_receipt_url = Column(Text)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
    paid_at = Column(TIMESTAMP)

    provider = relationship("Provider")


class Document(Base):
    __tablename__ = "documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    provider_id = Column(Uuid, ForeignKey("providers.id"))
    order_id = Column(Uuid, ForeignKey("orders.id"))
    file_url = Column(Text, nullable=False)
    file_type = Column(Text, nullable=False, default=DocumentType.INVOICE)
    ocr_text = Column(Text)
    ocr_confidence = Column(Float)
    extracted_data = Column(JSONType)
    supplier_cuit = Column(Text, index=True)
    status = Column(Text, nullable=False, default=DocumentStatus.PENDING)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    line_items = relationship(
        "DocumentLineItem", back_populates="document", cascade="all, delete-orphan"
    )


class DocumentLineItem(Base):
    __tablename__ = "document_line_items"

    id = Column(Integer, primary_key=True)
    document_id = Column(Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    description = Column(Text)
    quantity = Column(Float)
    unit = Column(Text)
    unit_price = Column(Float)
    total = Column(Float)

    document = relationship("Document", back_populates="line_items")


class DocumentLink(Base):
    __tablename__ = "document_links"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id = Column(Uuid, ForeignKey("documents.id", ondelete="CASCADE"))
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"))
    link_type = Column(Text)
    user_id = Column(Uuid)
    created_at = Column(TIMESTAMP, server_default=func.now())


class CatalogEntry(Base):
    __tablename__ = "stock"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    product_name = Column(Text, nullable=False)
    unit = Column(Text)
    last_price_net = Column(Float)
    quantity = Column(Float, default=0.0)
    preferred_provider = Column(Uuid, ForeignKey("providers.id", ondelete="SET NULL"))
    category = Column(Text, default="Other")
    restock_frequency = Column(Text, default="weekly")
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
