"""Pytest configuration and fixtures."""
import os
import uuid
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config import Base
from shared.models import Document, DocumentType, DocumentStatus, Order, OrderStatus, Provider
from shared.schemas import ExtractedInvoiceData

# Use test database
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")

SAMPLE_INVOICE_TEXT = """DISTRIBUIDORA SUR S.A.
FACTURA A
Nro: 0001-00001234
Fecha de emisión: 15/03/2025
Vencimiento: 14/04/2025
CUIT: 30-12345678-1
Guantes Nitrilo M 2 caja 1.500,00 3.000,00
Barbijos Triple Capa 10 un 63,00 630,00
Subtotal: 3.000,00
IVA 21%: 630,00
TOTAL: $ 3.630,00
"""


@pytest.fixture
def db_engine():
    """Create test database engine."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def sample_provider(db_session, user_id):
    """Create a sample provider."""
    provider = Provider(
        user_id=user_id,
        name="Distribuidora Sur",
        cuit_cuil="30123456789",
        razon_social="Distribuidora Sur S.A.",
        alias="distri.sur.pagos",
        cbu="0000003100012345678901",
        created_at=datetime(2025, 1, 1),
    )
    db_session.add(provider)
    db_session.commit()
    return provider


@pytest.fixture
def sample_order(db_session, sample_provider, user_id):
    """Create an order that is waiting for its invoice."""
    order = Order(
        user_id=user_id,
        order_number="ORD-0001",
        provider_id=sample_provider.id,
        items=[{"name": "Guantes Nitrilo M", "quantity": 2}],
        currency="ARS",
        total_amount=1000.0,
        status=OrderStatus.ESPERANDO_FACTURA,
        created_at=datetime(2025, 3, 1),
    )
    db_session.add(order)
    db_session.commit()
    return order


def build_extracted(**overrides) -> ExtractedInvoiceData:
    values = dict(
        invoice_number="0001-00001234",
        total_amount=1050.0,
        issue_date="2025-03-15",
        tax_id="30123456789",
        currency="ARS",
        confidence=0.9,
    )
    values.update(overrides)
    return ExtractedInvoiceData(**values)


@pytest.fixture
def sample_invoice_document(db_session, sample_provider, user_id):
    """Create a processed invoice document."""
    document = Document(
        user_id=user_id,
        provider_id=sample_provider.id,
        file_url="s3://documents/invoices/factura-0001.pdf",
        file_type=DocumentType.INVOICE,
        extracted_data=build_extracted().model_dump(),
        supplier_cuit="30123456789",
        status=DocumentStatus.PROCESSED,
    )
    db_session.add(document)
    db_session.commit()
    return document


@pytest.fixture
def sample_payment_document(db_session, sample_provider, user_id):
    """Create a processed payment proof document."""
    document = Document(
        user_id=user_id,
        provider_id=sample_provider.id,
        file_url="s3://documents/receipts/transfer-0001.jpg",
        file_type=DocumentType.PAYMENT_PROOF,
        status=DocumentStatus.PROCESSED,
    )
    db_session.add(document)
    db_session.commit()
    return document


@pytest.fixture
def make_extracted():
    """Factory for ``ExtractedInvoiceData`` matching the sample order."""
    return build_extracted


@pytest.fixture
def sample_invoice_text():
    return SAMPLE_INVOICE_TEXT
