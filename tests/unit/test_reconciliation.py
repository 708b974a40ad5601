"""Unit tests for catalog reconciliation."""
import uuid
from datetime import datetime

import pytest

from services.reconciler.catalog import CatalogReconciler
from shared.errors import InvalidDocumentError, ProviderNotFoundError
from shared.models import CatalogEntry, Document, DocumentLineItem, DocumentStatus, DocumentType, Provider
from shared.schemas import LineItem


GLOVES = LineItem(description="Guantes Nitrilo M", quantity=2, unit="caja", unit_price=1500.0, total=3000.0)


class TestProviderResolution:
    """Test provider lookup by tax id."""

    def test_tax_id_is_canonicalised(self, db_session, sample_provider, user_id):
        reconciler = CatalogReconciler(db_session)

        assert reconciler.resolve_provider(user_id, "30-12345678-9").id == sample_provider.id
        assert reconciler.resolve_provider(user_id, "30123456789").id == sample_provider.id

    def test_newest_provider_wins(self, db_session, sample_provider, user_id):
        duplicate = Provider(
            user_id=user_id,
            name="Distribuidora Sur (nueva)",
            cuit_cuil="30123456789",
            created_at=datetime(2025, 6, 1),
        )
        db_session.add(duplicate)
        db_session.commit()

        provider = CatalogReconciler(db_session).resolve_provider(user_id, "30123456789")

        assert provider.id == duplicate.id

    def test_substring_match(self, db_session, sample_provider, user_id):
        provider = CatalogReconciler(db_session).resolve_provider(user_id, "12345678")

        assert provider.id == sample_provider.id

    def test_unknown_tax_id(self, db_session, sample_provider, user_id):
        with pytest.raises(ProviderNotFoundError):
            CatalogReconciler(db_session).resolve_provider(user_id, "27999999990")

    def test_other_users_provider_is_not_visible(self, db_session, sample_provider):
        with pytest.raises(ProviderNotFoundError):
            CatalogReconciler(db_session).resolve_provider(uuid.uuid4(), "30123456789")

    def test_blank_tax_id(self, db_session, user_id):
        with pytest.raises(InvalidDocumentError):
            CatalogReconciler(db_session).resolve_provider(user_id, " - ")


class TestCatalogUpsert:
    """Test catalog entries created and updated from line items."""

    def test_creates_entry_with_defaults(self, db_session, sample_provider, user_id):
        result = CatalogReconciler(db_session).reconcile(user_id, "30-12345678-9", [GLOVES])

        assert result.created == ["Guantes Nitrilo M"]
        entry = db_session.query(CatalogEntry).one()
        assert entry.product_name == "Guantes Nitrilo M"
        assert entry.unit == "caja"
        assert entry.quantity == 2
        assert entry.last_price_net == pytest.approx(1500.0)
        assert entry.preferred_provider == sample_provider.id
        assert entry.category == "Other"
        assert entry.restock_frequency == "weekly"

    def test_reconcile_is_idempotent(self, db_session, sample_provider, user_id):
        reconciler = CatalogReconciler(db_session)
        reconciler.reconcile(user_id, "30123456789", [GLOVES])

        result = reconciler.reconcile(user_id, "30123456789", [GLOVES])

        assert result.created == []
        assert result.updated == ["Guantes Nitrilo M"]
        entries = db_session.query(CatalogEntry).all()
        assert len(entries) == 1
        assert entries[0].quantity == 2

    def test_existing_entry_keeps_category(self, db_session, sample_provider, user_id):
        db_session.add(CatalogEntry(
            user_id=user_id,
            product_name="Guantes Nitrilo M",
            category="Descartables",
            restock_frequency="monthly",
            last_price_net=1200.0,
        ))
        db_session.commit()

        CatalogReconciler(db_session).reconcile(user_id, "30123456789", [GLOVES])

        entry = db_session.query(CatalogEntry).one()
        assert entry.category == "Descartables"
        assert entry.restock_frequency == "monthly"
        assert entry.last_price_net == pytest.approx(1500.0)

    def test_close_substring_match_updates_existing(self, db_session, sample_provider, user_id):
        db_session.add(CatalogEntry(user_id=user_id, product_name="Guantes Nitrilo M Caja x100"))
        db_session.commit()

        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789", [GLOVES])

        assert result.updated == ["Guantes Nitrilo M Caja x100"]
        assert db_session.query(CatalogEntry).count() == 1

    def test_weak_substring_match_creates_new_entry(self, db_session, sample_provider, user_id):
        db_session.add(CatalogEntry(user_id=user_id, product_name="Sal fina de mesa premium 1kg"))
        db_session.commit()

        result = CatalogReconciler(db_session).reconcile(
            user_id, "30123456789", [LineItem(description="Sal", quantity=1, unit_price=900.0)]
        )

        assert result.created == ["Sal"]
        assert db_session.query(CatalogEntry).count() == 2

    def test_blank_descriptions_are_skipped(self, db_session, sample_provider, user_id):
        items = [LineItem(description="  ", quantity=1), LineItem(quantity=3), GLOVES]

        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789", items)

        assert result.skipped == 2
        assert db_session.query(CatalogEntry).count() == 1


class TestDocumentRelink:
    @pytest.fixture
    def orphan_document(self, db_session, user_id):
        document = Document(
            user_id=user_id,
            file_url="s3://documents/invoices/sin-proveedor.pdf",
            file_type=DocumentType.INVOICE,
            supplier_cuit="30123456789",
            status=DocumentStatus.PROCESSED,
            line_items=[
                DocumentLineItem(description="Barbijos Triple Capa", quantity=10, unit="un", unit_price=63.0, total=630.0),
            ],
        )
        db_session.add(document)
        db_session.commit()
        return document

    def test_orphan_documents_are_linked(self, db_session, sample_provider, orphan_document, user_id):
        result = CatalogReconciler(db_session).reconcile(user_id, "30-12345678-9")

        assert result.updated_documents == 1
        assert db_session.get(Document, orphan_document.id).provider_id == sample_provider.id

    def test_stored_items_feed_the_catalog(self, db_session, sample_provider, orphan_document, user_id):
        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789")

        assert result.created == ["Barbijos Triple Capa"]

    def test_caller_items_take_precedence(self, db_session, sample_provider, orphan_document, user_id):
        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789", [GLOVES])

        assert result.created == ["Guantes Nitrilo M"]
        assert db_session.query(CatalogEntry).count() == 1

    def test_stored_items_can_be_disabled(self, db_session, sample_provider, orphan_document, user_id):
        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789", use_stored_items=False)

        assert result.updated_documents == 1
        assert result.created == []

    @pytest.mark.parametrize("status", [DocumentStatus.PENDING, DocumentStatus.PROCESSING, DocumentStatus.ERROR])
    def test_unprocessed_documents_are_not_linked(self, db_session, sample_provider, user_id, status):
        document = Document(
            user_id=user_id,
            file_url="s3://documents/invoices/en-proceso.pdf",
            file_type=DocumentType.INVOICE,
            supplier_cuit="30123456789",
            status=status,
        )
        db_session.add(document)
        db_session.commit()

        result = CatalogReconciler(db_session).reconcile(user_id, "30123456789")

        assert result.updated_documents == 0
        assert db_session.get(Document, document.id).provider_id is None
