"""Catalog reconciliation - maps invoice line items onto the user's stock catalog."""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field
from rapidfuzz import fuzz
from sqlalchemy import or_
from sqlalchemy.orm import Session

from shared.errors import InvalidDocumentError, ProviderNotFoundError
from shared.models import CatalogEntry, Document, DocumentStatus, Provider
from shared.schemas import LineItem
from shared.taxid import normalize_tax_id

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Other"
DEFAULT_RESTOCK_FREQUENCY = "weekly"
# Substring hits scoring below this are treated as unrelated products.
MIN_SUBSTRING_SCORE = 60


class ReconciliationResult(BaseModel):
    provider_id: str
    updated_documents: int = 0
    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    skipped: int = 0


class CatalogReconciler:
    """Resolves providers by tax id and upserts catalog entries from line items."""

    def __init__(self, db: Session, min_substring_score: float = MIN_SUBSTRING_SCORE):
        self.db = db
        self.min_substring_score = min_substring_score

    def resolve_provider(self, user_id, tax_id: str) -> Provider:
        """Exact or substring match on the digits-only tax id, newest provider first."""
        digits = normalize_tax_id(tax_id)
        if not digits:
            raise InvalidDocumentError(f"Tax id {tax_id!r} has no digits")
        provider = (
            self.db.query(Provider)
            .filter(
                Provider.user_id == user_id,
                or_(Provider.cuit_cuil == digits, Provider.cuit_cuil.contains(digits, autoescape=True)),
            )
            .order_by(Provider.created_at.desc())
            .first()
        )
        if provider is None:
            raise ProviderNotFoundError(digits, f"Provider not found for tax id {digits}")
        logger.info(f"Resolved tax id {digits} to provider {provider.id} ({provider.name})")
        return provider

    def relink_documents(self, user_id, provider: Provider) -> List[Document]:
        """Attach processed, provider-less documents whose detected tax id matches the provider."""
        digits = normalize_tax_id(provider.cuit_cuil)
        if not digits:
            return []
        documents = (
            self.db.query(Document)
            .filter(
                Document.user_id == user_id,
                Document.provider_id.is_(None),
                Document.status == DocumentStatus.PROCESSED,
                or_(
                    Document.supplier_cuit == digits,
                    Document.supplier_cuit.contains(digits, autoescape=True),
                ),
            )
            .all()
        )
        for document in documents:
            document.provider_id = provider.id
        if documents:
            logger.info(f"Linked {len(documents)} documents to provider {provider.id}")
        return documents

    def match_entry(self, user_id, product_name: str) -> Optional[CatalogEntry]:
        """Exact name first; otherwise the best-scoring case-insensitive substring hit."""
        exact = self.db.query(CatalogEntry).filter(
            CatalogEntry.user_id == user_id,
            CatalogEntry.product_name == product_name,
        ).first()
        if exact is not None:
            return exact

        candidates = self.db.query(CatalogEntry).filter(
            CatalogEntry.user_id == user_id,
            CatalogEntry.product_name.icontains(product_name, autoescape=True),
        ).all()
        best, best_score = None, 0.0
        for candidate in candidates:
            score = fuzz.ratio(product_name.lower(), candidate.product_name.lower())
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score < self.min_substring_score:
            logger.info(
                f"Ignoring weak catalog match {best.product_name!r} for {product_name!r} "
                f"(score: {best_score:.0f})"
            )
            return None
        return best

    def upsert_item(self, user_id, provider: Provider, item: LineItem, result: ReconciliationResult) -> None:
        name = (item.description or "").strip()
        if not name:
            result.skipped += 1
            logger.warning(f"Skipping line item without product name: {item}")
            return

        entry = self.match_entry(user_id, name)
        if entry is None:
            entry = CatalogEntry(
                user_id=user_id,
                product_name=name,
                category=DEFAULT_CATEGORY,
                restock_frequency=DEFAULT_RESTOCK_FREQUENCY,
            )
            self.db.add(entry)
            result.created.append(name)
        else:
            result.updated.append(entry.product_name)

        entry.unit = item.unit
        entry.quantity = item.quantity
        entry.last_price_net = item.unit_price
        entry.preferred_provider = provider.id
        self.db.flush()

    @staticmethod
    def stored_items(documents: List[Document]) -> List[LineItem]:
        items = []
        for document in documents:
            for row in document.line_items:
                items.append(LineItem(
                    description=row.description,
                    quantity=row.quantity,
                    unit=row.unit,
                    unit_price=row.unit_price,
                    total=row.total,
                ))
        return items

    def reconcile(
        self,
        user_id,
        tax_id: str,
        line_items: Optional[List[LineItem]] = None,
        use_stored_items: bool = True,
    ) -> ReconciliationResult:
        """Resolve the provider, re-link its documents and update the catalog.

        Caller-supplied ``line_items`` (already corrected by a person) take
        precedence over items stored on the re-linked documents.
        """
        provider = self.resolve_provider(user_id, tax_id)
        documents = self.relink_documents(user_id, provider)
        result = ReconciliationResult(provider_id=str(provider.id), updated_documents=len(documents))

        if line_items:
            items = line_items
        elif use_stored_items:
            items = self.stored_items(documents)
        else:
            items = []

        for item in items:
            self.upsert_item(user_id, provider, item, result)

        self.db.commit()
        logger.info(
            f"Reconciled {len(items)} line items for provider {provider.id}: "
            f"created={len(result.created)} updated={len(result.updated)} skipped={result.skipped}"
        )
        return result
