"""Shared utilities and configuration."""
from shared.config import (
    Base, Settings, get_settings, create_session_factory, create_redis_client, create_s3_client,
)
from shared.models import (
    Provider, Order, Document, DocumentLineItem, DocumentLink, CatalogEntry,
    OrderStatus, DocumentType, DocumentStatus,
)
from shared.schemas import (
    LineItem, ExtractedInvoiceData, ValidationVerdict, SettlementPayload, OperationResult,
)

__all__ = [
    "Base",
    "Settings",
    "get_settings",
    "create_session_factory",
    "create_redis_client",
    "create_s3_client",
    "Provider",
    "Order",
    "Document",
    "DocumentLineItem",
    "DocumentLink",
    "CatalogEntry",
    "OrderStatus",
    "DocumentType",
    "DocumentStatus",
    "LineItem",
    "ExtractedInvoiceData",
    "ValidationVerdict",
    "SettlementPayload",
    "OperationResult",
]
