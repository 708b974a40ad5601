"""FastAPI service - document linking, settlement and catalog reconciliation."""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shared import (
    Settings, get_settings, create_session_factory, create_redis_client,
    LineItem, ExtractedInvoiceData, OperationResult,
)
from shared.config import session_scope
from shared.errors import (
    InvalidDocumentError, InvalidTransitionError, NotFoundError, PipelineError,
)
from services.extractor.extractor import InvoiceExtractor
from services.extractor.worker import enqueue_ocr_job
from services.notifications.outbox import Outbox, build_outbox
from services.orders.state_machine import OrderStateMachine
from services.payments.generator import PaymentDataGenerator
from services.reconciler.catalog import CatalogReconciler
from services.validator.engine import ValidationEngine

logger = logging.getLogger(__name__)

security = HTTPBearer()


# Request models
class ExtractRequest(BaseModel):
    text: str
    ocr_confidence: Optional[float] = None
    provider_tax_id: Optional[str] = None


class LinkRequest(BaseModel):
    order_id: UUID
    user_id: UUID


class UploadInvoiceRequest(BaseModel):
    document_id: UUID
    user_id: UUID
    provider_id: UUID
    order_id: Optional[UUID] = None


class UserRequest(BaseModel):
    user_id: UUID


class OcrRequest(BaseModel):
    provider_tax_id: Optional[str] = None


class FinalizeAssignmentRequest(BaseModel):
    user_id: UUID
    cuit: str
    items: Optional[List[LineItem]] = None
    use_stored_items: bool = True


# Dependencies
def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request):
    """Database session dependency."""
    yield from session_scope(request.app.state.session_factory)


def get_outbox(request: Request) -> Outbox:
    return request.app.state.outbox


def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_app_settings),
):
    """Verify API key from header."""
    if credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


def get_state_machine(
    db: Session = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
    settings: Settings = Depends(get_app_settings),
) -> OrderStateMachine:
    validator = ValidationEngine(
        default_currency=settings.default_currency,
        low_confidence=settings.low_ocr_confidence,
        outbox=outbox,
    )
    return OrderStateMachine(db, outbox, validator)


def get_payment_generator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> PaymentDataGenerator:
    return PaymentDataGenerator(db, settings.default_currency, settings.default_payment_method)


def _error(status_code: int, message: str) -> JSONResponse:
    body = OperationResult(success=False, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def register_routes(app: FastAPI) -> None:
    auth = [Depends(verify_api_key)]

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "timestamp_source": "api"}

    @app.post("/extract", response_model=ExtractedInvoiceData, dependencies=auth)
    def extract_preview(request: ExtractRequest, settings: Settings = Depends(get_app_settings)):
        """Run field extraction over raw OCR text without touching any record."""
        extractor = InvoiceExtractor(default_currency=settings.default_currency)
        return extractor.extract(request.text, request.ocr_confidence, request.provider_tax_id)

    @app.post("/documents/{document_id}/ocr", response_model=OperationResult, dependencies=auth)
    def queue_ocr(document_id: UUID, request: OcrRequest, http_request: Request):
        redis_client = http_request.app.state.redis_client
        if redis_client is None:
            raise HTTPException(status_code=503, detail="OCR queue unavailable")
        settings = http_request.app.state.settings
        enqueue_ocr_job(redis_client, settings.ocr_queue, document_id, request.provider_tax_id)
        return OperationResult(success=True, message="OCR job queued", data={"document_id": str(document_id)})

    @app.post("/documents/{document_id}/link", response_model=OperationResult, dependencies=auth)
    def link_document(
        document_id: UUID,
        request: LinkRequest,
        machine: OrderStateMachine = Depends(get_state_machine),
    ):
        result = machine.link_document(document_id, request.order_id, request.user_id)
        return OperationResult(
            success=True,
            message=f"Document linked to order {result.order_number} as {result.link_type}",
            data=result.model_dump(mode="json", exclude={"verdict"}),
        )

    @app.delete("/documents/{document_id}/link", response_model=OperationResult, dependencies=auth)
    def unlink_document(
        document_id: UUID,
        order_id: UUID,
        user_id: UUID,
        machine: OrderStateMachine = Depends(get_state_machine),
    ):
        result = machine.unlink_document(document_id, order_id, user_id)
        return OperationResult(
            success=True,
            message="Document unlinked",
            data=result.model_dump(mode="json", exclude={"verdict"}),
        )

    @app.post("/invoices/upload", response_model=OperationResult, dependencies=auth)
    def upload_invoice(
        request: UploadInvoiceRequest,
        machine: OrderStateMachine = Depends(get_state_machine),
    ):
        result = machine.upload_invoice(
            request.document_id, request.user_id, request.provider_id, request.order_id
        )
        verdict = result.verdict
        message = f"Invoice attached to order {result.order_number} ({result.new_status})"
        return OperationResult(
            success=True,
            message=message,
            data=dict(
                result.model_dump(mode="json", exclude={"verdict"}),
                is_valid=verdict.is_valid if verdict else None,
                should_proceed=verdict.should_proceed if verdict else None,
                confidence=verdict.confidence if verdict else None,
            ),
            discrepancies=verdict.discrepancies if verdict else [],
            recommendations=verdict.recommendations if verdict else [],
        )

    @app.post("/orders/{order_id}/awaiting-invoice", response_model=OperationResult, dependencies=auth)
    def mark_awaiting_invoice(
        order_id: UUID,
        request: UserRequest,
        machine: OrderStateMachine = Depends(get_state_machine),
    ):
        order = machine.mark_awaiting_invoice(order_id, request.user_id)
        return OperationResult(
            success=True,
            message=f"Order {order.order_number} awaiting invoice",
            data={"order_id": str(order.id), "status": order.status},
        )

    @app.get("/orders/{order_id}/payment-data", response_model=OperationResult, dependencies=auth)
    def preview_payment_data(
        order_id: UUID,
        user_id: UUID,
        generator: PaymentDataGenerator = Depends(get_payment_generator),
    ):
        payload = generator.generate(order_id, user_id)
        return OperationResult(success=True, message="Payment data generated", data=payload.model_dump(mode="json"))

    @app.post("/orders/{order_id}/payment-data", response_model=OperationResult, dependencies=auth)
    def finalize_payment_data(
        order_id: UUID,
        request: UserRequest,
        generator: PaymentDataGenerator = Depends(get_payment_generator),
    ):
        payload = generator.apply(order_id, request.user_id)
        return OperationResult(success=True, message="Order updated with payment data", data=payload.model_dump(mode="json"))

    @app.post("/providers/finalize-assignment", response_model=OperationResult, dependencies=auth)
    def finalize_assignment(request: FinalizeAssignmentRequest, db: Session = Depends(get_db)):
        reconciler = CatalogReconciler(db)
        result = reconciler.reconcile(
            request.user_id, request.cuit, request.items, request.use_stored_items
        )
        return OperationResult(
            success=True,
            message=f"Catalog reconciled: {len(result.created)} created, {len(result.updated)} updated",
            data=result.model_dump(mode="json"),
        )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    def handle_not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(InvalidTransitionError)
    def handle_invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error(409, str(exc))

    @app.exception_handler(InvalidDocumentError)
    def handle_invalid_document(request: Request, exc: InvalidDocumentError):
        return _error(400, str(exc))

    @app.exception_handler(PipelineError)
    def handle_pipeline_error(request: Request, exc: PipelineError):
        logger.error(f"Unhandled pipeline error: {exc}", exc_info=True)
        return _error(500, "Internal server error")

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.error(f"Unexpected error on {request.url.path}: {exc}", exc_info=True)
        return _error(500, "Internal server error")


def create_app(
    settings: Optional[Settings] = None,
    session_factory=None,
    redis_client=None,
    outbox: Optional[Outbox] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Invoice Settlement API", version="1.0.0")
    app.state.settings = settings
    app.state.session_factory = session_factory or create_session_factory(settings)
    app.state.redis_client = redis_client
    app.state.outbox = outbox or build_outbox(redis_client, settings.broadcast_channel)
    register_routes(app)
    register_error_handlers(app)
    return app


def create_default_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level))
    return create_app(settings, redis_client=create_redis_client(settings))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_default_app(), host="0.0.0.0", port=8000)
