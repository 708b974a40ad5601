"""OCR worker - turns stored documents into raw text and extracted invoice fields."""
import io
import json
import logging
from typing import Dict, Optional, Tuple
from uuid import UUID

import pdfplumber
from pdf2image import convert_from_bytes
import pytesseract
from PIL import Image
from sqlalchemy.orm import Session

from shared import (
    Settings, get_settings, create_session_factory, create_redis_client, create_s3_client,
    Document, DocumentLineItem, DocumentStatus,
)
from shared.errors import DocumentNotFoundError
from services.extractor.extractor import InvoiceExtractor

logger = logging.getLogger(__name__)


class OcrEngine:
    """Tesseract wrapper returning text plus a 0-1 mean word confidence."""

    def __init__(self, language: str = 'spa'):
        self.language = language

    def image_to_text(self, image: Image.Image) -> Tuple[str, Optional[float]]:
        data = pytesseract.image_to_data(
            image, lang=self.language, output_type=pytesseract.Output.DICT
        )
        confidences = []
        for word, conf in zip(data.get('text', []), data.get('conf', [])):
            try:
                conf = float(conf)
            except (TypeError, ValueError):
                continue
            if word.strip() and conf >= 0:
                confidences.append(conf)
        text = pytesseract.image_to_string(image, lang=self.language)
        if not confidences:
            return text, None
        return text, round(sum(confidences) / len(confidences) / 100.0, 4)

    def pdf_to_text(self, pdf_bytes: bytes) -> Tuple[str, Optional[float]]:
        """Digital text first; rasterise and OCR when the PDF is a scan."""
        text_parts = []
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
        full_text = "\n".join(text_parts)
        if len(full_text.strip()) >= 100:
            return full_text, 1.0

        logger.info("Digital extraction yielded little text, trying OCR...")
        texts = []
        confidences = []
        for image in convert_from_bytes(pdf_bytes, dpi=200):
            page_text, page_conf = self.image_to_text(image)
            texts.append(page_text)
            if page_conf is not None:
                confidences.append(page_conf)
        confidence = sum(confidences) / len(confidences) if confidences else None
        return "\n".join(texts), confidence

    def recognize(self, file_bytes: bytes, filename: str) -> Tuple[str, Optional[float]]:
        if filename.lower().endswith('.pdf'):
            return self.pdf_to_text(file_bytes)
        return self.image_to_text(Image.open(io.BytesIO(file_bytes)))


def split_s3_url(url: str) -> Tuple[str, str]:
    bucket = url.split('/')[2]
    key = '/'.join(url.split('/')[3:])
    return bucket, key


def store_extraction(document: Document, text: str, extracted) -> None:
    """Persist OCR output and extracted fields on the document."""
    document.ocr_text = text
    document.ocr_confidence = extracted.confidence
    document.extracted_data = extracted.model_dump()
    document.supplier_cuit = extracted.tax_id
    document.line_items = [
        DocumentLineItem(
            description=item.description,
            quantity=item.quantity,
            unit=item.unit,
            unit_price=item.unit_price,
            total=item.total,
        )
        for item in extracted.line_items
    ]
    document.status = DocumentStatus.PROCESSED


def process_ocr_job(
    job_data: Dict,
    db: Session,
    s3_client,
    ocr_engine: OcrEngine,
    extractor: InvoiceExtractor,
) -> bool:
    """Process a single OCR job ``{"document_id": ..., "provider_hint": ...}``."""
    document_id = UUID(str(job_data['document_id']))
    document = db.get(Document, document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)

    document.status = DocumentStatus.PROCESSING
    db.commit()

    try:
        bucket, key = split_s3_url(document.file_url)
        response = s3_client.get_object(Bucket=bucket, Key=key)
        file_bytes = response['Body'].read()
        text, confidence = ocr_engine.recognize(file_bytes, key)
        extracted = extractor.extract(
            text,
            ocr_confidence=confidence,
            provider_hint=job_data.get('provider_hint'),
        )
        store_extraction(document, text, extracted)
        db.commit()
        logger.info(f"Processed document {document_id} with {len(extracted.line_items)} line items")
        return True
    except Exception as e:
        logger.error(f"Error processing OCR job for document {document_id}: {e}", exc_info=True)
        db.rollback()
        document.status = DocumentStatus.ERROR
        db.commit()
        return False


def enqueue_ocr_job(redis_client, queue: str, document_id, provider_hint: Optional[str] = None) -> None:
    redis_client.lpush(queue, json.dumps({
        "document_id": str(document_id),
        "provider_hint": provider_hint,
    }))


def run_ocr_worker(settings: Optional[Settings] = None) -> None:
    """Main OCR worker loop."""
    settings = settings or get_settings()
    session_factory = create_session_factory(settings)
    redis_client = create_redis_client(settings)
    s3_client = create_s3_client(settings)
    ocr_engine = OcrEngine(settings.ocr_language)
    extractor = InvoiceExtractor(default_currency=settings.default_currency)
    logger.info("Starting OCR worker...")

    while True:
        try:
            job_json = redis_client.brpop(settings.ocr_queue, timeout=10)
            if not job_json:
                continue
            job_data = json.loads(job_json[1])
            logger.info(f"Processing OCR job for document {job_data.get('document_id')}")
            db = session_factory()
            try:
                process_ocr_job(job_data, db, s3_client, ocr_engine, extractor)
            finally:
                db.close()
        except KeyboardInterrupt:
            logger.info("OCR worker stopped")
            break
        except Exception as e:
            logger.error(f"Error in OCR worker: {e}", exc_info=True)


if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, get_settings().log_level))
    run_ocr_worker()
