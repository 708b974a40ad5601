"""Invoice field extraction from raw OCR text.

Each field has an ordered list of regex patterns, most specific first. The
first pattern whose match survives normalisation wins, except for dates,
where the first match is final. Fields are independent:
a missing invoice number never blocks the amount, and nothing here raises.
"""
import logging
import re
from datetime import date
from typing import Callable, Dict, List, Optional

from shared.schemas import ExtractedInvoiceData, LineItem
from shared.taxid import is_valid_cuit, normalize_tax_id

logger = logging.getLogger(__name__)

AMOUNT = r'(\d{1,3}(?:[.,]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?)'
DMY_DATE = r'(\d{1,2}[/\-]\d{1,2}[/\-](?:\d{4}|\d{2}))\b'
YMD_DATE = r'(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})\b'
INVOICE_NO = r'([A-Z0-9][A-Z0-9\-]*\d[A-Z0-9\-]*)'

FIELD_PATTERNS: Dict[str, List[str]] = {
    'invoice_number': [
        r'(?:n[úu]mero|nro\.?)\s*(?:de\s+factura)?[\s:#\-]*(\d{4,5}-\d{4,8})',
        r'(?:factura|invoice|comprobante)\s*(?:n[º°o]\.?|nro\.?|no\.?|#|number|n[úu]mero)[\s:\-]*' + INVOICE_NO,
        r'(?:n[º°]|number|ref|referencia)[\s:\-]*' + INVOICE_NO,
        r'^([A-Z]{2,4}-?\d{4,8})\b',
        r'(?:factura|invoice|comprobante)[\s:\-]+' + INVOICE_NO,
    ],
    'total_amount': [
        r'(?:importe\s+total|total\s+a\s+pagar|total\s+general|monto\s+total|grand\s+total|amount\s+due)'
        r'[\s:\-]*(?:[A-Z]{3})?\s*\$?\s*' + AMOUNT,
        r'(?<!sub)(?<!sub\s)(?<!sub-)\btotal\b[\s:\-]*(?:[A-Z]{3})?\s*\$?\s*' + AMOUNT,
        r'(?:importe|monto|suma\s+total)[\s:\-]*\$?\s*' + AMOUNT,
        r'\$\s*' + AMOUNT,
    ],
    'subtotal': [
        r'\bsub[\s\-]?total[\s:\-]*\$?\s*' + AMOUNT,
        r'(?:importe\s+neto\s+gravado|neto\s+gravado|neto|base\s+imponible)[\s:\-]*\$?\s*' + AMOUNT,
    ],
    'tax_amount': [
        r'\b(?:iva|impuesto|tax)\b(?!\s*id\b)(?:\s*\d{1,2}(?:[.,]\d{1,2})?\s*%)?[\s:\-]*\$?\s*' + AMOUNT,
    ],
    'issue_date': [
        r'(?:fecha\s+de\s+emisi[óo]n|fecha\s+emisi[óo]n|emisi[óo]n|issue\s+date|invoice\s+date)[\s:\-]*' + DMY_DATE,
        r'(?<!due\s)\b(?:fecha|date)[\s:\-]*' + DMY_DATE,
        r'(?<!due\s)\b(?:fecha|date)[\s:\-]*' + YMD_DATE,
        r'^(?:(?!vencimiento|venc\.|due\b).)*?\b' + DMY_DATE,
    ],
    'due_date': [
        r'\b(?:fecha\s+de\s+vencimiento|vencimiento|venc\.|due\s+date|due)[\s:\-]*' + DMY_DATE,
        r'\b(?:fecha\s+de\s+vencimiento|vencimiento|due\s+date)[\s:\-]*' + YMD_DATE,
    ],
    'provider_name': [
        r'(?:raz[óo]n\s+social|proveedor|emisor)[ \t]*[:\-][ \t]*([^\n]{3,60})',
    ],
    'tax_id': [
        r'(?:c\.?u\.?i\.?t\.?|c\.?u\.?i\.?l\.?|ruc)[\s:#\-]*(\d{2}[\-. ]?\d{8}[\-. ]?\d)\b',
        r'\b(\d{2}-\d{8}-\d)\b',
        r'\b(\d{11})\b',
    ],
    'currency': [
        r'(?:moneda|currency|divisa)[\s:\-]*([A-Z]{3})\b',
        r'\$\s?(ARS|USD|EUR|BRL|CLP|UYU)\b',
        r'(U\$S|US\$)',
        r'\b(ARS|USD|EUR|BRL|CLP|UYU)\b',
    ],
}

LINE_ITEM_PATTERN = re.compile(
    r'^[ \t]*(?P<description>[^\d\s$][^\n]*?)[ \t]+'
    r'(?P<quantity>\d+(?:[.,]\d+)?)[ \t]*'
    r'(?P<unit>unidades|unidad|uds?|un|cajas?|kg|gr?|lts?|l|mts?|m|paq(?:uetes?)?|bolsas?|packs?)?[ \t]+'
    r'\$?[ \t]*(?P<unit_price>\d[\d.,]*)[ \t]+'
    r'\$?[ \t]*(?P<total>\d[\d.,]*)[ \t]*$',
    re.IGNORECASE | re.MULTILINE,
)

NOT_A_PRODUCT = re.compile(r'^(?:sub\s*total|total|iva|importe|monto|saldo|percepci)', re.IGNORECASE)

CURRENCY_ALIASES = {'U$S': 'USD', 'US$': 'USD'}

# Dates end at their first match, valid or not.
FIRST_MATCH_FIELDS = frozenset({'issue_date', 'due_date'})

DOCUMENT_HEADING = re.compile(
    r'^(?:factura|invoice|comprobante|recibo|remito|nota\s+de\s+(?:cr[eé]dito|d[eé]bito)|original|duplicado|triplicado)\b',
    re.IGNORECASE,
)

COVERAGE_WEIGHTS = {
    'invoice_number': 0.2,
    'total_amount': 0.4,
    'issue_date': 0.15,
    'tax_id': 0.15,
    'line_items': 0.1,
}


def parse_amount(raw: str) -> Optional[float]:
    """Parse a money string with either ``1.234,56`` or ``1,234.56`` layout.

    When both separators appear the last one is the decimal mark. A lone
    separator followed by exactly three digits is a thousands separator.
    Returns None for unparseable or non-positive amounts.
    """
    if not raw:
        return None
    clean = re.sub(r'[\s$]', '', raw)
    if ',' in clean and '.' in clean:
        if clean.rfind(',') > clean.rfind('.'):
            clean = clean.replace('.', '').replace(',', '.')
        else:
            clean = clean.replace(',', '')
    elif ',' in clean or '.' in clean:
        sep = ',' if ',' in clean else '.'
        parts = clean.split(sep)
        if len(parts) == 2 and len(parts[1]) != 3:
            clean = clean.replace(sep, '.')
        else:
            clean = clean.replace(sep, '')
    try:
        value = round(float(clean), 2)
    except ValueError:
        return None
    return value if value > 0 else None


def parse_date(raw: str) -> Optional[str]:
    """Normalise ``DD/MM/YYYY``, ``DD-MM-YY`` or ``YYYY-MM-DD`` to ISO format.

    Two-digit years are taken as 20YY. Impossible calendar dates (31/02) give None.
    """
    parts = re.split(r'[/\-]', raw.strip())
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    if len(parts[0]) == 4:
        year, month, day = (int(p) for p in parts)
    else:
        day, month, year = (int(p) for p in parts)
        if len(parts[2]) == 2:
            year += 2000
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_currency(raw: str) -> Optional[str]:
    value = raw.strip().upper()
    return CURRENCY_ALIASES.get(value, value) or None


def parse_invoice_number(raw: str) -> Optional[str]:
    value = raw.strip().strip('-')
    return value or None


FIELD_NORMALIZERS: Dict[str, Callable[[str], Optional[object]]] = {
    'invoice_number': parse_invoice_number,
    'total_amount': parse_amount,
    'subtotal': parse_amount,
    'tax_amount': parse_amount,
    'issue_date': parse_date,
    'due_date': parse_date,
    'tax_id': normalize_tax_id,
    'currency': parse_currency,
}


class InvoiceExtractor:
    """Extracts invoice fields from OCR text using ordered regex fallbacks."""

    def __init__(self, default_currency: str = 'ARS', patterns: Optional[Dict[str, List[str]]] = None):
        self.default_currency = default_currency
        self.patterns = patterns if patterns is not None else FIELD_PATTERNS

    def extract_field(self, field_name: str, text: str) -> Optional[Dict]:
        """Run the pattern cascade for one field.

        Returns ``{"value", "pattern", "snippet"}`` for the first match that
        normalises to a usable value, else None. Date fields stop at their
        first match whether or not it normalises.
        """
        if not text:
            return None
        normalize = FIELD_NORMALIZERS.get(field_name, lambda v: v.strip() or None)
        for pattern in self.patterns.get(field_name, []):
            for match in re.finditer(pattern, text, re.IGNORECASE | re.MULTILINE):
                raw = match.group(1) if match.groups() else match.group(0)
                value = normalize(raw)
                if value is None:
                    logger.debug(f"Rejected {field_name} candidate {raw!r}")
                    if field_name in FIRST_MATCH_FIELDS:
                        return None
                    continue
                start = max(0, match.start() - 30)
                end = min(len(text), match.end() + 30)
                return {
                    "value": value,
                    "pattern": pattern,
                    "snippet": text[start:end].strip(),
                }
        return None

    def extract_tax_id(self, text: str, provider_hint: Optional[str] = None) -> Optional[str]:
        """Tax id with awareness of invoices that print both buyer and seller ids.

        A candidate equal to ``provider_hint`` wins; otherwise the first
        checksum-valid candidate, otherwise the plain first match.
        """
        candidates = []
        for pattern in self.patterns.get('tax_id', []):
            for match in re.finditer(pattern, text or '', re.IGNORECASE | re.MULTILINE):
                digits = normalize_tax_id(match.group(1))
                if digits and digits not in candidates:
                    candidates.append(digits)
        if not candidates:
            return None
        hint = normalize_tax_id(provider_hint)
        if hint and hint in candidates:
            return hint
        if len(candidates) > 1:
            for candidate in candidates:
                if is_valid_cuit(candidate):
                    return candidate
        return candidates[0]

    def extract_provider_name(self, text: str) -> Optional[str]:
        """Seller name from a labelled field, else the first plausible heading line."""
        labelled = self.extract_field('provider_name', text)
        if labelled:
            return labelled['value']
        for line in (text or '').splitlines()[:10]:
            line = line.strip()
            if not 3 < len(line) < 50 or line[0].isdigit():
                continue
            if '@' in line or 'www.' in line.lower() or ':' in line:
                continue
            if re.search(r'\d{4,}|\d[.,]\d', line) or DOCUMENT_HEADING.match(line):
                continue
            return line
        return None

    def extract_line_items(self, text: str) -> List[LineItem]:
        items = []
        for match in LINE_ITEM_PATTERN.finditer(text or ''):
            description = match.group('description').strip(' .:-\t')
            if not description or NOT_A_PRODUCT.match(description):
                continue
            quantity = float(match.group('quantity').replace(',', '.'))
            items.append(LineItem(
                description=description,
                quantity=quantity,
                unit=(match.group('unit') or '').lower() or None,
                unit_price=parse_amount(match.group('unit_price')),
                total=parse_amount(match.group('total')),
            ))
        return items

    def extract(
        self,
        text: str,
        ocr_confidence: Optional[float] = None,
        provider_hint: Optional[str] = None,
    ) -> ExtractedInvoiceData:
        """Extract all invoice fields from OCR text.

        ``ocr_confidence`` is carried through unchanged when the OCR engine
        reported one; otherwise a field-coverage score is used.
        """
        values = {}
        for field_name in (
            'invoice_number', 'total_amount', 'subtotal', 'tax_amount', 'issue_date', 'due_date', 'currency'
        ):
            result = self.extract_field(field_name, text)
            if result:
                values[field_name] = result['value']
        tax_id = self.extract_tax_id(text, provider_hint)
        if tax_id:
            values['tax_id'] = tax_id
        provider_name = self.extract_provider_name(text)
        if provider_name:
            values['provider_name'] = provider_name
        values['line_items'] = self.extract_line_items(text)

        if ocr_confidence is None:
            confidence = sum(
                weight for field_name, weight in COVERAGE_WEIGHTS.items() if values.get(field_name)
            )
        else:
            confidence = ocr_confidence
        values['confidence'] = round(min(1.0, max(0.0, confidence)), 4)
        values.setdefault('currency', self.default_currency)

        extracted = ExtractedInvoiceData(**values)
        logger.info(
            f"Extracted invoice fields: number={extracted.invoice_number} "
            f"total={extracted.total_amount} date={extracted.issue_date} "
            f"tax_id={extracted.tax_id} items={len(extracted.line_items)}"
        )
        return extracted
