"""Unit tests for invoice validation."""
import uuid
from unittest.mock import Mock

import pytest

from services.notifications.outbox import Outbox
from services.validator.engine import ValidationEngine
from shared.models import Order, OrderStatus
from shared.schemas import DiscrepancyNotice


def codes(verdict):
    return [f.code for f in verdict.findings]


class TestAmountRules:
    """Test amount discrepancy thresholds."""

    def test_small_difference_is_acceptable(self, make_extracted):
        verdict = ValidationEngine().validate(1000.0, make_extracted(), "30-12345678-9")

        assert codes(verdict) == ["amount_minor"]
        assert verdict.is_valid
        assert verdict.should_proceed
        assert verdict.confidence == pytest.approx(0.9)
        assert "Acceptable difference" in verdict.recommendations[0]

    def test_exact_match_has_no_findings(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(), "30123456789")

        assert verdict.findings == []
        assert verdict.is_valid

    def test_severe_difference(self, make_extracted):
        verdict = ValidationEngine().validate(1200.0, make_extracted(), "30123456789")

        assert codes(verdict) == ["amount_severe"]
        assert not verdict.is_valid
        assert not verdict.should_proceed
        assert verdict.confidence == pytest.approx(0.6)

    def test_moderate_difference(self, make_extracted):
        verdict = ValidationEngine().validate(1000.0, make_extracted(total_amount=1080.0), "30123456789")

        assert codes(verdict) == ["amount_moderate"]
        assert not verdict.is_valid
        assert not verdict.should_proceed
        assert verdict.confidence == pytest.approx(0.8)

    def test_zero_expected_amount_skips_amount_check(self, make_extracted):
        verdict = ValidationEngine().validate(0.0, make_extracted(), "30123456789")

        assert verdict.findings == []
        assert verdict.is_valid

    def test_missing_extracted_total_skips_amount_check(self, make_extracted):
        verdict = ValidationEngine().validate(1000.0, make_extracted(total_amount=None), "30123456789")

        assert "amount_severe" not in codes(verdict)
        assert verdict.is_valid


class TestOtherRules:
    def test_tax_id_mismatch(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(), "20-11111111-2")

        assert codes(verdict) == ["tax_id_mismatch"]
        assert not verdict.is_valid
        assert verdict.confidence == pytest.approx(0.4)

    def test_moderate_difference_with_other_finding_does_not_proceed(self, make_extracted):
        extracted = make_extracted(total_amount=1080.0, invoice_number=None)
        verdict = ValidationEngine().validate(1000.0, extracted, "30123456789")

        assert codes(verdict) == ["amount_moderate", "missing_invoice_number"]
        assert not verdict.should_proceed

    def test_tax_id_compared_on_digits(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(tax_id="30.12345678.9"), "30-12345678-9")

        assert "tax_id_mismatch" not in codes(verdict)

    def test_low_ocr_confidence(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(confidence=0.5), "30123456789")

        assert codes(verdict) == ["low_ocr_confidence"]
        assert not verdict.is_valid
        assert verdict.confidence == pytest.approx(0.3)

    def test_missing_invoice_number(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(invoice_number=None), "30123456789")

        assert codes(verdict) == ["missing_invoice_number"]
        assert verdict.confidence == pytest.approx(0.8)

    def test_unexpected_currency(self, make_extracted):
        verdict = ValidationEngine().validate(1050.0, make_extracted(currency="USD"), "30123456789")

        assert codes(verdict) == ["unexpected_currency"]
        assert not verdict.is_valid

    def test_tenant_currency_is_configurable(self, make_extracted):
        engine = ValidationEngine(default_currency="USD")
        verdict = engine.validate(1050.0, make_extracted(currency="USD"), "30123456789")

        assert verdict.findings == []

    def test_confidence_floor_is_zero(self, make_extracted):
        extracted = make_extracted(confidence=0.3, invoice_number=None, currency="EUR")
        verdict = ValidationEngine().validate(2000.0, extracted, "20111111112")

        assert verdict.confidence == 0
        assert len(verdict.findings) == 5
        assert len(verdict.discrepancies) == len(verdict.recommendations) == 5


class TestDiscrepancyNotification:
    @pytest.fixture
    def order(self):
        return Order(
            id=uuid.uuid4(),
            order_number="ORD-0042",
            total_amount=1000.0,
            status=OrderStatus.ESPERANDO_FACTURA,
        )

    def test_invalid_verdict_notifies(self, order, make_extracted):
        notifier = Mock()
        engine = ValidationEngine(outbox=Outbox(notifier=notifier))
        user_id = uuid.uuid4()

        verdict = engine.validate_order(order, make_extracted(total_amount=1500.0), "30123456789", user_id)

        assert not verdict.is_valid
        notifier.notify.assert_called_once()
        notice = notifier.notify.call_args[0][0]
        assert isinstance(notice, DiscrepancyNotice)
        assert notice.order_number == "ORD-0042"
        assert notice.user_id == user_id
        assert notice.discrepancies == verdict.discrepancies

    def test_valid_verdict_does_not_notify(self, order, make_extracted):
        notifier = Mock()
        engine = ValidationEngine(outbox=Outbox(notifier=notifier))

        engine.validate_order(order, make_extracted(), "30123456789", uuid.uuid4())

        notifier.notify.assert_not_called()

    def test_notifier_failure_does_not_fail_validation(self, order, make_extracted):
        notifier = Mock()
        notifier.notify.side_effect = RuntimeError("mail server down")
        engine = ValidationEngine(outbox=Outbox(notifier=notifier))

        verdict = engine.validate_order(order, make_extracted(total_amount=1500.0), "30123456789", uuid.uuid4())

        assert not verdict.is_valid
