"""
Tests for payment initiation, the settlement webhook and stale-payment expiry.
"""
import base64
import hashlib
import hmac
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

from marketplace.core.errors import GatewayError, ValidationError
from marketplace.models.audit_log import AuditLog
from marketplace.models.order import Order
from marketplace.models.payment import Payment
from marketplace.models.reservation import Reservation
from marketplace.services.checkout_service import checkout
from marketplace.services.order_service import update_order_status
from marketplace.services.payment_service import (
    expire_stale_payments, handle_settlement_webhook, initiate_payment, latest_payment_for_order, verify_webhook_signature,
)
from marketplace.tasks.worker_jobs import expire_pending_payments

START = datetime(2026, 11, 2, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def placed_order(db, cart, customer_info, make_vendor, make_product, make_user):
    vendor = make_vendor("Lodge", "lodging")
    room = make_product(vendor, "Room", "100.00", "per_night", reservable=True)
    cart.add_reservation_line(room, START, START + timedelta(hours=22))
    result = checkout(db, cart, customer_info, customer_id=make_user().id)
    return result.placed[0].order


class TestInitiatePayment:
    def test_creates_pending_payment_for_order_total(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        assert p.status == "pending"
        assert p.amount == Decimal("105.00")
        assert p.phone == "+250788123456"
        mock_paypack.initiate_charge.assert_called_once_with("+250788123456", Decimal("105.00"))

    def test_gateway_failure_leaves_order_pending(self, db, placed_order):
        failing = MagicMock()
        failing.initiate_charge.side_effect = GatewayError("PayPack unreachable")
        with pytest.raises(GatewayError):
            initiate_payment(db, placed_order.id, "0788000000", failing)
        assert db.query(Payment).count() == 0
        assert db.get(Order, placed_order.id).status == "pending"

    def test_paid_order_cannot_be_charged_again(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        handle_settlement_webhook(db, p.gateway_ref, "successful")
        with pytest.raises(ValidationError):
            initiate_payment(db, placed_order.id, "", mock_paypack)


class TestSettlementWebhook:
    def test_success_confirms_order_and_reservations(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)

        out = handle_settlement_webhook(db, p.gateway_ref, "successful")

        assert out["matched"] is True
        assert db.get(Payment, p.id).status == "completed"
        assert db.get(Order, placed_order.id).status == "confirmed"
        statuses = [r.status for r in db.query(Reservation).filter(Reservation.order_id == placed_order.id)]
        assert statuses == ["confirmed"]

    def test_duplicate_callback_is_harmless(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        handle_settlement_webhook(db, p.gateway_ref, "successful")
        handle_settlement_webhook(db, p.gateway_ref, "successful")
        assert db.get(Order, placed_order.id).status == "confirmed"
        assert db.query(Payment).filter(Payment.status == "completed").count() == 1

    def test_failure_marks_payment_failed(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        handle_settlement_webhook(db, p.gateway_ref, "failed")
        assert db.get(Payment, p.id).status == "failed"
        assert db.get(Order, placed_order.id).status == "pending"

    def test_success_on_cancelled_order_confirms_nothing(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        update_order_status(db, placed_order.id, "cancelled", actor_id="vendor-1")

        out = handle_settlement_webhook(db, p.gateway_ref, "successful")
        handle_settlement_webhook(db, p.gateway_ref, "successful")

        assert out["paymentStatus"] == "completed"
        assert db.get(Order, placed_order.id).status == "cancelled"
        r = db.query(Reservation).filter(Reservation.order_id == placed_order.id).one()
        assert r.status == "cancelled"
        flagged = db.query(AuditLog).filter(AuditLog.action == "payment.completed_on_cancelled_order").all()
        assert [a.entity_id for a in flagged] == [placed_order.id]

    def test_unknown_ref_is_ignored(self, db):
        assert handle_settlement_webhook(db, "nope", "successful") == {"matched": False}

    def test_latest_payment(self, db, placed_order, mock_paypack):
        initiate_payment(db, placed_order.id, "", mock_paypack)
        p = latest_payment_for_order(db, placed_order.id)
        assert p is not None and p.order_id == placed_order.id


class TestSignature:
    def test_valid_signature(self):
        body = b'{"data":{"ref":"tx-1","status":"successful"}}'
        sig = base64.b64encode(hmac.new(b"shh", body, hashlib.sha256).digest()).decode()
        assert verify_webhook_signature(body, sig, secret="shh")

    def test_tampered_body(self):
        sig = base64.b64encode(hmac.new(b"shh", b"original", hashlib.sha256).digest()).decode()
        assert not verify_webhook_signature(b"tampered", sig, secret="shh")

    def test_missing_signature(self):
        assert not verify_webhook_signature(b"{}", None, secret="shh")


class TestExpiry:
    def test_stale_pending_payment_expires(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        p.created_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db.commit()

        assert expire_stale_payments(db, older_than_minutes=30) == 1
        assert db.get(Payment, p.id).status == "failed"
        assert db.get(Order, placed_order.id).status == "pending"

    def test_fresh_payment_untouched(self, db, placed_order, mock_paypack):
        p = initiate_payment(db, placed_order.id, "", mock_paypack)
        assert expire_pending_payments(older_than_minutes=30, db=db) == {"expired": 0}
        assert db.get(Payment, p.id).status == "pending"
