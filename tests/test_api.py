"""
Tests for the HTTP API: cart, checkout, reservations, payments and admin endpoints.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from marketplace.core.config import settings
from marketplace.models.order import Order
from marketplace.models.payment import Payment
from marketplace.models.reservation import Reservation
from marketplace.models.vendor import Vendor

START = datetime(2026, 11, 2, 14, 0, tzinfo=timezone.utc)
API = "/api/v1"


@pytest.fixture
def shop(make_user, make_vendor, make_product):
    owner = make_user("vendor")
    lodge = make_vendor("Lodge", "lodging", owner=owner)
    room = make_product(lodge, "Room", "100.00", "per_night", reservable=True)
    kitchen = make_vendor("Kitchen", "restaurant")
    plate = make_product(kitchen, "Brochette", "6.50")
    return {"owner": owner, "lodge": lodge, "room": room, "kitchen": kitchen, "plate": plate}


def _checkout_reservation(client, shop, customer, auth_header, customer_info, key="key-1"):
    cart_id = client.post(f"{API}/carts").json()["id"]
    client.post(f"{API}/carts/{cart_id}/reservations", json={
        "productId": shop["room"].id,
        "start": START.isoformat(),
        "end": (START + timedelta(hours=50)).isoformat(),
    })
    r = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info, "idempotencyKey": key},
                    headers=auth_header(customer))
    assert r.status_code == 201, r.text
    return r.json()


class TestPublic:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_vendors_carry_badges(self, client, shop):
        vendors = client.get(f"{API}/public/vendors").json()
        lodge = next(v for v in vendors if v["id"] == shop["lodge"].id)
        assert lodge["badge"] == {"icon": "bed", "color": "purple"}

    def test_quote_matches_checkout_price(self, client, shop):
        r = client.post(f"{API}/public/quotes", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START + timedelta(hours=22)).isoformat(),
        })
        assert r.status_code == 200
        body = r.json()
        assert body["durationCount"] == 1
        assert body["durationUnit"] == "night"
        assert body["totalPrice"] == "100.00"
        assert body["platformFee"] == "5.00"

    def test_quote_rejects_reversed_window(self, client, shop):
        r = client.post(f"{API}/public/quotes", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START - timedelta(hours=1)).isoformat(),
        })
        assert r.status_code == 400


class TestCart:
    def test_add_and_total(self, client, shop):
        cart_id = client.post(f"{API}/carts").json()["id"]
        r = client.post(f"{API}/carts/{cart_id}/lines", json={"productId": shop["plate"].id, "quantity": 2})
        assert r.status_code == 200
        assert r.json()["subtotal"] == "13.00"
        assert r.json()["total"] == "13.65"
        assert client.get(f"{API}/carts/{cart_id}").json()["totalItems"] == 2

    def test_unknown_product(self, client):
        cart_id = client.post(f"{API}/carts").json()["id"]
        assert client.post(f"{API}/carts/{cart_id}/lines", json={"productId": "missing"}).status_code == 404

    def test_reservation_quantity_cannot_change(self, client, shop):
        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/reservations", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START + timedelta(hours=50)).isoformat(),
        })
        r = client.patch(f"{API}/carts/{cart_id}/lines/{shop['room'].id}", json={"quantity": 2})
        assert r.status_code == 400
        assert r.json()["detail"]["field"] == "quantity"

    def test_checkout_splits_by_vendor(self, client, db, shop, make_user, auth_header, customer_info):
        customer = make_user("customer")
        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/lines", json={"productId": shop["plate"].id, "quantity": 3})
        client.post(f"{API}/carts/{cart_id}/reservations", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START + timedelta(hours=50)).isoformat(),
        })
        r = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info}, headers=auth_header(customer))
        assert r.status_code == 201, r.text
        body = r.json()
        assert body["ok"] is True
        assert sorted(o["platformFee"] for o in body["orders"]) == ["0.98", "10.00"]
        assert db.query(Order).count() == 2
        assert client.get(f"{API}/carts/{cart_id}").json()["lines"] == []

    def test_guest_cannot_reserve(self, client, shop, customer_info):
        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/reservations", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START + timedelta(hours=50)).isoformat(),
        })
        r = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info})
        assert r.status_code == 400

    def test_checkout_key_of_other_customer_rejected(self, client, db, shop, make_user, auth_header, customer_info):
        _checkout_reservation(client, shop, make_user("customer"), auth_header, customer_info, key="shared")

        bob = make_user("customer")
        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/reservations", json={
            "productId": shop["room"].id,
            "start": START.isoformat(),
            "end": (START + timedelta(hours=22)).isoformat(),
        })
        r = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info, "idempotencyKey": "shared"},
                        headers=auth_header(bob))
        assert r.status_code == 400
        assert r.json()["detail"]["field"] == "idempotency_key"
        assert len(client.get(f"{API}/carts/{cart_id}").json()["lines"]) == 1
        assert db.query(Order).count() == 1


class TestOrders:
    def _body(self, shop, **overrides):
        body = {
            "vendorId": shop["kitchen"].id,
            "customerName": "Aline Uwase",
            "customerPhone": "+250788123456",
            "customerAddress": "KG 11 Ave, Kigali",
            "totalAmount": "20.48",
            "platformFee": "0.98",
            "items": [{"productId": shop["plate"].id, "productName": "Brochette", "unitPrice": "6.50", "quantity": 3}],
        }
        body.update(overrides)
        return body

    def test_create_order(self, client, shop):
        r = client.post(f"{API}/orders", json=self._body(shop))
        assert r.status_code == 201, r.text
        assert r.json()["platformFee"] == "0.98"

    def test_fee_cannot_be_waived(self, client, db, shop):
        r = client.post(f"{API}/orders", json=self._body(shop, totalAmount="19.50", platformFee="0"))
        assert r.status_code == 400
        assert r.json()["detail"]["field"] == "platform_fee"
        assert db.query(Order).count() == 0

    def test_unknown_vendor_is_404(self, client, shop):
        r = client.post(f"{API}/orders", json=self._body(shop, vendorId="missing"))
        assert r.status_code == 404

    def test_vendor_cancel_cancels_reservations(self, client, db, shop, make_user, auth_header, customer_info):
        placed = _checkout_reservation(client, shop, make_user("customer"), auth_header, customer_info)
        order_id = placed["orders"][0]["id"]
        r = client.post(f"{API}/orders/{order_id}/status", json={"status": "cancelled"}, headers=auth_header(shop["owner"]))
        assert r.status_code == 200, r.text
        assert db.query(Reservation).filter(Reservation.order_id == order_id).one().status == "cancelled"



class TestReservations:
    def test_vendor_settles_with_confirmation(self, client, db, shop, make_user, auth_header, customer_info):
        customer = make_user("customer")
        placed = _checkout_reservation(client, shop, customer, auth_header, customer_info)
        rid = placed["orders"][0]["reservations"][0]["id"]
        owner = auth_header(shop["owner"])

        for status in ("confirmed", "checked_in"):
            assert client.post(f"{API}/reservations/{rid}/status", json={"status": status}, headers=owner).status_code == 200

        r = client.post(f"{API}/reservations/{rid}/status", json={"status": "completed", "customerAttended": True}, headers=owner)
        assert r.status_code == 400

        r = client.post(f"{API}/reservations/{rid}/status",
                        json={"status": "completed", "customerAttended": True, "confirm": True}, headers=owner)
        assert r.status_code == 200
        assert r.json()["settlement"] == {"refundAmount": "0.00", "businessPayout": "200.00"}

        again = client.post(f"{API}/reservations/{rid}/status", json={"status": "cancelled", "confirm": True}, headers=owner)
        assert again.status_code == 409
        assert db.get(Vendor, shop["lodge"].id).balance == Decimal("200.00")

    def test_other_vendor_forbidden(self, client, shop, make_user, auth_header, customer_info):
        customer = make_user("customer")
        placed = _checkout_reservation(client, shop, customer, auth_header, customer_info)
        rid = placed["orders"][0]["reservations"][0]["id"]
        stranger = make_user("vendor")
        r = client.post(f"{API}/reservations/{rid}/status", json={"status": "confirmed"}, headers=auth_header(stranger))
        assert r.status_code == 403

    def test_customer_cancel(self, client, db, shop, make_user, auth_header, customer_info):
        customer = make_user("customer")
        placed = _checkout_reservation(client, shop, customer, auth_header, customer_info)
        rid = placed["orders"][0]["reservations"][0]["id"]

        assert client.post(f"{API}/reservations/{rid}/cancel", json={}, headers=auth_header(customer)).status_code == 400
        r = client.post(f"{API}/reservations/{rid}/cancel", json={"confirm": True}, headers=auth_header(customer))
        assert r.status_code == 200
        assert r.json()["settlement"] == {"refundAmount": "100.00", "businessPayout": "100.00"}
        assert db.get(Reservation, rid).status == "cancelled"

        r = client.post(f"{API}/reservations/{rid}/cancel", json={"confirm": True}, headers=auth_header(customer))
        assert r.status_code == 400
        assert r.json()["detail"]["message"] == "This reservation cannot be cancelled"

    def test_settlement_shape_is_published(self, client):
        schemas = client.get("/openapi.json").json()["components"]["schemas"]
        assert set(schemas["SettlementOut"]["properties"]) == {"refundAmount", "businessPayout"}
        assert schemas["SettledReservationOut"]["properties"]["settlement"]["$ref"].endswith("/SettlementOut")

    def test_my_reservations_requires_auth(self, client):
        assert client.get(f"{API}/me/reservations").status_code == 401


class TestPayments:
    def test_initiate_then_webhook_confirms(self, client, db, shop, make_user, auth_header, customer_info):
        customer = make_user("customer")
        placed = _checkout_reservation(client, shop, customer, auth_header, customer_info)
        order_id = placed["orders"][0]["id"]

        r = client.post(f"{API}/payments/initiate", json={"orderId": order_id}, headers=auth_header(customer))
        assert r.status_code == 200, r.text
        ref = r.json()["gatewayRef"]

        hook = client.post(f"{API}/webhooks/paypack", json={"data": {"ref": ref, "status": "successful", "kind": "CASHIN"}})
        assert hook.status_code == 200
        assert hook.json()["paymentStatus"] == "completed"

        status = client.get(f"{API}/payments/orders/{order_id}/status").json()
        assert status["orderStatus"] == "confirmed"
        assert db.query(Reservation).filter(Reservation.order_id == order_id).one().status == "confirmed"

    def test_gateway_error_is_502(self, client, shop, make_user, auth_header, customer_info, mock_paypack):
        from marketplace.core.errors import GatewayError
        customer = make_user("customer")
        placed = _checkout_reservation(client, shop, customer, auth_header, customer_info)
        mock_paypack.initiate_charge.side_effect = GatewayError("PayPack unreachable: ConnectTimeout")
        r = client.post(f"{API}/payments/initiate", json={"orderId": placed["orders"][0]["id"]}, headers=auth_header(customer))
        assert r.status_code == 502
        assert r.json()["detail"]["retryable"] is True

    def test_webhook_signature_enforced(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYPACK_WEBHOOK_VERIFY", True)
        monkeypatch.setattr(settings, "PAYPACK_WEBHOOK_SECRET", "shh")
        r = client.post(f"{API}/webhooks/paypack", json={"ref": "x", "status": "successful"},
                        headers={"X-Paypack-Signature": "bogus"})
        assert r.status_code == 401

    def test_webhook_missing_fields(self, client):
        assert client.post(f"{API}/webhooks/paypack", json={"status": "successful"}).status_code == 400


class TestAdmin:
    def test_platform_fee_update_applies_to_new_orders_only(self, client, db, make_user, auth_header, make_vendor, make_product, customer_info):
        admin = make_user("admin")
        plate = make_product(make_vendor(), "Tea", "100.00")

        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/lines", json={"productId": plate.id})
        first = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info}).json()

        r = client.put(f"{API}/admin/settings/platform-fee", json={"rate": "0.10"}, headers=auth_header(admin))
        assert r.status_code == 200
        assert client.get(f"{API}/public/platform-fee").json() == {"rate": "0.10"}

        first_order = db.get(Order, first["orders"][0]["id"])
        assert first_order.platform_fee == Decimal("5.00")

        cart_id = client.post(f"{API}/carts").json()["id"]
        client.post(f"{API}/carts/{cart_id}/lines", json={"productId": plate.id})
        second = client.post(f"{API}/carts/{cart_id}/checkout", json={"customer": customer_info}).json()
        assert second["orders"][0]["platformFee"] == "10.00"

    def test_invalid_rate(self, client, make_user, auth_header):
        r = client.put(f"{API}/admin/settings/platform-fee", json={"rate": "abc"}, headers=auth_header(make_user("admin")))
        assert r.status_code == 400

    def test_non_admin_forbidden(self, client, make_user, auth_header):
        r = client.put(f"{API}/admin/settings/platform-fee", json={"rate": "0.1"}, headers=auth_header(make_user("customer")))
        assert r.status_code == 403
