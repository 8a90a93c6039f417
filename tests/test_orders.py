"""Tests for the order lifecycle."""

import re
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from conftest import RecordingNotifier, make_draft
from errors import BadRequestError, InvalidTransitionError, OrderConflictError, OrderNotFoundError
from orders import (
    FREE_SHIPPING_THRESHOLD,
    SHIPPING_FEE,
    TRANSITIONS,
    OrderService,
    can_transition,
    generate_tracking_id,
    shipping_fee_for,
    status_counts,
)
from schemas import CheckoutContact


@pytest.fixture
def service(db, notifier):
    return OrderService(db, notifier)


def advance(service, order_id, *statuses):
    order = None
    for status in statuses:
        order = service.transition_status(order_id, status)
    return order


class TestTransitionTable:
    def test_happy_path_edges(self):
        path = ["pending", "accepted", "processing", "delivering", "done"]
        for current, new in zip(path, path[1:]):
            assert can_transition(current, new)

    def test_reject_only_from_pending(self):
        assert can_transition("pending", "rejected")
        assert not can_transition("accepted", "rejected")

    @pytest.mark.parametrize("current,new", [
        ("pending", "delivering"),
        ("pending", "done"),
        ("delivering", "processing"),
        ("done", "pending"),
        ("rejected", "accepted"),
        ("accepted", "accepted"),
    ])
    def test_illegal_edges(self, current, new):
        assert not can_transition(current, new)

    def test_terminal_states(self):
        assert TRANSITIONS["done"] == frozenset()
        assert TRANSITIONS["rejected"] == frozenset()


class TestHelpers:
    def test_tracking_id_format(self):
        assert re.fullmatch(r"TRK\d{13}[A-Z0-9]{9}", generate_tracking_id())

    def test_shipping_fee(self):
        assert shipping_fee_for(FREE_SHIPPING_THRESHOLD - 1) == SHIPPING_FEE
        assert shipping_fee_for(FREE_SHIPPING_THRESHOLD) == 0

    def test_status_counts(self):
        counts = status_counts([{"status": "done"}, {"status": "done"}, {"status": "rejected"}, {}])
        assert counts["all"] == 4
        assert counts["done"] == 2
        assert counts["rejected"] == 1
        assert counts["pending"] == 1


class TestCreateOrder:
    def test_creates_pending_order(self, service, draft):
        order = service.create_order(draft)
        assert order["status"] == "pending"
        assert order["total"] == 500
        assert order["tracking_id"].startswith("TRK")
        assert order["deleted_by_admin"] is False
        assert order["created_at"] is not None
        assert order["address"]["city"] == "Lahore"

    def test_total_is_subtotal_plus_shipping(self, service):
        order = service.create_order(make_draft(subtotal=1200, shipping_fee=200))
        assert order["total"] == 1400

    def test_online_payment_starts_processing(self, service):
        order = service.create_order(make_draft(payment_method="online"))
        assert order["status"] == "processing"

    def test_sends_customer_and_admin_notifications(self, service, notifier, draft):
        order = service.create_order(draft)
        assert notifier.sent == [
            ("customer_order_confirmation", order["tracking_id"]),
            ("admin_new_order_alert", order["tracking_id"]),
        ]

    def test_no_customer_email_without_address(self, service, notifier):
        service.create_order(make_draft(email=None))
        assert notifier.events() == ["admin_new_order_alert"]

    def test_notification_failure_does_not_fail_order(self, db, draft):
        service = OrderService(db, RecordingNotifier(fail=True))
        order = service.create_order(draft)
        assert db["order"].count_documents({"_id": ObjectId(order["id"])}) == 1

    @pytest.mark.parametrize("overrides", [
        {"items": []},
        {"name": "   "},
        {"phone": ""},
        {"phone": "12345"},
        {"address": {"street": "1 Road", "city": "", "province": "Sindh"}},
        {"address": {"street": "1 Road", "city": "Karachi", "province": " "}},
    ])
    def test_invalid_drafts_rejected_before_write(self, db, service, notifier, overrides):
        with pytest.raises(BadRequestError):
            service.create_order(make_draft(**overrides))
        assert db["order"].count_documents({}) == 0
        assert notifier.sent == []


class TestTransitionStatus:
    def test_done_keeps_items_and_total(self, service, notifier, draft):
        order = service.create_order(draft)
        done = advance(service, order["id"], "accepted", "processing", "delivering", "done")
        assert done["status"] == "done"
        assert done["items"] == order["items"]
        assert done["total"] == order["total"]
        assert notifier.events()[-1] == "delivery_confirmation"

    def test_only_done_sends_delivery_confirmation(self, service, notifier, draft):
        order = service.create_order(draft)
        advance(service, order["id"], "accepted", "processing")
        assert "delivery_confirmation" not in notifier.events()

    def test_delivery_notification_failure_keeps_status(self, db, draft):
        service = OrderService(db, RecordingNotifier())
        order = service.create_order(draft)
        advance(service, order["id"], "accepted", "processing", "delivering")

        service.notifier = RecordingNotifier(fail=True)
        done = service.transition_status(order["id"], "done")
        assert done["status"] == "done"
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "done"

    def test_unknown_order(self, db, service):
        with pytest.raises(OrderNotFoundError):
            service.transition_status(str(ObjectId()), "accepted")
        assert db["order"].count_documents({}) == 0

    def test_malformed_id(self, service):
        with pytest.raises(BadRequestError):
            service.transition_status("not-an-id", "accepted")

    def test_unknown_status(self, service, draft):
        order = service.create_order(draft)
        with pytest.raises(BadRequestError):
            service.transition_status(order["id"], "shipped")

    def test_illegal_edge_rejected_without_write(self, db, service, draft):
        order = service.create_order(draft)
        with pytest.raises(InvalidTransitionError):
            service.transition_status(order["id"], "delivering")
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert stored["status"] == "pending"

    def test_soft_deleted_order_cannot_transition(self, service, draft):
        order = service.create_order(draft)
        service.soft_delete_order(order["id"])
        with pytest.raises(OrderNotFoundError):
            service.transition_status(order["id"], "accepted")

    def test_concurrent_change_detected(self, db, draft):
        class RacingCollection:
            """Another admin rejects the order right after we read it."""

            def __init__(self, real):
                self.real = real

            def find_one(self, *args, **kwargs):
                doc = self.real.find_one(*args, **kwargs)
                self.real.update_one({"_id": doc["_id"]}, {"$set": {"status": "rejected"}})
                return doc

            def __getattr__(self, name):
                return getattr(self.real, name)

        class RacingOrderService(OrderService):
            @property
            def collection(self):
                return RacingCollection(self.db["order"])

        order = OrderService(db, RecordingNotifier()).create_order(draft)
        with pytest.raises(OrderConflictError):
            RacingOrderService(db, RecordingNotifier()).transition_status(order["id"], "accepted")
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "rejected"


class TestSoftDeleteAndListing:
    def test_soft_delete_hides_from_admin_only(self, service, draft):
        order = service.create_order(draft)
        service.soft_delete_order(order["id"])

        assert service.list_orders(scope="admin") == []
        assert service.get_order(order["id"])["deleted_by_admin"] is True
        customer = service.list_orders(scope="customer", email="ayesha@example.com")
        assert [o["id"] for o in customer] == [order["id"]]

    def test_soft_delete_unknown(self, service):
        with pytest.raises(OrderNotFoundError):
            service.soft_delete_order(str(ObjectId()))

    def test_admin_listing_newest_first(self, service):
        first = service.create_order(make_draft(name="First Buyer"))
        second = service.create_order(make_draft(name="Second Buyer"))
        assert [o["id"] for o in service.list_orders(scope="admin")] == [second["id"], first["id"]]

    def test_customer_listing_scoped_to_email(self, service):
        mine = service.create_order(make_draft())
        service.create_order(make_draft(email="someone.else@example.com"))
        assert [o["id"] for o in service.list_orders(scope="customer", email="ayesha@example.com")] == [mine["id"]]

    def test_customer_active_only_hides_rejected(self, service):
        kept = service.create_order(make_draft())
        rejected = service.create_order(make_draft())
        service.transition_status(rejected["id"], "rejected")

        active = service.list_orders(scope="customer", email="ayesha@example.com", active_only=True)
        assert [o["id"] for o in active] == [kept["id"]]
        everything = service.list_orders(scope="customer", email="ayesha@example.com")
        assert len(everything) == 2

    def test_customer_scope_needs_email(self, service):
        with pytest.raises(BadRequestError):
            service.list_orders(scope="customer")


class TestLookupAndSearch:
    def test_lookup_by_tracking_code(self, service, draft):
        order = service.create_order(draft)
        assert service.get_order(order["tracking_id"])["id"] == order["id"]

    def test_lookup_missing(self, service):
        with pytest.raises(OrderNotFoundError):
            service.get_order("TRK000")
        with pytest.raises(OrderNotFoundError):
            service.get_order(str(ObjectId()))

    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_blank_search_rejected(self, service, query):
        with pytest.raises(BadRequestError):
            service.search_orders(query)

    def test_search_matches_any_field_case_insensitively(self, db, service):
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        common = {"items": [], "subtotal": 0, "shipping_fee": 0, "total": 0, "status": "pending"}
        db["order"].insert_many([
            {"tracking_id": "TRK123456", "name": "Ali", "phone": "0300", "email": "ali@example.com",
             "created_at": base, **common},
            {"tracking_id": "TRK999000", "name": "trk123 fan", "phone": "0301", "email": "fan@example.com",
             "created_at": base + timedelta(hours=1), **common},
            {"tracking_id": "TRK999111", "name": "Bilal", "phone": "0302", "email": "bilal@example.com",
             "created_at": base + timedelta(hours=2), **common},
        ])
        found = service.search_orders("TRK123")
        assert [o["tracking_id"] for o in found] == ["TRK999000", "TRK123456"]

    def test_search_by_phone(self, service):
        order = service.create_order(make_draft(phone="0333-7654321"))
        assert [o["id"] for o in service.search_orders("7654321")] == [order["id"]]

    def test_search_treats_query_literally(self, service, draft):
        service.create_order(draft)
        assert service.search_orders(".*") == []

    def test_legacy_order_shape(self, db, service):
        legacy_id = db["order"].insert_one({
            "tracking_id": "TRK1700000000000ABCDEFGHI",
            "name": "Old Customer",
            "phone": "03211234567",
            "address": "House 4, Street 9, Rawalpindi",
            "cart": [{"id": "p9_default", "name": "Scarf", "price": 300, "qty": 2, "selectedColor": "blue"}],
            "total": 600,
        }).inserted_id

        order = service.get_order(str(legacy_id))
        assert order["status"] == "pending"
        assert order["items"][0]["quantity"] == 2
        assert order["items"][0]["color"] == "blue"
        assert order["address_text"] == "House 4, Street 9, Rawalpindi"
        assert service.transition_status(str(legacy_id), "accepted")["status"] == "accepted"


class TestCheckout:
    def test_checkout_selected_lines(self, db, service, tee, mug, cart_session):
        tee_line = cart_session.add(tee, color="red", quantity=2)
        mug_line = cart_session.add(mug)
        cart_session.persist()

        contact = CheckoutContact(
            name="Sana Shopper",
            phone="03001112222",
            email="shopper@example.com",
            address={"street": "7 Canal View", "city": "Lahore", "province": "Punjab"},
        )
        order = service.checkout(cart_session, [tee_line.id], contact)

        assert order["subtotal"] == 200
        assert order["shipping_fee"] == SHIPPING_FEE
        assert order["total"] == 200 + SHIPPING_FEE
        assert [(i["product_id"], i["quantity"], i["color"]) for i in order["items"]] == [(tee["id"], 2, "red")]
        assert [i.id for i in cart_session.items] == [mug_line.id]
        stored = db["cart"].find_one({"shopper_key": "shopper@example.com"})["items"]
        assert [i["id"] for i in stored] == [mug_line.id]

    def test_checkout_everything_clears_cart(self, db, service, tee, cart_session):
        line = cart_session.add(tee)
        cart_session.persist()
        contact = CheckoutContact(name="Sana", phone="03001112222",
                                  address={"street": "7 Canal View", "city": "Lahore", "province": "Punjab"})
        service.checkout(cart_session, [line.id], contact)
        assert cart_session.items == []
        assert db["cart"].find_one({"shopper_key": "shopper@example.com"})["items"] == []

    def test_empty_selection(self, service, tee, cart_session):
        cart_session.add(tee)
        contact = CheckoutContact(name="Sana", phone="03001112222",
                                  address={"street": "7 Canal View", "city": "Lahore", "province": "Punjab"})
        with pytest.raises(BadRequestError):
            service.checkout(cart_session, [], contact)

    def test_stock_is_not_decremented(self, catalog, service, tee, cart_session):
        line = cart_session.add(tee, quantity=3)
        contact = CheckoutContact(name="Sana", phone="03001112222",
                                  address={"street": "7 Canal View", "city": "Lahore", "province": "Punjab"})
        service.checkout(cart_session, [line.id], contact)
        assert catalog.find_product(tee["id"])["stock"] == 5
