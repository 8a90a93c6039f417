"""
Order lifecycle.

Orders move along a fixed table of legal status edges:

    pending -> accepted -> processing -> delivering -> done
    pending -> rejected

``done`` and ``rejected`` are terminal. Items and totals are a snapshot taken
at checkout and are never recomputed afterwards. Email side effects are best
effort and run after the write they belong to has committed.
"""
import os
import re
import time
import random
import string
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from cart import CartSession, CheckoutSelection
from database import create_document, now, to_oid
from errors import BadRequestError, InvalidTransitionError, OrderConflictError, OrderNotFoundError
from notifications import ADMIN_NEW_ORDER, CUSTOMER_CONFIRMATION, DELIVERY_CONFIRMATION, Notifier, dispatch
from schemas import ORDER_STATUSES, CheckoutContact, Order, OrderDraft, OrderItem, format_address

logger = logging.getLogger("storefront.orders")

SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "200"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "5000"))
MIN_PHONE_LENGTH = 7

TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"accepted", "rejected"}),
    "accepted": frozenset({"processing"}),
    "processing": frozenset({"delivering"}),
    "delivering": frozenset({"done"}),
    "done": frozenset(),
    "rejected": frozenset(),
}

SEARCH_FIELDS = ("tracking_id", "phone", "name", "email")
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


def generate_tracking_id() -> str:
    """TRK + epoch millis + 9 random characters. Not checked for uniqueness."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"TRK{int(time.time() * 1000)}{suffix}"


def can_transition(current: Optional[str], new: str) -> bool:
    return new in TRANSITIONS.get(current or "pending", frozenset())


def shipping_fee_for(subtotal: float) -> float:
    if subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0.0
    return SHIPPING_FEE


def validate_draft(draft: OrderDraft) -> None:
    if not draft.items:
        raise BadRequestError("No items selected for checkout")
    missing = [
        field
        for field, value in (
            ("name", draft.name),
            ("phone", draft.phone),
            ("address", draft.address.street),
            ("city", draft.address.city),
            ("province", draft.address.province),
        )
        if not value or not value.strip()
    ]
    if missing:
        raise BadRequestError(f"Missing required fields: {', '.join(missing)}")
    if len(draft.phone.strip()) < MIN_PHONE_LENGTH:
        raise BadRequestError(f"Phone number must be at least {MIN_PHONE_LENGTH} characters")


def _normalize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    # the earlier storefront stored cart lines: qty instead of quantity
    normalized = dict(item)
    if "quantity" not in normalized:
        normalized["quantity"] = normalized.pop("qty", 1)
    if "color" not in normalized and "selectedColor" in normalized:
        normalized["color"] = normalized.pop("selectedColor")
    return normalized


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Public shape of an order document, legacy records included."""
    items = doc.get("items") or doc.get("cart") or []
    return {
        "id": str(doc["_id"]),
        "tracking_id": doc.get("tracking_id"),
        "name": doc.get("name"),
        "phone": doc.get("phone"),
        "email": doc.get("email"),
        "address": doc.get("address"),
        "address_text": format_address(doc.get("address")),
        "items": [_normalize_item(i) for i in items],
        "subtotal": doc.get("subtotal"),
        "shipping_fee": doc.get("shipping_fee"),
        "total": doc.get("total") or 0,
        "payment_method": doc.get("payment_method"),
        "notes": doc.get("notes"),
        "status": doc.get("status") or "pending",
        "deleted_by_admin": bool(doc.get("deleted_by_admin", False)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


def status_counts(orders: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts = {"all": 0, **{s: 0 for s in ORDER_STATUSES}}
    for order in orders:
        counts["all"] += 1
        status = order.get("status") or "pending"
        if status in counts:
            counts[status] += 1
    return counts


class OrderService:
    def __init__(self, database: Database, notifier: Notifier):
        self.db = database
        self.notifier = notifier

    @property
    def collection(self):
        return self.db["order"]

    def create_order(self, draft: OrderDraft) -> Dict[str, Any]:
        validate_draft(draft)

        order = Order(
            tracking_id=generate_tracking_id(),
            name=draft.name.strip(),
            phone=draft.phone.strip(),
            email=draft.email,
            address=draft.address,
            items=draft.items,
            subtotal=draft.subtotal,
            shipping_fee=draft.shipping_fee,
            total=round(draft.subtotal + draft.shipping_fee, 2),
            payment_method=draft.payment_method,
            notes=draft.notes,
            # online payment is only a label, nothing is captured here
            status="pending" if draft.payment_method == "cod" else "processing",
        )
        order_id = create_document(self.db, "order", order)
        created = serialize_order(self.collection.find_one({"_id": to_oid(order_id)}))
        logger.info("Order %s created as %s (%s)", created["tracking_id"], created["status"], order_id)

        if created.get("email"):
            dispatch(self.notifier, CUSTOMER_CONFIRMATION, created)
        dispatch(self.notifier, ADMIN_NEW_ORDER, created)
        return created

    def get_order(self, ref: str) -> Dict[str, Any]:
        """Look up by id or tracking code. Soft-deleted orders are included."""
        if not ref or not ref.strip():
            raise BadRequestError("Order ID is required")
        ref = ref.strip()
        if ObjectId.is_valid(ref):
            doc = self.collection.find_one({"_id": ObjectId(ref)})
        else:
            doc = self.collection.find_one({"tracking_id": ref})
        if not doc:
            raise OrderNotFoundError(ref)
        return serialize_order(doc)

    def transition_status(self, order_id: str, new_status: str) -> Dict[str, Any]:
        if new_status not in ORDER_STATUSES:
            raise BadRequestError(f"Unknown status: {new_status}")
        oid = to_oid(order_id, "Order ID")

        current = self.collection.find_one({"_id": oid, "deleted_by_admin": {"$ne": True}})
        if not current:
            raise OrderNotFoundError(order_id)
        if not can_transition(current.get("status"), new_status):
            raise InvalidTransitionError(current.get("status") or "pending", new_status)

        # only write if nobody moved the order since we read it
        updated = self.collection.find_one_and_update(
            {"_id": oid, "status": current.get("status")},
            {"$set": {"status": new_status, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise OrderConflictError(order_id)

        order = serialize_order(updated)
        logger.info("Order %s moved %s -> %s", order["tracking_id"], current.get("status"), new_status)
        if new_status == "done":
            dispatch(self.notifier, DELIVERY_CONFIRMATION, order)
        return order

    def soft_delete_order(self, order_id: str) -> Dict[str, Any]:
        updated = self.collection.find_one_and_update(
            {"_id": to_oid(order_id, "Order ID")},
            {"$set": {"deleted_by_admin": True, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise OrderNotFoundError(order_id)
        logger.info("Order %s removed from admin view", updated.get("tracking_id"))
        return serialize_order(updated)

    def list_orders(self, scope: str = "admin", email: Optional[str] = None,
                    active_only: bool = False) -> List[Dict[str, Any]]:
        if scope == "admin":
            query: Dict[str, Any] = {"deleted_by_admin": {"$ne": True}}
        elif scope == "customer":
            if not email:
                raise BadRequestError("Email is required")
            query = {"email": email}
            if active_only:
                query["status"] = {"$ne": "rejected"}
        else:
            raise BadRequestError(f"Unknown scope: {scope}")
        return [serialize_order(o) for o in self.collection.find(query).sort(NEWEST_FIRST)]

    def search_orders(self, query: Optional[str]) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise BadRequestError("Search query is required")
        pattern = re.escape(query.strip())
        cursor = self.collection.find(
            {"$or": [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]}
        ).sort(NEWEST_FIRST)
        return [serialize_order(o) for o in cursor]

    def checkout(self, session: CartSession, item_ids: Iterable[str], contact: CheckoutContact) -> Dict[str, Any]:
        """Place an order for the selected cart lines, then drop them from the cart."""
        selection = CheckoutSelection(session, item_ids)
        if not selection.items:
            raise BadRequestError("No items selected for checkout")

        subtotal = selection.subtotal
        draft = OrderDraft(
            name=contact.name,
            phone=contact.phone,
            email=contact.email,
            address=contact.address,
            items=[
                OrderItem(
                    product_id=i.product_id,
                    name=i.name,
                    price=i.price,
                    quantity=i.quantity,
                    color=i.color,
                    image=i.image,
                )
                for i in selection.items
            ],
            subtotal=subtotal,
            shipping_fee=shipping_fee_for(subtotal),
            payment_method=contact.payment_method,
            notes=contact.notes,
        )
        order = self.create_order(draft)

        for item_id in list(selection.item_ids):
            selection.remove(item_id)
        if session.items:
            session.persist()
        else:
            session.clear()
        return order

