"""
Cart reconciliation.

Line items are CartItem models. The module-level functions are pure: they take
a list of items and return a new one. CartSession binds them to a shopper key,
the ``cart`` collection and a local cache that keeps the last known snapshot
so a database outage never blocks the shopper.
"""
import os
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from cachetools import TTLCache
from pymongo.database import Database
from pymongo.errors import PyMongoError

from catalog import Catalog, primary_image
from database import now
from errors import BadRequestError, CartItemNotFoundError, UpstreamUnavailableError
from schemas import CartItem

logger = logging.getLogger("storefront.cart")

DEFAULT_STOCK_CEILING = 99
GUEST_KEY_PREFIX = "guest:"
CART_CACHE_SIZE = int(os.getenv("CART_CACHE_SIZE", "10000"))
CART_CACHE_TTL = int(os.getenv("CART_CACHE_TTL", "86400"))

COLOR_NAMES = {
    "red": "Red",
    "blue": "Blue",
    "green": "Green",
    "black": "Black",
    "white": "White",
    "yellow": "Yellow",
    "purple": "Purple",
    "pink": "Pink",
    "gray": "Gray",
    "brown": "Brown",
}


def line_id(product_id: str, color: Optional[str] = None) -> str:
    return f"{product_id}_{color or 'default'}"


def color_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return COLOR_NAMES.get(value, value)


def stock_ceiling(stock: Optional[int]) -> int:
    # stock 0 counts as unknown, not as sold out
    return stock or DEFAULT_STOCK_CEILING


def add_item(items: List[CartItem], product: Dict[str, Any], color: Optional[str] = None,
             quantity: int = 1) -> List[CartItem]:
    """Add ``quantity`` of a product (in ``color``) to the cart.

    An existing line for the same product and color is incremented, otherwise a
    new line snapshots the product's name, price and image. Stock is not
    checked here.
    """
    product_id = str(product.get("id") or product.get("_id"))
    key = line_id(product_id, color)

    for index, item in enumerate(items):
        if item.id == key:
            updated = item.model_copy(update={"quantity": item.quantity + quantity})
            return items[:index] + [updated] + items[index + 1:]

    new_item = CartItem(
        id=key,
        product_id=product_id,
        name=product["name"],
        price=product["price"],
        image=primary_image(product),
        quantity=quantity,
        color=color,
        color_name=color_name(color),
        stock=product.get("stock"),
    )
    return items + [new_item]


def set_quantity(items: List[CartItem], item_id: str, new_quantity: int) -> List[CartItem]:
    """Set a line's quantity, clamped to its stock ceiling.

    Quantities below 1 are rejected: the list comes back unchanged. Removing a
    line is remove_item's job.
    """
    if new_quantity < 1:
        return items
    return [
        item.model_copy(update={"quantity": min(new_quantity, stock_ceiling(item.stock))})
        if item.id == item_id else item
        for item in items
    ]


def remove_item(items: List[CartItem], item_id: str) -> List[CartItem]:
    return [item for item in items if item.id != item_id]


def select_items(items: List[CartItem], item_ids: Iterable[str]) -> List[CartItem]:
    wanted = set(item_ids)
    return [item for item in items if item.id in wanted]


def cart_count(items: Iterable[CartItem]) -> int:
    return sum(item.quantity for item in items)


def cart_total(items: Iterable[CartItem]) -> float:
    return round(sum(item.price * item.quantity for item in items), 2)


def find_item(items: List[CartItem], item_id: str) -> CartItem:
    for item in items:
        if item.id == item_id:
            return item
    raise CartItemNotFoundError(item_id)


class CartCache(Protocol):
    """Local snapshot store the session falls back to."""

    def get(self, key: str) -> Optional[List[CartItem]]:
        ...

    def set(self, key: str, items: List[CartItem]) -> None:
        ...


class MemoryCartCache:
    """Bounded in-process snapshots.

    Holds at most ``maxsize`` carts, evicting the least recently used, and
    drops entries older than ``ttl`` seconds.
    """

    def __init__(self, maxsize: int = CART_CACHE_SIZE, ttl: float = CART_CACHE_TTL,
                 timer: Callable[[], float] = time.monotonic):
        self._carts = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._carts)

    def get(self, key: str) -> Optional[List[CartItem]]:
        with self._lock:
            items = self._carts.get(key)
        return list(items) if items is not None else None

    def set(self, key: str, items: List[CartItem]) -> None:
        with self._lock:
            self._carts[key] = list(items)


class CartRepository:
    """Persisted carts, one document per shopper key."""

    def __init__(self, database: Optional[Database], catalog: Optional[Catalog] = None):
        self.db = database
        self.catalog = catalog

    @property
    def collection(self):
        if self.db is None:
            raise UpstreamUnavailableError("Database not configured")
        return self.db["cart"]

    def fetch(self, shopper_key: str) -> List[CartItem]:
        doc = self.collection.find_one({"shopper_key": shopper_key})
        if not doc:
            return []
        items = [CartItem(**i) for i in doc.get("items", [])]
        if self.catalog is None:
            return items

        reconciled = self.reconcile(items)
        if len(reconciled) != len(items):
            logger.info("Dropped %d unavailable item(s) from cart of %s",
                        len(items) - len(reconciled), shopper_key)
            self.upsert(shopper_key, reconciled)
        return reconciled

    def reconcile(self, items: List[CartItem]) -> List[CartItem]:
        """Drop lines whose product is gone and clamp quantities to live stock.

        Name and price stay as snapshotted at add time.
        """
        if self.catalog is None:
            raise UpstreamUnavailableError("Catalog not available")
        result = []
        for item in items:
            product = self.catalog.get_if_exists(item.product_id)
            if product is None:
                continue
            stock = product.get("stock")
            result.append(item.model_copy(update={
                "stock": stock,
                "quantity": max(1, min(item.quantity, stock_ceiling(stock))),
                "image": item.image or primary_image(product),
            }))
        return result

    def upsert(self, shopper_key: str, items: List[CartItem]) -> None:
        self.collection.update_one(
            {"shopper_key": shopper_key},
            {
                "$set": {
                    "shopper_key": shopper_key,
                    "items": [i.model_dump() for i in items],
                    "updated_at": now(),
                },
                "$setOnInsert": {"created_at": now()},
            },
            upsert=True,
        )

    def clear(self, shopper_key: str) -> None:
        self.collection.update_one(
            {"shopper_key": shopper_key},
            {"$set": {"items": [], "updated_at": now()}},
        )


class CartSession:
    """A shopper's cart for the duration of one interaction.

    Signed-in shoppers are keyed by ``shopper_key`` and persisted. A guest
    cart has only a ``guest_id`` and lives in the cache under its own entry.
    Persistence is a full-list upsert, last writer wins. ``synced`` is False
    whenever the items shown only exist in the local cache.
    """

    def __init__(self, repository: CartRepository, cache: CartCache, shopper_key: Optional[str] = None,
                 guest_id: Optional[str] = None):
        if not shopper_key and not guest_id:
            raise BadRequestError("Shopper key is required")
        self.repository = repository
        self.cache = cache
        self.shopper_key = shopper_key
        self.guest_id = guest_id
        self.items: List[CartItem] = []
        self.synced = False

    @property
    def cache_key(self) -> str:
        return self.shopper_key or f"{GUEST_KEY_PREFIX}{self.guest_id}"

    @property
    def count(self) -> int:
        return cart_count(self.items)

    @property
    def total(self) -> float:
        return cart_total(self.items)

    def load(self) -> List[CartItem]:
        if not self.shopper_key:
            self.items = self.cache.get(self.cache_key) or []
            return self.items
        try:
            self.items = self.repository.fetch(self.shopper_key)
            self.synced = True
            self.cache.set(self.cache_key, self.items)
        except (PyMongoError, UpstreamUnavailableError) as e:
            logger.warning("Loading cart for %s failed, using cached copy: %s", self.shopper_key, e)
            self.items = self.cache.get(self.cache_key) or []
            self.synced = False
        return self.items

    def add(self, product: Dict[str, Any], color: Optional[str] = None, quantity: int = 1) -> CartItem:
        self.items = add_item(self.items, product, color, quantity)
        return find_item(self.items, line_id(str(product.get("id") or product.get("_id")), color))

    def set_quantity(self, item_id: str, quantity: int) -> CartItem:
        find_item(self.items, item_id)
        self.items = set_quantity(self.items, item_id, quantity)
        return find_item(self.items, item_id)

    def remove(self, item_id: str) -> None:
        find_item(self.items, item_id)
        self.items = remove_item(self.items, item_id)

    def replace(self, items: List[CartItem]) -> None:
        self.items = list(items)

    def keep_local(self) -> None:
        """Cache the current items without writing them to the store."""
        self.cache.set(self.cache_key, self.items)
        self.synced = False

    def persist(self) -> bool:
        """Write the cart through. Returns False when only the cache got it."""
        self.cache.set(self.cache_key, self.items)
        if not self.shopper_key:
            return False
        try:
            self.repository.upsert(self.shopper_key, self.items)
            self.synced = True
        except (PyMongoError, UpstreamUnavailableError) as e:
            logger.warning("Saving cart for %s failed, kept local copy: %s", self.shopper_key, e)
            self.synced = False
        return self.synced

    def clear(self) -> bool:
        self.items = []
        self.cache.set(self.cache_key, [])
        if not self.shopper_key:
            return False
        try:
            self.repository.clear(self.shopper_key)
            self.synced = True
        except (PyMongoError, UpstreamUnavailableError) as e:
            logger.warning("Clearing cart for %s failed: %s", self.shopper_key, e)
            self.synced = False
        return self.synced

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.model_dump() for i in self.items],
            "total_items": len(self.items),
            "total_quantity": self.count,
            "total_price": self.total,
            "persisted": self.synced,
        }


class CheckoutSelection:
    """The subset of cart lines a shopper is checking out.

    Changes made here are applied to the underlying session.
    """

    def __init__(self, session: CartSession, item_ids: Iterable[str]):
        self.session = session
        self.item_ids = [i for i in dict.fromkeys(item_ids) if any(item.id == i for item in session.items)]

    @property
    def items(self) -> List[CartItem]:
        return select_items(self.session.items, self.item_ids)

    @property
    def subtotal(self) -> float:
        return cart_total(self.items)

    def set_quantity(self, item_id: str, quantity: int) -> CartItem:
        if item_id not in self.item_ids:
            raise CartItemNotFoundError(item_id)
        return self.session.set_quantity(item_id, quantity)

    def remove(self, item_id: str) -> None:
        if item_id not in self.item_ids:
            raise CartItemNotFoundError(item_id)
        self.session.remove(item_id)
        self.item_ids.remove(item_id)
