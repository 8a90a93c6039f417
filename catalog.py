"""Product catalog backed by the ``product`` collection."""
import re
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, now, to_dict, to_oid
from errors import BadRequestError, ProductNotFoundError, UpstreamUnavailableError
from schemas import Product

logger = logging.getLogger("storefront.catalog")

DEFAULT_RELATED_LIMIT = 4
PLACEHOLDER_IMAGE = "/placeholder.jpg"


def primary_image(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("images") or []
    if images:
        return images[0]
    return product.get("image")


class Catalog:
    def __init__(self, database: Optional[Database]):
        self.db = database

    @property
    def collection(self):
        if self.db is None:
            raise UpstreamUnavailableError("Database not configured")
        return self.db["product"]

    def find_product(self, product_id: str) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": to_oid(product_id, "Product ID")})
        if not doc:
            raise ProductNotFoundError(product_id)
        return to_dict(doc)

    def get_if_exists(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Like find_product, but None for unknown or malformed ids."""
        try:
            return self.find_product(product_id)
        except (ProductNotFoundError, BadRequestError):
            return None

    def list_products(self, category: Optional[str] = None, q: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        if q:
            pattern = re.escape(q.strip())
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        cursor = self.collection.find(query).sort([("created_at", -1), ("_id", -1)])
        return [to_dict(p) for p in cursor]

    def list_categories(self) -> List[str]:
        return sorted(c for c in self.collection.distinct("category") if c)

    def list_by_category(self, category: Optional[str], exclude_id: Optional[str] = None,
                         min_stock: int = 1, limit: int = DEFAULT_RELATED_LIMIT) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"category": category, "stock": {"$gte": min_stock}}
        if exclude_id:
            query["_id"] = {"$ne": to_oid(exclude_id)}
        cursor = self.collection.find(query).sort([("average_rating", -1), ("created_at", -1)]).limit(limit)
        return [to_dict(p) for p in cursor]

    def related_products(self, product_id: str, limit: int = DEFAULT_RELATED_LIMIT) -> List[Dict[str, Any]]:
        """Same-category products in stock, topped up with the best rated ones."""
        product = self.find_product(product_id)
        related = self.list_by_category(product.get("category"), exclude_id=product_id, limit=limit)

        if len(related) < limit:
            taken = [to_oid(product_id)] + [to_oid(p["id"]) for p in related]
            cursor = (
                self.collection.find({"_id": {"$nin": taken}, "stock": {"$gt": 0}})
                .sort([("average_rating", -1), ("review_count", -1)])
                .limit(limit - len(related))
            )
            related.extend(to_dict(p) for p in cursor)

        return [
            {
                "id": p["id"],
                "name": p.get("name"),
                "price": p.get("price"),
                "image": primary_image(p) or PLACEHOLDER_IMAGE,
                "category": p.get("category"),
                "stock": p.get("stock", 0),
                "average_rating": p.get("average_rating", 0),
                "review_count": p.get("review_count", 0),
            }
            for p in related
        ]

    def update_aggregate_rating(self, product_id: str, average: float, count: int) -> None:
        self.collection.update_one(
            {"_id": to_oid(product_id, "Product ID")},
            {"$set": {"average_rating": average, "review_count": count, "updated_at": now()}},
        )

    # Back office

    def create_product(self, product: Product) -> str:
        data = product.model_dump()
        data["has_colors"] = bool(data["colors"]) or data["has_colors"]
        product_id = create_document(self.db, "product", data)
        logger.info("Created product %s (%s)", product_id, product.name)
        return product_id

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_oid(product_id, "Product ID")
        # rating fields belong to review aggregation
        updates = {k: v for k, v in updates.items() if k not in ("average_rating", "review_count")}
        if "colors" in updates:
            updates["has_colors"] = bool(updates["colors"])
        res = self.collection.update_one({"_id": oid}, {"$set": updates | {"updated_at": now()}})
        if res.matched_count == 0:
            raise ProductNotFoundError(product_id)
        return self.find_product(product_id)

    def delete_product(self, product_id: str) -> None:
        res = self.collection.delete_one({"_id": to_oid(product_id, "Product ID")})
        if res.deleted_count == 0:
            raise ProductNotFoundError(product_id)
        logger.info("Deleted product %s", product_id)
