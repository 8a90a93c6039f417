"""Product reviews and the rating aggregate they keep on the product."""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from catalog import Catalog
from database import create_document, get_documents, now, to_dict, to_oid
from errors import BadRequestError, DuplicateReviewError, ReviewNotFoundError
from schemas import Review

logger = logging.getLogger("storefront.reviews")


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    review = to_dict(doc)
    review.pop("user_email", None)
    return review


def _check_rating(rating: Any) -> int:
    try:
        value = int(rating)
    except (TypeError, ValueError):
        raise BadRequestError("Rating must be a number between 1 and 5")
    if not 1 <= value <= 5:
        raise BadRequestError("Rating must be a number between 1 and 5")
    return value


class ReviewService:
    def __init__(self, database: Database, catalog: Catalog):
        self.db = database
        self.catalog = catalog

    @property
    def collection(self):
        return self.db["review"]

    def list_reviews(self, product_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"product_id": product_id}).sort([("created_at", -1), ("_id", -1)])
        return [_public(r) for r in cursor]

    def find_review(self, product_id: str, review_id: str) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": to_oid(review_id, "Review ID"), "product_id": product_id})
        if not doc:
            raise ReviewNotFoundError(review_id)
        return doc

    def add_review(self, product_id: str, author: Dict[str, Any], rating: Any, comment: str,
                   images: Optional[List[str]] = None) -> Dict[str, Any]:
        self.catalog.find_product(product_id)
        if not comment or not comment.strip():
            raise BadRequestError("Missing required fields")
        rating = _check_rating(rating)

        if self.collection.find_one({"product_id": product_id, "user_id": author["user_id"]}):
            raise DuplicateReviewError(product_id, author["user_id"])

        review = Review(
            product_id=product_id,
            user_id=author["user_id"],
            user_name=author.get("name"),
            user_email=author.get("email"),
            user_avatar=author.get("avatar") or "/avatar-default.jpg",
            rating=rating,
            comment=comment.strip(),
            images=images or [],
        )
        review_id = create_document(self.db, "review", review)
        self.recompute_rating(product_id)
        logger.info("Review %s added to product %s", review_id, product_id)
        return _public(self.collection.find_one({"_id": to_oid(review_id)}))

    def edit_review(self, product_id: str, review_id: str, rating: Any = None, comment: Optional[str] = None,
                    images: Optional[List[str]] = None) -> Dict[str, Any]:
        existing = self.find_review(product_id, review_id)
        updates: Dict[str, Any] = {"updated_at": now()}
        if rating is not None:
            updates["rating"] = _check_rating(rating)
        if comment:
            updates["comment"] = comment.strip()
        if images is not None:
            updates["images"] = images

        self.collection.update_one({"_id": existing["_id"]}, {"$set": updates})
        self.recompute_rating(product_id)
        return _public(self.collection.find_one({"_id": existing["_id"]}))

    def delete_review(self, product_id: str, review_id: str) -> None:
        existing = self.find_review(product_id, review_id)
        self.collection.delete_one({"_id": existing["_id"]})
        self.recompute_rating(product_id)
        logger.info("Review %s removed from product %s", review_id, product_id)

    def recompute_rating(self, product_id: str) -> Dict[str, Any]:
        """Full scan of the product's reviews; zero reviews resets both fields."""
        ratings = [r["rating"] for r in get_documents(self.db, "review", {"product_id": product_id})]
        if ratings:
            average = round(sum(ratings) / len(ratings), 1)
            count = len(ratings)
        else:
            average, count = 0, 0
        self.catalog.update_aggregate_rating(product_id, average, count)
        return {"average_rating": average, "review_count": count}
