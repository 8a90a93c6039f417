import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
import jwt

from cart import CartRepository, CartSession, MemoryCartCache
from catalog import Catalog
from database import get_db, get_db_or_none
from errors import BadRequestError, StorefrontError, UpstreamUnavailableError
from notifications import Notifier, default_notifier
from orders import FREE_SHIPPING_THRESHOLD, SHIPPING_FEE, OrderService, status_counts
from reviews import ReviewService
from schemas import Address, CartItem, CheckoutContact, ColorOption, OrderDraft, PaymentMethod, Product

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("storefront")

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))
ADMIN_ROLES = ["admin", "staff"]

# Configuration
STORE_NAME = os.getenv("STORE_NAME", "Storefront")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "PKR")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

app = FastAPI(title="Storefront API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Identity
class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    name: Optional[str] = None
    role: str = "customer"


def create_token(user_id: str, email: str, name: Optional[str] = None, role: str = "customer") -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], name=payload.get("name"),
                         role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Optional[TokenData]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return decode_token(token)


def require_user(user: Optional[TokenData]) -> TokenData:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_role(user: Optional[TokenData], roles: List[str]) -> TokenData:
    user = require_user(user)
    if user.role not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


# Collaborators
_cart_cache = MemoryCartCache()
_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = default_notifier()
    return _notifier


def get_cart_cache() -> MemoryCartCache:
    return _cart_cache


def get_catalog(database: Optional[Database] = Depends(get_db_or_none)) -> Catalog:
    return Catalog(database)


def get_order_service(database: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier)) -> OrderService:
    return OrderService(database, notifier)


def get_review_service(database: Database = Depends(get_db), catalog: Catalog = Depends(get_catalog)) -> ReviewService:
    return ReviewService(database, catalog)


def get_cart_session(user: Optional[TokenData] = Depends(get_current_user),
                     database: Optional[Database] = Depends(get_db_or_none),
                     catalog: Catalog = Depends(get_catalog),
                     cache: MemoryCartCache = Depends(get_cart_cache)) -> CartSession:
    session = CartSession(CartRepository(database, catalog), cache, shopper_key=user.email if user else None)
    session.load()
    return session


# Error handlers
@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error_type": exc.kind})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    unavailable = UpstreamUnavailableError()
    return JSONResponse(status_code=unavailable.status_code,
                        content={"detail": str(unavailable), "error_type": unavailable.kind})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"detail": problems, "error_type": BadRequestError.kind})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "shipping": {"fee": SHIPPING_FEE, "freeAbove": FREE_SHIPPING_THRESHOLD},
        "paymentMethods": ["cod", "online"],
    }


# Products
class ProductUpdateDTO(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    features: Optional[List[str]] = None
    colors: Optional[List[ColorOption]] = None


@app.get("/products")
def list_products(category: Optional[str] = None, q: Optional[str] = None, catalog: Catalog = Depends(get_catalog)):
    return catalog.list_products(category=category, q=q)


@app.get("/products/categories")
def list_categories(catalog: Catalog = Depends(get_catalog)):
    return catalog.list_categories()


@app.get("/products/{product_id}")
def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.find_product(product_id)


@app.get("/products/{product_id}/related")
def related_products(product_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.related_products(product_id)


@app.post("/admin/products", status_code=201)
def create_product(data: Product, catalog: Catalog = Depends(get_catalog),
                   user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    return {"id": catalog.create_product(data)}


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, data: ProductUpdateDTO, catalog: Catalog = Depends(get_catalog),
                   user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    return catalog.update_product(product_id, data.model_dump(exclude_unset=True))


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, catalog: Catalog = Depends(get_catalog),
                   user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    catalog.delete_product(product_id)
    return {"id": product_id, "deleted": True}


# Reviews
class ReviewDTO(BaseModel):
    rating: int
    comment: str
    images: List[str] = []


class ReviewUpdateDTO(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None
    images: Optional[List[str]] = None


def require_review_owner(user: TokenData, review: Dict[str, Any]):
    if review.get("user_id") != user.user_id and user.role not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="You can only change your own review")


@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, reviews: ReviewService = Depends(get_review_service)):
    return reviews.list_reviews(product_id)


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, data: ReviewDTO, reviews: ReviewService = Depends(get_review_service),
               user: Optional[TokenData] = Depends(get_current_user)):
    user = require_user(user)
    author = {"user_id": user.user_id, "name": user.name, "email": user.email}
    return reviews.add_review(product_id, author, data.rating, data.comment, data.images)


@app.put("/products/{product_id}/reviews/{review_id}")
def edit_review(product_id: str, review_id: str, data: ReviewUpdateDTO,
                reviews: ReviewService = Depends(get_review_service),
                user: Optional[TokenData] = Depends(get_current_user)):
    user = require_user(user)
    require_review_owner(user, reviews.find_review(product_id, review_id))
    return reviews.edit_review(product_id, review_id, rating=data.rating, comment=data.comment, images=data.images)


@app.delete("/products/{product_id}/reviews/{review_id}")
def delete_review(product_id: str, review_id: str, reviews: ReviewService = Depends(get_review_service),
                  user: Optional[TokenData] = Depends(get_current_user)):
    user = require_user(user)
    require_review_owner(user, reviews.find_review(product_id, review_id))
    reviews.delete_review(product_id, review_id)
    return {"id": review_id, "deleted": True}


# Cart
class CartAddDTO(BaseModel):
    product_id: str
    color: Optional[str] = None
    quantity: int = Field(1, ge=1)


class QuantityDTO(BaseModel):
    quantity: int


class CartReplaceDTO(BaseModel):
    items: List[CartItem]


@app.get("/cart")
def cart_get(session: CartSession = Depends(get_cart_session)):
    return session.to_dict()


@app.post("/cart")
def cart_replace(data: CartReplaceDTO, session: CartSession = Depends(get_cart_session)):
    try:
        items = session.repository.reconcile(data.items)
    except (PyMongoError, UpstreamUnavailableError) as e:
        # unchecked lines stay local until the catalog is reachable again
        logger.warning("Catalog unavailable, keeping submitted cart for %s locally: %s", session.shopper_key, e)
        session.replace(data.items)
        session.keep_local()
        return session.to_dict()
    session.replace(items)
    session.persist()
    return session.to_dict()


@app.post("/cart/items")
def cart_add(data: CartAddDTO, session: CartSession = Depends(get_cart_session),
             catalog: Catalog = Depends(get_catalog)):
    product = catalog.find_product(data.product_id)
    item = session.add(product, color=data.color, quantity=data.quantity)
    session.persist()
    return {"item": item.model_dump(), **session.to_dict()}


@app.put("/cart/items/{item_id}")
def cart_set_quantity(item_id: str, data: QuantityDTO, session: CartSession = Depends(get_cart_session)):
    if data.quantity < 1:
        raise BadRequestError("Quantity must be at least 1")
    item = session.set_quantity(item_id, data.quantity)
    session.persist()
    return {"item": item.model_dump(), **session.to_dict()}


@app.delete("/cart/items/{item_id}")
def cart_remove(item_id: str, session: CartSession = Depends(get_cart_session)):
    session.remove(item_id)
    session.persist()
    return session.to_dict()


@app.delete("/cart")
def cart_clear(session: CartSession = Depends(get_cart_session)):
    session.clear()
    return session.to_dict()


# Checkout and orders
class CheckoutDTO(BaseModel):
    item_ids: List[str]
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Address
    payment_method: PaymentMethod = "cod"
    notes: Optional[str] = None


class OrderStatusDTO(BaseModel):
    status: str


@app.post("/checkout", status_code=201)
def checkout(data: CheckoutDTO, session: CartSession = Depends(get_cart_session),
             orders: OrderService = Depends(get_order_service),
             user: Optional[TokenData] = Depends(get_current_user)):
    contact = CheckoutContact(**data.model_dump(exclude={"item_ids", "email"}), email=data.email or user.email)
    order = orders.checkout(session, data.item_ids, contact)
    return {"order": order, "cart": session.to_dict()}


@app.post("/orders", status_code=201)
def create_order(draft: OrderDraft, orders: OrderService = Depends(get_order_service)):
    return orders.create_order(draft)


@app.get("/orders/search")
def search_orders(q: Optional[str] = None, orders: OrderService = Depends(get_order_service)):
    found = orders.search_orders(q)
    return {"orders": found, "count": len(found)}


@app.get("/orders/{ref}")
def get_order(ref: str, orders: OrderService = Depends(get_order_service)):
    return orders.get_order(ref)


@app.get("/customer/orders")
def customer_orders(active_only: bool = False, orders: OrderService = Depends(get_order_service),
                    user: Optional[TokenData] = Depends(get_current_user)):
    user = require_user(user)
    history = orders.list_orders(scope="customer", email=user.email)
    shown = [o for o in history if o["status"] != "rejected"] if active_only else history
    return {"orders": shown, "count": len(shown), "stats": status_counts(history)}


@app.get("/admin/orders")
def admin_orders(orders: OrderService = Depends(get_order_service),
                 user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    return orders.list_orders(scope="admin")


@app.put("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, orders: OrderService = Depends(get_order_service),
                        user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    return orders.transition_status(order_id, data.status)


@app.delete("/admin/orders/{order_id}")
def delete_order(order_id: str, orders: OrderService = Depends(get_order_service),
                 user: Optional[TokenData] = Depends(get_current_user)):
    require_role(user, ADMIN_ROLES)
    order = orders.soft_delete_order(order_id)
    return {"id": order["id"], "deleted_by_admin": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
