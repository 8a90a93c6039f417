"""
Storefront Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Order -> collection "order".

These schemas are used for validation before inserting/updating documents.
"""
from typing import Any, Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field, EmailStr


OrderStatus = Literal["pending", "accepted", "processing", "delivering", "done", "rejected"]
PaymentMethod = Literal["cod", "online"]

ORDER_STATUSES = ("pending", "accepted", "processing", "delivering", "done", "rejected")


class Address(BaseModel):
    street: str
    city: str
    province: str
    postal_code: Optional[str] = None


def format_address(address: Union[Address, Dict[str, Any], str, None]) -> str:
    """One-line rendering of either address shape."""
    if address is None:
        return ""
    if isinstance(address, str):
        return address.strip()
    if isinstance(address, Address):
        address = address.model_dump()
    parts = [address.get("street"), address.get("city"), address.get("province"), address.get("postal_code")]
    return ", ".join(str(p).strip() for p in parts if p and str(p).strip())


class ColorOption(BaseModel):
    name: str
    value: str = Field(..., description="e.g. 'red' or '#ff0000'")


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    images: List[str] = []
    stock: int = Field(0, ge=0)
    features: List[str] = []
    colors: List[ColorOption] = []
    has_colors: bool = False
    average_rating: float = 0
    review_count: int = 0


class CartItem(BaseModel):
    id: str = Field(..., description="line identity: <product_id>_<color or 'default'>")
    product_id: str
    name: str
    price: float  # captured price at add-to-cart time
    image: Optional[str] = None
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None
    color_name: Optional[str] = None
    stock: Optional[int] = None  # stock ceiling last seen for this product


class Cart(BaseModel):
    shopper_key: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None
    image: Optional[str] = None


class OrderDraft(BaseModel):
    """What a shopper submits at checkout, before the order exists."""
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Address
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping_fee: float = Field(0.0, ge=0)
    payment_method: PaymentMethod = "cod"
    notes: Optional[str] = None


class CheckoutContact(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Address
    payment_method: PaymentMethod = "cod"
    notes: Optional[str] = None


class Order(BaseModel):
    tracking_id: str
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: Union[Address, str]  # plain string on records from the earlier storefront
    items: List[OrderItem]
    subtotal: float
    shipping_fee: float = 0.0
    total: float
    payment_method: PaymentMethod = "cod"
    notes: Optional[str] = None
    status: OrderStatus = "pending"
    deleted_by_admin: bool = False


class Review(BaseModel):
    product_id: str
    user_id: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_avatar: str = "/avatar-default.jpg"
    rating: int = Field(..., ge=1, le=5)
    comment: str
    images: List[str] = []
    helpful: int = 0
    verified_purchase: bool = False
