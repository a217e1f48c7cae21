from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field

class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    username: str
    email: str
    password_hash: str
    full_name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    role: str = "customer" # customer, admin
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

class CategoryDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None

    class Config:
        populate_by_name = True

class SupplierDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    contact_email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None

    class Config:
        populate_by_name = True

class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    description: str
    price: Decimal
    compare_at_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    supplier_id: Optional[str] = None
    inventory: int = 0 # tracked for non-dropshipped products only
    is_dropshipped: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

class CouponDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    code: str
    description: Optional[str] = None
    discount_type: str # percentage, fixed
    discount_value: Decimal
    minimum_purchase: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    is_active: bool = True
    starts_at: datetime
    expires_at: datetime

    class Config:
        populate_by_name = True

class SpecialOfferDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    product_ids: List[str] = []
    is_active: bool = True
    starts_at: datetime
    ends_at: datetime

    class Config:
        populate_by_name = True

class OrderItemDB(BaseModel):
    product_id: str
    name: str
    quantity: int
    price: Decimal # snapshot at order time
    is_dropshipped: bool # snapshot
    supplier_id: Optional[str] = None # snapshot
    status: str = "pending"

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    status: str = "pending" # pending, processing, shipped, delivered, cancelled
    shipping_address: str
    shipping_city: str
    shipping_state: str
    shipping_zip: str
    items: List[OrderItemDB]
    subtotal: Decimal
    total: Decimal
    coupon_id: Optional[str] = None
    coupon_discount: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

MONEY_FIELDS = ("price", "compare_at_price", "discount_value", "minimum_purchase", "subtotal", "total", "coupon_discount")

def to_document(model: BaseModel) -> dict:
    """Dump a DB model for insertion, storing Decimals as floats."""
    doc = model.dict(by_alias=True, exclude={"id"})
    for key in MONEY_FIELDS:
        if doc.get(key) is not None:
            doc[key] = float(doc[key])
    for item in doc.get("items", []):
        item["price"] = float(item["price"])
    return doc

def from_document(doc: dict) -> dict:
    """Restore a stored document for the response models: string id, Decimal money."""
    doc["id"] = str(doc["_id"])
    for key in MONEY_FIELDS:
        if doc.get(key) is not None:
            doc[key] = Decimal(str(doc[key]))
    for item in doc.get("items", []):
        item["price"] = Decimal(str(item["price"]))
    return doc
