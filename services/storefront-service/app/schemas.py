from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime, timezone
from shared.security_config import sanitize_input, validate_password_strength, is_valid_slug

def to_naive_utc(v):
    # Stored datetimes are naive UTC; aware input is converted to match
    if isinstance(v, datetime) and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v

# --- Auth / Users ---

class UserRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=1)

    @field_validator('password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError('Password must be at least 8 characters long and contain uppercase, lowercase, and numbers')
        return v

    @field_validator('username', 'full_name')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    username: str
    password: str

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    @field_validator('full_name', 'address', 'city', 'state', 'zip_code')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class UserResponse(BaseModel):
    id: str
    username: str
    email: EmailStr
    full_name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    role: str
    created_at: datetime

class SessionResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"

# --- Catalog ---

class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None

class CategoryCreate(CategoryBase):
    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('slug')
    def check_slug(cls, v):
        if not is_valid_slug(v):
            raise ValueError('Slug must be lowercase letters, digits and hyphens')
        return v

class CategoryResponse(CategoryBase):
    id: str

class SupplierBase(BaseModel):
    name: str = Field(..., min_length=1)
    contact_email: Optional[EmailStr] = None
    phone: Optional[str] = None
    website: Optional[str] = None

class SupplierCreate(SupplierBase):
    @field_validator('name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class SupplierResponse(SupplierBase):
    id: str

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: Decimal = Field(..., ge=0)
    compare_at_price: Optional[Decimal] = Field(None, ge=0)
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    supplier_id: Optional[str] = None
    inventory: int = Field(0, ge=0)
    is_dropshipped: bool = False

class ProductCreate(ProductBase):
    @field_validator('name', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    compare_at_price: Optional[Decimal] = Field(None, ge=0)
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    supplier_id: Optional[str] = None
    inventory: Optional[int] = Field(None, ge=0)
    is_dropshipped: Optional[bool] = None
    is_active: Optional[bool] = None

class ProductResponse(ProductBase):
    id: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    category: Optional[CategoryResponse] = None
    supplier: Optional[SupplierResponse] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int
    page: int
    limit: int

# --- Coupons / Offers ---

class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    discount_type: str = Field(..., pattern="^(percentage|fixed)$")
    discount_value: Decimal = Field(..., gt=0)
    minimum_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    starts_at: datetime
    expires_at: datetime

    @field_validator('code')
    def normalize_code(cls, v):
        return sanitize_input(v).upper()

    @field_validator('starts_at', 'expires_at')
    def normalize_dates(cls, v):
        return to_naive_utc(v)

class CouponResponse(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_purchase: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int
    is_active: bool
    starts_at: datetime
    expires_at: datetime

class CouponValidate(BaseModel):
    code: str = ""

class SpecialOfferBase(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    product_ids: List[str] = []
    is_active: bool = True
    starts_at: datetime
    ends_at: datetime

class SpecialOfferCreate(SpecialOfferBase):
    @field_validator('title', 'description')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('starts_at', 'ends_at')
    def normalize_dates(cls, v):
        return to_naive_utc(v)

class SpecialOfferResponse(SpecialOfferBase):
    id: str

# --- Orders ---

class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Optional[Decimal] = None # client's view; the live product price is authoritative

class OrderCreate(BaseModel):
    shipping_address: str = Field(..., min_length=5)
    shipping_city: str = Field(..., min_length=2)
    shipping_state: str = Field(..., min_length=2)
    shipping_zip: str = Field(..., min_length=5)
    items: List[OrderItemCreate] = Field(..., min_length=1)
    total: Optional[Decimal] = None
    coupon_id: Optional[str] = None
    coupon_discount: Optional[Decimal] = None

    class Config:
        # Length rules apply to the stripped text
        str_strip_whitespace = True

    @field_validator('shipping_address', 'shipping_city', 'shipping_state', 'shipping_zip')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    quantity: int
    price: Decimal
    is_dropshipped: bool
    supplier_id: Optional[str] = None
    status: str

class OrderResponse(BaseModel):
    id: str
    user_id: str
    status: str
    shipping_address: str
    shipping_city: str
    shipping_state: str
    shipping_zip: str
    items: List[OrderItemResponse]
    subtotal: Decimal
    total: Decimal
    coupon_id: Optional[str] = None
    coupon_discount: Decimal
    created_at: datetime
    updated_at: Optional[datetime] = None

class OrderStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(pending|processing|shipped|delivered|cancelled)$")

class OrderItemStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(pending|ordered|shipped|delivered|cancelled)$")

class SupplierOrderItemResponse(OrderItemResponse):
    order_id: str
    order_status: str
    created_at: datetime
