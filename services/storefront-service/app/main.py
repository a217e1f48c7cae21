from fastapi import FastAPI, Depends, HTTPException, status, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
import os
import re
import sys
from bson import ObjectId

# Add the repository root to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, get_password_hash, verify_password,
    create_access_token, require_auth, str_to_oid,
    SuccessResponse, HealthResponse,
    AppException, NotFoundException, UnauthorizedException,
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.schemas import (
    UserRegister, UserLogin, ProfileUpdate, UserResponse, SessionResponse,
    CategoryCreate, CategoryResponse, SupplierCreate, SupplierResponse,
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    CouponCreate, CouponResponse, CouponValidate,
    SpecialOfferCreate, SpecialOfferResponse,
    OrderCreate, OrderResponse, OrderStatusUpdate, OrderItemStatusUpdate,
    SupplierOrderItemResponse,
)
from app.models import (
    UserDB, CategoryDB, SupplierDB, ProductDB, CouponDB, SpecialOfferDB,
    to_document, from_document,
)
from app import checkout

SERVICE_NAME = "storefront-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME)

app = FastAPI(title="Storefront Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SORT_FIELDS = {"created_at": "created_at", "price": "price", "name": "name"}

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB]
    # Indexes
    await app.mongodb.users.create_index("username", unique=True)
    await app.mongodb.users.create_index("email", unique=True)
    await app.mongodb.categories.create_index("slug", unique=True)
    await app.mongodb.coupons.create_index("code", unique=True)
    await app.mongodb.products.create_index([("is_active", 1), ("created_at", -1)])
    await app.mongodb.orders.create_index([("user_id", 1), ("created_at", -1)])
    await app.mongodb.orders.create_index("items.supplier_id")
    await app.mongodb.revoked_tokens.create_index("exp", expireAfterSeconds=0)
    if not settings.MONGO_TRANSACTIONS:
        logger.warning("MongoDB transactions disabled; order placement is not atomic")

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
async def get_current_user(request: Request, payload: dict = Depends(require_auth)) -> dict:
    if "jti" in payload:
        is_revoked = await app.mongodb.revoked_tokens.find_one({"jti": payload["jti"]})
        if is_revoked:
            raise UnauthorizedException("Session has been revoked")
    user = None
    if ObjectId.is_valid(payload.get("sub", "")):
        user = await app.mongodb.users.find_one({"_id": ObjectId(payload["sub"])})
    if not user:
        raise UnauthorizedException("Not authenticated")
    request.state.user_id = str(user["_id"])
    return from_document(user)

async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    # Admin routes are not advertised to other users
    if user.get("role") != "admin":
        raise NotFoundException("Resource not found")
    return user

# --- Helpers ---
def start_session(response: Response, user: dict) -> str:
    token = create_access_token(data={"sub": user["id"], "role": user["role"]})
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        token,
        max_age=settings.SESSION_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
    )
    return token

def active_window(start_field: str, end_field: str) -> dict:
    now = datetime.utcnow()
    return {"is_active": True, start_field: {"$lte": now}, end_field: {"$gte": now}}

async def attach_relations(products: List[dict]) -> List[ProductResponse]:
    category_ids = {p["category_id"] for p in products if ObjectId.is_valid(p.get("category_id") or "")}
    supplier_ids = {p["supplier_id"] for p in products if ObjectId.is_valid(p.get("supplier_id") or "")}
    categories = {}
    if category_ids:
        async for doc in app.mongodb.categories.find({"_id": {"$in": [ObjectId(i) for i in category_ids]}}):
            categories[str(doc["_id"])] = CategoryResponse(**from_document(doc))
    suppliers = {}
    if supplier_ids:
        async for doc in app.mongodb.suppliers.find({"_id": {"$in": [ObjectId(i) for i in supplier_ids]}}):
            suppliers[str(doc["_id"])] = SupplierResponse(**from_document(doc))
    return [
        ProductResponse(
            **p,
            category=categories.get(p.get("category_id")),
            supplier=suppliers.get(p.get("supplier_id")),
        )
        for p in products
    ]

async def ensure_references(category_id: Optional[str], supplier_id: Optional[str]):
    if category_id is not None:
        if not ObjectId.is_valid(category_id) or not await app.mongodb.categories.find_one({"_id": ObjectId(category_id)}):
            raise HTTPException(status_code=400, detail=f"Invalid category: '{category_id}' not found")
    if supplier_id is not None:
        if not ObjectId.is_valid(supplier_id) or not await app.mongodb.suppliers.find_one({"_id": ObjectId(supplier_id)}):
            raise HTTPException(status_code=400, detail=f"Invalid supplier: '{supplier_id}' not found")

# --- Endpoints ---

# Auth
@app.post("/auth/register", response_model=SuccessResponse[SessionResponse])
async def register(user: UserRegister, response: Response):
    if await app.mongodb.users.find_one({"username": user.username}):
        raise HTTPException(status_code=400, detail="Username already taken")
    if await app.mongodb.users.find_one({"email": user.email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    user_db = UserDB(
        username=user.username,
        email=user.email,
        password_hash=get_password_hash(user.password),
        full_name=user.full_name,
    )
    new_user = await app.mongodb.users.insert_one(to_document(user_db))
    created_user = from_document(await app.mongodb.users.find_one({"_id": new_user.inserted_id}))

    token = start_session(response, created_user)
    logger.info("User registered", extra={"user_id": created_user["id"]})
    return SuccessResponse(
        data=SessionResponse(user=UserResponse(**created_user), access_token=token),
        message="User registered successfully",
    )

@app.post("/auth/login", response_model=SuccessResponse[SessionResponse])
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(user_credentials: UserLogin, request: Request, response: Response):
    user = await app.mongodb.users.find_one({"username": user_credentials.username})
    if not user or not verify_password(user_credentials.password, user["password_hash"]):
        raise UnauthorizedException("Invalid username or password")

    user = from_document(user)
    token = start_session(response, user)
    return SuccessResponse(data=SessionResponse(user=UserResponse(**user), access_token=token))

@app.post("/auth/logout", response_model=SuccessResponse[dict])
async def logout(response: Response, payload: dict = Depends(require_auth)):
    if "jti" in payload:
        await app.mongodb.revoked_tokens.insert_one({
            "jti": payload["jti"],
            "exp": datetime.utcfromtimestamp(payload["exp"])
        })
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return SuccessResponse(message="Logged out successfully")

@app.get("/auth/user", response_model=SuccessResponse[UserResponse])
async def current_user(user: dict = Depends(get_current_user)):
    return SuccessResponse(data=UserResponse(**user))

# Users
@app.get("/users/profile", response_model=SuccessResponse[UserResponse])
async def get_profile(user: dict = Depends(get_current_user)):
    return SuccessResponse(data=UserResponse(**user))

@app.put("/users/profile", response_model=SuccessResponse[UserResponse])
async def update_profile(profile_update: ProfileUpdate, user: dict = Depends(get_current_user)):
    update_data = {k: v for k, v in profile_update.dict().items() if v is not None}
    if update_data:
        await app.mongodb.users.update_one({"_id": user["_id"]}, {"$set": update_data})

    updated_user = await app.mongodb.users.find_one({"_id": user["_id"]})
    return SuccessResponse(data=UserResponse(**from_document(updated_user)), message="Profile updated successfully")

# Categories
@app.get("/categories", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories():
    cursor = app.mongodb.categories.find({}).sort("name", 1)
    return SuccessResponse(data=[CategoryResponse(**from_document(doc)) async for doc in cursor])

@app.get("/categories/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def get_category(category_id: str):
    category = await app.mongodb.categories.find_one({"_id": str_to_oid(category_id)})
    if not category:
        raise NotFoundException("Category not found")
    return SuccessResponse(data=CategoryResponse(**from_document(category)))

@app.post("/categories", response_model=SuccessResponse[CategoryResponse])
async def create_category(category: CategoryCreate, user: dict = Depends(require_admin)):
    if await app.mongodb.categories.find_one({"slug": category.slug}):
        raise HTTPException(status_code=400, detail="Category slug already exists")

    new_cat = await app.mongodb.categories.insert_one(to_document(CategoryDB(**category.dict())))
    created_cat = await app.mongodb.categories.find_one({"_id": new_cat.inserted_id})
    return SuccessResponse(data=CategoryResponse(**from_document(created_cat)), message="Category created successfully")

# Suppliers
@app.get("/suppliers", response_model=SuccessResponse[List[SupplierResponse]])
async def list_suppliers():
    cursor = app.mongodb.suppliers.find({}).sort("name", 1)
    return SuccessResponse(data=[SupplierResponse(**from_document(doc)) async for doc in cursor])

@app.post("/suppliers", response_model=SuccessResponse[SupplierResponse])
async def create_supplier(supplier: SupplierCreate, user: dict = Depends(require_admin)):
    new_supplier = await app.mongodb.suppliers.insert_one(to_document(SupplierDB(**supplier.dict())))
    created = await app.mongodb.suppliers.find_one({"_id": new_supplier.inserted_id})
    return SuccessResponse(data=SupplierResponse(**from_document(created)), message="Supplier created successfully")

@app.get("/suppliers/{supplier_id}/order-items", response_model=SuccessResponse[List[SupplierOrderItemResponse]])
async def list_supplier_order_items(supplier_id: str, user: dict = Depends(require_admin)):
    items = await checkout.list_supplier_order_items(app.mongodb, supplier_id)
    return SuccessResponse(data=[SupplierOrderItemResponse(**item) for item in items])

# Products
@app.get("/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit("60/minute")
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category_id: Optional[str] = None,
    supplier_id: Optional[str] = None,
    is_dropshipped: Optional[bool] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = None,
    sort_by: str = Query("created_at", pattern="^(created_at|price|name)$"),
    sort_direction: str = Query("desc", pattern="^(asc|desc)$"),
):
    query = {"is_active": True}
    if category_id:
        query["category_id"] = category_id
    if supplier_id:
        query["supplier_id"] = supplier_id
    if is_dropshipped is not None:
        query["is_dropshipped"] = is_dropshipped

    price_query = {}
    if min_price is not None:
        price_query["$gte"] = float(min_price)
    if max_price is not None:
        price_query["$lte"] = float(max_price)
    if price_query:
        query["price"] = price_query

    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]

    skip = (page - 1) * limit
    total = await app.mongodb.products.count_documents(query)
    cursor = (
        app.mongodb.products.find(query)
        .sort(SORT_FIELDS[sort_by], 1 if sort_direction == "asc" else -1)
        .skip(skip)
        .limit(limit)
    )
    products_docs = [from_document(doc) async for doc in cursor]

    return SuccessResponse(data=ProductListResponse(
        products=await attach_relations(products_docs),
        total=total,
        page=page,
        limit=limit
    ))

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit("60/minute")
async def get_product(product_id: str, request: Request):
    product = await app.mongodb.products.find_one({"_id": str_to_oid(product_id), "is_active": True})
    if not product:
        raise NotFoundException("Product not found")
    [response] = await attach_relations([from_document(product)])
    return SuccessResponse(data=response)

@app.post("/products", response_model=SuccessResponse[ProductResponse])
async def create_product(product: ProductCreate, user: dict = Depends(require_admin)):
    await ensure_references(product.category_id, product.supplier_id)

    new_product = await app.mongodb.products.insert_one(to_document(ProductDB(**product.dict())))
    created_product = await app.mongodb.products.find_one({"_id": new_product.inserted_id})
    [response] = await attach_relations([from_document(created_product)])
    return SuccessResponse(data=response, message="Product created successfully")

@app.put("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(product_id: str, product_update: ProductUpdate, user: dict = Depends(require_admin)):
    product = await app.mongodb.products.find_one({"_id": str_to_oid(product_id)})
    if not product:
        raise NotFoundException("Product not found")

    update_data = {k: v for k, v in product_update.dict().items() if v is not None}
    await ensure_references(update_data.get("category_id"), update_data.get("supplier_id"))
    for key in ("price", "compare_at_price"):
        if key in update_data:
            update_data[key] = float(update_data[key])

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        await app.mongodb.products.update_one({"_id": product["_id"]}, {"$set": update_data})

    updated_product = await app.mongodb.products.find_one({"_id": product["_id"]})
    [response] = await attach_relations([from_document(updated_product)])
    return SuccessResponse(data=response, message="Product updated successfully")

# Coupons
@app.get("/coupons", response_model=SuccessResponse[List[CouponResponse]])
async def list_coupons():
    cursor = app.mongodb.coupons.find(active_window("starts_at", "expires_at")).sort("expires_at", 1)
    return SuccessResponse(data=[checkout.coupon_from_document(doc) async for doc in cursor])

@app.post("/coupons/validate", response_model=SuccessResponse[CouponResponse])
@limiter.limit("30/minute")
async def validate_coupon(payload: CouponValidate, request: Request):
    code = payload.code.strip().upper()
    if not code:
        raise AppException(detail="Coupon code is required")

    # Minimum purchase is left to the caller, which knows the cart
    doc = await app.mongodb.coupons.find_one({"code": code, **active_window("starts_at", "expires_at")})
    if not doc:
        raise NotFoundException("Invalid coupon code")
    coupon = checkout.coupon_from_document(doc)
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise AppException(detail="Coupon usage limit reached")
    return SuccessResponse(data=coupon)

@app.post("/coupons", response_model=SuccessResponse[CouponResponse])
async def create_coupon(coupon: CouponCreate, user: dict = Depends(require_admin)):
    if coupon.expires_at <= coupon.starts_at:
        raise HTTPException(status_code=400, detail="Coupon must expire after it starts")
    if await app.mongodb.coupons.find_one({"code": coupon.code}):
        raise HTTPException(status_code=400, detail="Coupon code already exists")

    new_coupon = await app.mongodb.coupons.insert_one(to_document(CouponDB(**coupon.dict())))
    created = await app.mongodb.coupons.find_one({"_id": new_coupon.inserted_id})
    return SuccessResponse(data=checkout.coupon_from_document(created), message="Coupon created successfully")

# Special offers
@app.get("/special-offers", response_model=SuccessResponse[List[SpecialOfferResponse]])
async def list_special_offers():
    cursor = app.mongodb.special_offers.find(active_window("starts_at", "ends_at")).sort("ends_at", 1)
    return SuccessResponse(data=[SpecialOfferResponse(**from_document(doc)) async for doc in cursor])

@app.get("/special-offers/{offer_id}/products", response_model=SuccessResponse[List[ProductResponse]])
async def list_special_offer_products(offer_id: str):
    offer = await app.mongodb.special_offers.find_one({"_id": str_to_oid(offer_id)})
    if not offer:
        raise NotFoundException("Special offer not found")
    product_ids = [ObjectId(pid) for pid in offer.get("product_ids", [])]
    if not product_ids:
        return SuccessResponse(data=[])
    cursor = app.mongodb.products.find({"_id": {"$in": product_ids}, "is_active": True})
    products = [from_document(doc) async for doc in cursor]
    return SuccessResponse(data=await attach_relations(products))

@app.post("/special-offers", response_model=SuccessResponse[SpecialOfferResponse])
async def create_special_offer(offer: SpecialOfferCreate, user: dict = Depends(require_admin)):
    if offer.ends_at <= offer.starts_at:
        raise HTTPException(status_code=400, detail="Offer must end after it starts")
    for pid in offer.product_ids:
        if not ObjectId.is_valid(pid) or not await app.mongodb.products.find_one({"_id": ObjectId(pid)}):
            raise HTTPException(status_code=400, detail=f"Invalid product: '{pid}' not found")

    new_offer = await app.mongodb.special_offers.insert_one(to_document(SpecialOfferDB(**offer.dict())))
    created = await app.mongodb.special_offers.find_one({"_id": new_offer.inserted_id})
    return SuccessResponse(data=SpecialOfferResponse(**from_document(created)), message="Special offer created successfully")

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse])
async def create_order(order: OrderCreate, user: dict = Depends(get_current_user)):
    created = await checkout.place_order(app.mongodb, app.mongodb_client, user["id"], order)
    return SuccessResponse(data=OrderResponse(**created), message="Order created successfully")

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    user: dict = Depends(get_current_user),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await checkout.list_orders(app.mongodb, user["id"], page, limit)
    return SuccessResponse(data=[OrderResponse(**doc) for doc in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, user: dict = Depends(get_current_user)):
    order = await checkout.get_order(app.mongodb, user["id"], order_id)
    return SuccessResponse(data=OrderResponse(**order))

@app.put("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(order_id: str, status_update: OrderStatusUpdate, user: dict = Depends(require_admin)):
    order = await checkout.update_order_status(app.mongodb, order_id, status_update.status)
    return SuccessResponse(data=OrderResponse(**order))

@app.put("/orders/{order_id}/items/{product_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_item_status(
    order_id: str, product_id: str, status_update: OrderItemStatusUpdate, user: dict = Depends(require_admin)
):
    order = await checkout.update_order_item_status(app.mongodb, order_id, product_id, status_update.status)
    return SuccessResponse(data=OrderResponse(**order))

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )
