import os
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Literal

from fastapi import FastAPI, BackgroundTasks, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import checkout
import invoices
import notifications
from auth import bearer_token, hash_password, issue_token, role_for_email, verify_password, verify_token
from checkout import AuthenticatedOwner, GuestOwner, as_utc, maybe_oid, to_oid, unit_price
from database import db, create_document
from errors import (
    AuthenticationError,
    CategoryNotFoundError,
    DatabaseNotConfiguredError,
    DuplicateError,
    InvoiceNotFoundError,
    NotFoundError,
    NotificationNotFoundError,
    PermissionDeniedError,
    ProductNotFoundError,
    RefundAlreadyProcessedError,
    ReviewNotFoundError,
    ShopError,
    StockConflictError,
    ValidationFailedError,
    WishlistItemNotFoundError,
)
from schemas import Capability, Role, discounted_price
import schemas

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# routes that answer without a database
OPEN_PATHS = {"/", "/test", "/schema"}


def database_ready(request: Request) -> None:
    if db is None and request.url.path not in OPEN_PATHS:
        raise DatabaseNotConfiguredError()


app = FastAPI(title="Shop API", version="1.0.0", dependencies=[Depends(database_ready)])

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Errors ----------------------

ERROR_STATUS_CODES: Dict[type, int] = {
    ValidationFailedError: 400,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    StockConflictError: 409,
    RefundAlreadyProcessedError: 409,
    DuplicateError: 409,
    DatabaseNotConfiguredError: 500,
}


def status_for(exc: ShopError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to HTTP responses."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong!"})

# ---------------------- Utilities ----------------------

def now_utc():
    return datetime.now(timezone.utc)

def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    out.pop("password_hash", None)
    return out

def find_product(pid: str) -> Dict[str, Any]:
    prod = db["product"].find_one({"_id": to_oid(pid)})
    if not prod:
        raise ProductNotFoundError(pid)
    return prod

def user_role(user: Dict[str, Any]) -> Role:
    try:
        return Role(user.get("role", Role.USER.value))
    except ValueError:
        return Role.USER

# ---------------------- Auth dependencies ----------------------

def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    token = bearer_token(authorization)
    if not token:
        raise AuthenticationError("No token provided")
    user_id = verify_token(token)
    uid = maybe_oid(user_id)
    user = db["user"].find_one({"_id": uid}) if uid is not None else None
    if not user:
        raise AuthenticationError("The user for this token no longer exists")
    return user

def optional_user(authorization: Optional[str] = Header(None)) -> Optional[Dict[str, Any]]:
    if not bearer_token(authorization):
        return None
    try:
        return current_user(authorization)
    except AuthenticationError:
        return None

def require(capability: Capability):
    def dependency(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if not user_role(user).can(capability):
            raise PermissionDeniedError()
        return user
    return dependency

def cart_owner(user: Optional[Dict[str, Any]], cartid: Optional[str], body_cart_id: Optional[str] = None):
    if user:
        return AuthenticatedOwner(str(user["_id"]))
    return GuestOwner(cartid or body_cart_id)

# ---------------------- Models ----------------------

class SignupBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=5)
    password_confirm: str

class LoginBody(BaseModel):
    email: str
    password: str
    cart_id: Optional[str] = None

class AddressBody(BaseModel):
    street: str
    city: str
    postal_code: str

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    cost: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    category: Optional[str] = None
    warranty_status: Optional[Literal["valid", "expired", "none"]] = None
    distributor_info: Optional[str] = None
    image_url: Optional[str] = None

class StockBody(BaseModel):
    stock: int = Field(..., ge=0)

class CategoryBody(BaseModel):
    name: str
    description: str = ""

class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

class CartItemBody(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    cart_id: Optional[str] = None

class CartRemoveBody(BaseModel):
    product_id: str
    cart_id: Optional[str] = None

class CartUpdateBody(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=0)
    cart_id: Optional[str] = None

class StatusBody(BaseModel):
    status: Literal["processing", "in-transit", "delivered"]

class RefundLineBody(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    reason: str = ""

class RefundBody(BaseModel):
    items: List[RefundLineBody]

class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""

class WishlistBody(BaseModel):
    product_id: str

class NotifyToggleBody(BaseModel):
    notify_on_discount: bool

class PriceBody(BaseModel):
    price: float = Field(..., ge=0)

class DiscountBody(BaseModel):
    discount_percent: float = Field(..., ge=0, le=100)

class NotificationBody(BaseModel):
    user_id: str
    title: str
    message: str
    type: schemas.NotificationType = "system"
    link: Optional[str] = None

class BulkNotificationBody(BaseModel):
    user_ids: List[str]
    title: str
    message: str
    type: schemas.NotificationType = "system"
    link: Optional[str] = None

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Shop API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

@app.get("/schema")
def get_schema():
    def model_fields(m):
        return {k: str(v.annotation) for k, v in getattr(m, "model_fields", {}).items()}
    return {
        "models": {
            name.lower(): model_fields(getattr(schemas, name))
            for name in ("User", "Category", "Product", "Cart", "Order", "Refund",
                         "Review", "WishlistItem", "Notification")
        }
    }

# ---------------------- Auth ----------------------

@app.post("/auth/signup", status_code=201)
def signup(body: SignupBody):
    email = body.email.lower()
    if body.password != body.password_confirm:
        raise ValidationFailedError("Passwords are not the same")
    if db["user"].find_one({"email": email}):
        raise DuplicateError("Email already registered")
    role = role_for_email(email)
    user = {
        "name": body.name,
        "email": email,
        "password_hash": hash_password(body.password),
        "role": role.value,
        "address": None,
    }
    user_id = create_document("user", user)
    return {"token": issue_token(user_id), "user": {"_id": user_id, "name": body.name, "email": email,
                                                    "role": role.value}}

@app.post("/auth/login")
def login(body: LoginBody, cartid: Optional[str] = Header(None)):
    user = db["user"].find_one({"email": body.email.strip().lower()})
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise AuthenticationError("Incorrect email or password")
    user_id = str(user["_id"])

    merged = False
    guest_cart_id = cartid or body.cart_id
    if guest_cart_id:
        try:
            merged = checkout.merge_guest_cart(db, guest_cart_id, user_id) is not None
        except PyMongoError:
            logger.exception("Guest cart merge failed for user %s", user_id)

    return {"token": issue_token(user_id), "user": serialize(user), "merged_cart": merged}

# ---------------------- Users ----------------------

POSTAL_CODE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 \-]{1,8}[A-Za-z0-9]$")

@app.get("/users/me")
def get_profile(user: Dict[str, Any] = Depends(current_user)):
    return serialize(user)

@app.patch("/users/me/address")
def update_address(body: AddressBody, user: Dict[str, Any] = Depends(current_user)):
    address = {k: v.strip() for k, v in body.model_dump().items()}
    if not all(address.values()):
        raise ValidationFailedError("Please share the street, city and postal code")
    if not POSTAL_CODE_RE.match(address["postal_code"]):
        raise ValidationFailedError("Invalid postal code format")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"address": address, "updated_at": now_utc()}})
    return serialize({**user, "address": address})

# ---------------------- Products & Categories ----------------------

@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  limit: int = 50):
    filt: Dict[str, Any] = {}
    if q:
        filt["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filt["category"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    return [serialize(p) for p in db["product"].find(filt).limit(limit)]

@app.get("/products/{pid}")
def get_product(pid: str):
    return serialize(find_product(pid))

@app.post("/products", status_code=201)
def create_product(body: schemas.Product, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    if db["product"].find_one({"serial_number": body.serial_number}):
        raise DuplicateError(f"Serial number already exists: {body.serial_number}")
    doc = body.model_dump()
    doc["discounted_price"] = discounted_price(body.price, body.discount)
    product_id = create_document("product", doc)
    return {"_id": product_id}

@app.patch("/products/{pid}")
def update_product(pid: str, body: ProductUpdate,
                   user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    prod = find_product(pid)
    changes = body.model_dump(exclude_unset=True)
    if "price" in changes or "discount" in changes:
        price = changes.get("price", prod["price"])
        if price is None:
            raise ValidationFailedError("Price cannot be cleared")
        changes["discounted_price"] = discounted_price(price, changes.get("discount", prod.get("discount", 0)) or 0)
    changes["updated_at"] = now_utc()
    db["product"].update_one({"_id": prod["_id"]}, {"$set": changes})
    return serialize({**prod, **changes})

@app.delete("/products/{pid}")
def delete_product(pid: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    result = db["product"].delete_one({"_id": to_oid(pid)})
    if result.deleted_count == 0:
        raise ProductNotFoundError(pid)
    return {"ok": True}

@app.patch("/products/{pid}/stock")
def update_stock(pid: str, body: StockBody, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    prod = find_product(pid)
    db["product"].update_one({"_id": prod["_id"]}, {"$set": {"stock": body.stock, "updated_at": now_utc()}})
    return serialize({**prod, "stock": body.stock})

@app.get("/categories")
def list_categories():
    return [serialize(c) for c in db["category"].find()]

@app.get("/categories/{cid}/products")
def list_category_products(cid: str):
    cat = db["category"].find_one({"_id": to_oid(cid)})
    if not cat:
        raise CategoryNotFoundError(cid)
    products = [serialize(p) for p in db["product"].find({"category": cid})]
    return {"category": cat["name"], "description": cat.get("description", ""), "products": products}

@app.post("/categories", status_code=201)
def create_category(body: CategoryBody, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    name = body.name.strip()
    if not name:
        raise ValidationFailedError("Please provide a category name")
    if db["category"].find_one({"name": name}):
        raise DuplicateError(f"Category already exists: {name}")
    return {"_id": create_document("category", {"name": name, "description": body.description.strip()})}

@app.patch("/categories/{cid}")
def update_category(cid: str, body: CategoryUpdate,
                    user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    changes = {k: v.strip() for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    cat = db["category"].find_one({"_id": to_oid(cid)})
    if not cat:
        raise CategoryNotFoundError(cid)
    db["category"].update_one({"_id": cat["_id"]}, {"$set": {**changes, "updated_at": now_utc()}})
    return serialize({**cat, **changes})

@app.delete("/categories/{cid}")
def delete_category(cid: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRODUCTS))):
    if db["category"].delete_one({"_id": to_oid(cid)}).deleted_count == 0:
        raise CategoryNotFoundError(cid)
    return {"ok": True}

# ---------------------- Cart ----------------------

@app.get("/cart")
def get_cart(cart_id: Optional[str] = Query(None), cartid: Optional[str] = Header(None),
             user: Optional[Dict[str, Any]] = Depends(optional_user)):
    return serialize(checkout.get_cart(db, cart_owner(user, cartid, cart_id)))

@app.post("/cart/add")
def add_to_cart(item: CartItemBody, cartid: Optional[str] = Header(None),
                user: Optional[Dict[str, Any]] = Depends(optional_user)):
    owner = cart_owner(user, cartid, item.cart_id)
    return serialize(checkout.add_item(db, owner, item.product_id, item.quantity))

@app.post("/cart/remove")
def remove_from_cart(item: CartRemoveBody, cartid: Optional[str] = Header(None),
                     user: Optional[Dict[str, Any]] = Depends(optional_user)):
    owner = cart_owner(user, cartid, item.cart_id)
    return serialize(checkout.remove_item(db, owner, item.product_id))

@app.post("/cart/update")
def update_cart_item(item: CartUpdateBody, cartid: Optional[str] = Header(None),
                     user: Optional[Dict[str, Any]] = Depends(optional_user)):
    owner = cart_owner(user, cartid, item.cart_id)
    return serialize(checkout.set_quantity(db, owner, item.product_id, item.quantity))

# ---------------------- Orders ----------------------

@app.post("/orders/checkout")
def create_order(background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(current_user)):
    """Place the order. The invoice is written after the response is sent, so
    `invoice_url` answers 404 until then, and for good if rendering fails."""
    order = checkout.checkout(db, str(user["_id"]))
    background_tasks.add_task(notifications.dispatch_order_invoice, db, order)
    return {"order": serialize(order), "invoice_url": invoices.invoice_url(order["_id"])}

@app.get("/orders")
def list_orders(user: Dict[str, Any] = Depends(current_user)):
    cur = db["order"].find({"user_id": str(user["_id"])}).sort("created_at", -1)
    return [serialize(o) for o in cur]

@app.get("/orders/history")
def order_history(user: Dict[str, Any] = Depends(current_user)):
    return list_orders(user)

@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(current_user)):
    order = checkout.get_order(db, order_id)
    role = user_role(user)
    if order["user_id"] != str(user["_id"]) and not (role.can(Capability.VIEW_INVOICES)
                                                    or role.can(Capability.UPDATE_DELIVERY)):
        raise PermissionDeniedError()
    return serialize(order)

@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody,
                        user: Dict[str, Any] = Depends(require(Capability.UPDATE_DELIVERY))):
    before = checkout.get_order(db, order_id)
    order = checkout.update_order_status(db, order_id, body.status)
    if order["status"] != before["status"]:
        notifications.notify_order_status(db, order)
    return serialize(order)

@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: Dict[str, Any] = Depends(current_user)):
    return serialize(checkout.cancel_order(db, order_id, str(user["_id"])))

@app.post("/orders/{order_id}/refund", status_code=201)
def request_refund(order_id: str, body: RefundBody, user: Dict[str, Any] = Depends(current_user)):
    lines = [line.model_dump() for line in body.items]
    return serialize(checkout.request_refund(db, order_id, str(user["_id"]), lines))

@app.get("/deliveries")
def list_deliveries(user: Dict[str, Any] = Depends(require(Capability.UPDATE_DELIVERY))):
    cur = db["order"].find({"status": {"$in": ["processing", "in-transit"]}}).sort("created_at", 1)
    return [serialize(o) for o in cur]

# ---------------------- Invoices ----------------------

@app.get("/invoices/{filename}")
def get_invoice(filename: str, user: Dict[str, Any] = Depends(current_user)):
    order_id = invoices.order_id_from_filename(filename)
    if order_id is None:
        raise InvoiceNotFoundError(filename)
    order = db["order"].find_one({"_id": to_oid(order_id)})
    privileged = user_role(user).can(Capability.VIEW_INVOICES)
    if not privileged and (order is None or order["user_id"] != str(user["_id"])):
        if order is None:
            raise InvoiceNotFoundError(filename)
        raise PermissionDeniedError()
    return FileResponse(invoices.invoice_path(filename), media_type="application/pdf", filename=filename)

# ---------------------- Reviews ----------------------

@app.post("/products/{pid}/reviews", status_code=201)
def create_review(pid: str, body: ReviewBody, user: Dict[str, Any] = Depends(current_user)):
    find_product(pid)
    user_id = str(user["_id"])
    received = db["order"].find_one({"user_id": user_id, "status": "delivered", "items.product_id": pid})
    if not received:
        raise ValidationFailedError("You can review only products that have been delivered to you.")
    comment = body.comment.strip()
    review = {
        "product_id": pid,
        "user_id": user_id,
        "rating": body.rating,
        "comment": comment,
        # comments wait for a manager; bare ratings are published right away
        "approved": not comment,
    }
    review_id = create_document("review", review)
    return {**review, "_id": review_id}

@app.get("/products/{pid}/reviews")
def list_product_reviews(pid: str):
    reviews = []
    for r in db["review"].find({"product_id": pid}):
        r = serialize(r)
        if r.get("comment") and not r.get("approved"):
            r["comment"] = ""
        reviews.append(r)
    average = round(sum(r["rating"] for r in reviews) / len(reviews), 2) if reviews else None
    return {"average_rating": average, "reviews": reviews}

@app.get("/manager/reviews")
def list_all_reviews(user: Dict[str, Any] = Depends(require(Capability.MANAGE_REVIEWS))):
    reviews = [serialize(r) for r in db["review"].find()]
    return {"results": len(reviews), "reviews": reviews}

@app.get("/manager/reviews/pending")
def list_pending_reviews(user: Dict[str, Any] = Depends(require(Capability.MANAGE_REVIEWS))):
    cur = db["review"].find({"comment": {"$ne": ""}, "approved": False})
    return [serialize(r) for r in cur]

@app.patch("/manager/reviews/{review_id}/approve")
def approve_review(review_id: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_REVIEWS))):
    review = db["review"].find_one({"_id": to_oid(review_id)})
    if not review:
        raise ReviewNotFoundError(review_id)
    db["review"].update_one({"_id": review["_id"]}, {"$set": {"approved": True, "updated_at": now_utc()}})
    return serialize({**review, "approved": True})

@app.patch("/manager/reviews/{review_id}/reject")
def reject_review(review_id: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_REVIEWS))):
    if db["review"].delete_one({"_id": to_oid(review_id)}).deleted_count == 0:
        raise ReviewNotFoundError(review_id)
    return {"ok": True}

# ---------------------- Wishlist ----------------------

@app.get("/wishlist")
def get_wishlist(user: Dict[str, Any] = Depends(current_user)):
    out = []
    for w in db["wishlist"].find({"user_id": str(user["_id"])}):
        oid = maybe_oid(w["product_id"])
        prod = db["product"].find_one({"_id": oid}) if oid is not None else None
        out.append({**serialize(w), "product": serialize(prod)})
    return out

@app.post("/wishlist", status_code=201)
def add_to_wishlist(body: WishlistBody, user: Dict[str, Any] = Depends(current_user)):
    prod = find_product(body.product_id)
    user_id = str(user["_id"])
    if db["wishlist"].find_one({"user_id": user_id, "product_id": body.product_id}):
        raise DuplicateError("Product already in wishlist")
    item = {
        "user_id": user_id,
        "product_id": body.product_id,
        "notify_on_discount": True,
        "last_notified_price": unit_price(prod),
    }
    return {**item, "_id": create_document("wishlist", item)}

@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: Dict[str, Any] = Depends(current_user)):
    result = db["wishlist"].delete_one({"user_id": str(user["_id"]), "product_id": product_id})
    if result.deleted_count == 0:
        raise WishlistItemNotFoundError(product_id)
    return {"ok": True}

@app.patch("/wishlist/{product_id}/notify")
def toggle_discount_notification(product_id: str, body: NotifyToggleBody,
                                 user: Dict[str, Any] = Depends(current_user)):
    filt = {"user_id": str(user["_id"]), "product_id": product_id}
    if db["wishlist"].update_one(filt, {"$set": {"notify_on_discount": body.notify_on_discount}}).matched_count == 0:
        raise WishlistItemNotFoundError(product_id)
    return serialize(db["wishlist"].find_one(filt))

# ---------------------- Sales ----------------------

def parse_range(start: str, end: str):
    try:
        start_dt = datetime.strptime(start, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        end_dt = datetime.strptime(end, "%Y-%m-%d").replace(tzinfo=timezone.utc) + timedelta(days=1)
    except ValueError:
        raise ValidationFailedError("Please provide start and end dates as YYYY-MM-DD")
    if end_dt <= start_dt:
        raise ValidationFailedError("End date must not be before start date")
    return start_dt, end_dt

def orders_in_range(start: str, end: str, include_cancelled: bool = True):
    start_dt, end_dt = parse_range(start, end)
    for o in db["order"].find().sort("created_at", 1):
        created = as_utc(o["created_at"])
        if start_dt <= created < end_dt and (include_cancelled or o.get("status") != "cancelled"):
            yield o

@app.patch("/sales/price/{pid}")
def set_price(pid: str, body: PriceBody, user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRICING))):
    prod = find_product(pid)
    changes = {"price": body.price, "discounted_price": discounted_price(body.price, prod.get("discount", 0)),
               "updated_at": now_utc()}
    db["product"].update_one({"_id": prod["_id"]}, {"$set": changes})
    return serialize({**prod, **changes})

@app.patch("/sales/discount/{pid}")
def set_discount(pid: str, body: DiscountBody, background_tasks: BackgroundTasks,
                 user: Dict[str, Any] = Depends(require(Capability.MANAGE_PRICING))):
    prod = find_product(pid)
    changes = {"discount": body.discount_percent,
               "discounted_price": discounted_price(prod["price"], body.discount_percent),
               "updated_at": now_utc()}
    db["product"].update_one({"_id": prod["_id"]}, {"$set": changes})
    prod.update(changes)
    # wishlist alerts go out after the response
    scheduled = body.discount_percent > 0
    if scheduled:
        background_tasks.add_task(notifications.notify_discount, db, dict(prod))
    return {"product": serialize(prod), "notifications_scheduled": scheduled}

@app.get("/sales/invoices")
def invoices_in_range(start: str, end: str, user: Dict[str, Any] = Depends(require(Capability.VIEW_INVOICES))):
    out = [{"order_id": str(o["_id"]), "created_at": o["created_at"], "invoice_url": invoices.invoice_url(o["_id"])}
           for o in orders_in_range(start, end)]
    return {"results": len(out), "invoices": out}

@app.get("/sales/revenue")
def revenue_report(start: str, end: str, user: Dict[str, Any] = Depends(require(Capability.VIEW_REPORTS))):
    days: Dict[str, float] = {}
    for o in orders_in_range(start, end, include_cancelled=False):
        day = as_utc(o["created_at"]).strftime("%Y-%m-%d")
        days[day] = days.get(day, 0.0) + o["total"]
    return {"report": [{"date": d, "revenue": round(v, 2)} for d, v in sorted(days.items())]}

@app.get("/sales/profit")
def profit_report(start: str, end: str, user: Dict[str, Any] = Depends(require(Capability.VIEW_REPORTS))):
    days: Dict[str, float] = {}
    for o in orders_in_range(start, end, include_cancelled=False):
        day = as_utc(o["created_at"]).strftime("%Y-%m-%d")
        profit = sum((i["price_at_purchase"] - i["cost_at_purchase"]) * i["quantity"] for i in o["items"])
        days[day] = days.get(day, 0.0) + profit
    return {"report": [{"date": d, "profit": round(v, 2)} for d, v in sorted(days.items())]}

@app.get("/sales/refunds/pending")
def pending_refunds(user: Dict[str, Any] = Depends(require(Capability.MANAGE_REFUNDS))):
    refunds = [serialize(r) for r in db["refund"].find({"status": "pending"}).sort("created_at", 1)]
    return {"results": len(refunds), "refunds": refunds}

def _refund_decision(refund: Dict[str, Any]) -> Dict[str, Any]:
    try:
        notifications.notify(db, refund["user_id"], "Refund update",
                             f"Your refund {refund['_id']} has been {refund['status']}.", "order")
    except PyMongoError:
        logger.exception("Could not store refund notification for %s", refund["_id"])
    return serialize(refund)

@app.post("/sales/refunds/{refund_id}/approve")
def approve_refund(refund_id: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_REFUNDS))):
    return _refund_decision(checkout.approve_refund(db, refund_id))

@app.post("/sales/refunds/{refund_id}/reject")
def reject_refund(refund_id: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_REFUNDS))):
    return _refund_decision(checkout.reject_refund(db, refund_id))

@app.post("/sales/refunds/{refund_id}/complete")
def complete_refund(refund_id: str, user: Dict[str, Any] = Depends(require(Capability.MANAGE_REFUNDS))):
    return _refund_decision(checkout.complete_refund(db, refund_id))

# ---------------------- Notifications ----------------------

@app.get("/notifications")
def list_notifications(user: Dict[str, Any] = Depends(current_user)):
    cur = db["notification"].find({"user_id": str(user["_id"])}).sort("created_at", -1).limit(50)
    return [serialize(n) for n in cur]

@app.patch("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user: Dict[str, Any] = Depends(current_user)):
    filt = {"_id": to_oid(notification_id), "user_id": str(user["_id"])}
    if db["notification"].update_one(filt, {"$set": {"read": True}}).matched_count == 0:
        raise NotificationNotFoundError(notification_id)
    return serialize(db["notification"].find_one(filt))

@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: Dict[str, Any] = Depends(current_user)):
    filt = {"_id": to_oid(notification_id), "user_id": str(user["_id"])}
    if db["notification"].delete_one(filt).deleted_count == 0:
        raise NotificationNotFoundError(notification_id)
    return {"ok": True}

@app.post("/notifications", status_code=201)
def create_notification(body: NotificationBody,
                        user: Dict[str, Any] = Depends(require(Capability.SEND_NOTIFICATIONS))):
    return serialize(notifications.notify(db, body.user_id, body.title, body.message, body.type, body.link))

@app.post("/notifications/bulk", status_code=201)
def create_bulk_notifications(body: BulkNotificationBody,
                              user: Dict[str, Any] = Depends(require(Capability.SEND_NOTIFICATIONS))):
    created = [serialize(notifications.notify(db, uid, body.title, body.message, body.type, body.link))
               for uid in body.user_ids]
    return {"results": len(created), "notifications": created}

# ---------------------- Seed Demo Data ----------------------

@app.post("/admin/seed")
def seed(user: Dict[str, Any] = Depends(require(Capability.SEED_DATA))):
    if db["category"].count_documents({}) == 0:
        db["category"].insert_many([
            {"name": "Coffee Machines", "description": "Espresso and filter machines", "created_at": now_utc()},
            {"name": "Grinders", "description": "Burr and blade grinders", "created_at": now_utc()},
        ])
    if db["product"].count_documents({}) == 0:
        category = db["category"].find_one({"name": "Coffee Machines"})
        demo = []
        for i in range(1, 9):
            price = 199.0 + i * 25
            demo.append({
                "name": f"Espresso Machine {i}",
                "model": f"EM-{i:03d}",
                "serial_number": f"SN-EM-{i:05d}",
                "description": "A compact espresso machine with a steam wand.",
                "price": price,
                "cost": round(price * 0.6, 2),
                "stock": 20,
                "discount": 0,
                "discounted_price": price,
                "category": str(category["_id"]) if category else None,
                "warranty_status": "valid",
                "distributor_info": "Demo Distribution Ltd.",
                "created_at": now_utc(),
                "updated_at": now_utc(),
            })
        db["product"].insert_many(demo)
    return {"ok": True}

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
