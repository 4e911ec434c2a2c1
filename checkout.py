"""
Cart, checkout, order status and refund workflows.

All functions take the Mongo database handle as their first argument and
raise the exceptions from `errors`; the HTTP layer maps those to status
codes.

Stock is only ever changed with conditional `$inc` updates so that two
checkouts racing for the last units cannot both succeed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from errors import (
    CartNotFoundError,
    EmptyCartError,
    IncompleteAddressError,
    InvalidIdError,
    InvalidRefundLineError,
    InvalidTransitionError,
    OrderNotFoundError,
    PermissionDeniedError,
    ProductNotFoundError,
    RefundAlreadyProcessedError,
    RefundNotAllowedError,
    RefundNotFoundError,
    StockConflictError,
    UserNotFoundError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("street", "city", "postal_code")
STATUS_FLOW = ("processing", "in-transit", "delivered")
REFUND_WINDOW = timedelta(days=30)
OPEN_REFUND_STATUSES = ("pending", "approved", "completed")

Doc = Dict[str, Any]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdError(str(id_str))


def maybe_oid(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


# ---------------------- Cart owners ----------------------

@dataclass(frozen=True)
class AuthenticatedOwner:
    user_id: str


@dataclass(frozen=True)
class GuestOwner:
    cart_id: Optional[str] = None


CartOwner = Union[AuthenticatedOwner, GuestOwner]


def _find_cart(db, owner: CartOwner) -> Optional[Doc]:
    if isinstance(owner, AuthenticatedOwner):
        return db["cart"].find_one({"user_id": owner.user_id})
    if owner.cart_id is None:
        return None
    return db["cart"].find_one({"_id": to_oid(owner.cart_id), "user_id": None})


def _save_items(db, cart: Doc, items: List[Doc]) -> Doc:
    now = now_utc()
    if "_id" in cart:
        db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now}})
    else:
        cart.update({"created_at": now})
        cart["_id"] = db["cart"].insert_one({**cart, "items": items, "updated_at": now}).inserted_id
    cart["items"] = items
    cart["updated_at"] = now
    return cart


def merge_items(target: Iterable[Doc], incoming: Iterable[Doc]) -> List[Doc]:
    """Sum quantities per product, keeping the order lines were first added in."""
    merged = [{"product_id": line["product_id"], "quantity": line["quantity"]} for line in target]
    index = {line["product_id"]: line for line in merged}
    for line in incoming:
        existing = index.get(line["product_id"])
        if existing is not None:
            existing["quantity"] += line["quantity"]
        else:
            new_line = {"product_id": line["product_id"], "quantity": line["quantity"]}
            merged.append(new_line)
            index[new_line["product_id"]] = new_line
    return merged


def get_cart(db, owner: CartOwner) -> Doc:
    if isinstance(owner, GuestOwner) and owner.cart_id is None:
        raise ValidationFailedError("Cart not provided. For guest users, send cartid or create a new cart.")
    cart = _find_cart(db, owner)
    if cart is None:
        if isinstance(owner, AuthenticatedOwner):
            return {"user_id": owner.user_id, "items": []}
        raise CartNotFoundError(owner.cart_id)
    return cart


def add_item(db, owner: CartOwner, product_id: str, quantity: int) -> Doc:
    """Add a product to the owner's cart, creating the cart when needed."""
    if quantity < 1:
        raise ValidationFailedError("Quantity must be at least 1")
    oid = maybe_oid(product_id)
    if oid is None or db["product"].find_one({"_id": oid}) is None:
        raise ProductNotFoundError(product_id)
    cart = _find_cart(db, owner)
    if cart is None:
        user_id = owner.user_id if isinstance(owner, AuthenticatedOwner) else None
        cart = {"user_id": user_id, "items": []}
    items = merge_items(cart.get("items", []), [{"product_id": product_id, "quantity": quantity}])
    return _save_items(db, cart, items)


def remove_item(db, owner: CartOwner, product_id: str) -> Doc:
    if isinstance(owner, GuestOwner) and owner.cart_id is None:
        raise ValidationFailedError("No cart provided for guest user")
    cart = _find_cart(db, owner)
    if cart is None:
        raise CartNotFoundError(getattr(owner, "cart_id", None) or "")
    items = [line for line in cart.get("items", []) if line["product_id"] != product_id]
    return _save_items(db, cart, items)


def set_quantity(db, owner: CartOwner, product_id: str, quantity: int) -> Doc:
    """Set a line's quantity; zero removes the line."""
    if quantity < 0:
        raise ValidationFailedError("Quantity cannot be negative")
    if quantity == 0:
        return remove_item(db, owner, product_id)
    cart = get_cart(db, owner)
    items = [dict(line) for line in cart.get("items", [])]
    for line in items:
        if line["product_id"] == product_id:
            line["quantity"] = quantity
            break
    else:
        raise ValidationFailedError(f"Product {product_id} is not in the cart")
    return _save_items(db, cart, items)


def merge_guest_cart(db, guest_cart_id: str, user_id: str) -> Optional[Doc]:
    """Fold a guest cart into the user's cart and delete it.

    Missing or empty guest carts are left alone and None is returned.
    """
    gid = maybe_oid(guest_cart_id)
    if gid is None:
        logger.info("Ignoring malformed guest cart id %r on login", guest_cart_id)
        return None
    guest = db["cart"].find_one({"_id": gid, "user_id": None})
    if not guest or not guest.get("items"):
        return None
    user_cart = db["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}
    merged = _save_items(db, user_cart, merge_items(user_cart.get("items", []), guest["items"]))
    db["cart"].delete_one({"_id": gid})
    logger.info("Merged guest cart %s into cart of user %s", gid, user_id)
    return merged


# ---------------------- Stock ----------------------

def reserve_stock(db, lines: List[Doc]) -> None:
    """Atomically take each line's quantity out of stock, or none of them."""
    reserved: List[Doc] = []
    for line in lines:
        oid = maybe_oid(line["product_id"])
        result = None
        if oid is not None:
            result = db["product"].update_one(
                {"_id": oid, "stock": {"$gte": line["quantity"]}},
                {"$inc": {"stock": -line["quantity"]}},
            )
        if result is None or result.modified_count == 0:
            release_stock(db, reserved)
            raise StockConflictError(line["product_id"], line["quantity"])
        reserved.append(line)


def release_stock(db, lines: Iterable[Doc]) -> None:
    for line in lines:
        oid = maybe_oid(line["product_id"])
        if oid is None:
            continue
        result = db["product"].update_one({"_id": oid}, {"$inc": {"stock": line["quantity"]}})
        if result.matched_count == 0:
            logger.warning("Could not restore %s units of missing product %s",
                           line["quantity"], line["product_id"])


# ---------------------- Checkout ----------------------

def unit_price(product: Doc) -> float:
    discounted = product.get("discounted_price")
    return float(discounted if discounted is not None else product["price"])


def shipping_address(user: Doc) -> Dict[str, str]:
    address = user.get("address") or {}
    trimmed = {field: str(address.get(field) or "").strip() for field in ADDRESS_FIELDS}
    missing = [field for field, value in trimmed.items() if not value]
    if missing:
        raise IncompleteAddressError(missing)
    return trimmed


def price_cart(db, lines: Iterable[Doc]) -> Tuple[List[Doc], float]:
    """Snapshot current prices for each cart line and total them."""
    items: List[Doc] = []
    total = 0.0
    for line in lines:
        oid = maybe_oid(line["product_id"])
        product = db["product"].find_one({"_id": oid}) if oid is not None else None
        if product is None:
            raise StockConflictError(line["product_id"], line["quantity"])
        price = unit_price(product)
        cost = product.get("cost")
        items.append({
            "product_id": line["product_id"],
            "name": product.get("name", ""),
            "quantity": line["quantity"],
            "price_at_purchase": price,
            "cost_at_purchase": float(cost) if cost is not None else price,
        })
        total += price * line["quantity"]
    return items, round(total, 2)


def checkout(db, user_id: str) -> Doc:
    """Turn the user's cart into a processing order.

    Stock for every line is reserved before the order is written, so a
    failed checkout leaves neither an order nor a stock change behind.
    """
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    uid = maybe_oid(user_id)
    user = db["user"].find_one({"_id": uid}) if uid is not None else None
    if user is None:
        raise UserNotFoundError(user_id)
    address = shipping_address(user)

    items, total = price_cart(db, cart["items"])
    reserve_stock(db, items)

    now = now_utc()
    order = {
        "user_id": user_id,
        "items": items,
        "total": total,
        "status": "processing",
        "shipping_address": address,
        "cancelled_at": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        order["_id"] = db["order"].insert_one(order).inserted_id
    except PyMongoError:
        release_stock(db, items)
        raise

    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "updated_at": now}})
    logger.info("Order %s created for user %s (total %.2f, %d lines)",
                order["_id"], user_id, total, len(items))
    return order


# ---------------------- Orders ----------------------

def get_order(db, order_id: str) -> Doc:
    order = db["order"].find_one({"_id": to_oid(order_id)})
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def update_order_status(db, order_id: str, status: str) -> Doc:
    """Move an order forward along processing -> in-transit -> delivered."""
    if status not in STATUS_FLOW:
        raise ValidationFailedError(f"Invalid status: {status}")
    order = get_order(db, order_id)
    current = order["status"]
    if current not in STATUS_FLOW or STATUS_FLOW.index(status) < STATUS_FLOW.index(current):
        raise InvalidTransitionError(current, status)
    if status == current:
        return order
    now = now_utc()
    changes = {"status": status, "updated_at": now}
    if status == "delivered":
        changes["delivered_at"] = now
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # status moved underneath us
        raise InvalidTransitionError(get_order(db, order_id)["status"], status)
    logger.info("Order %s moved %s -> %s", order_id, current, status)
    return updated


def cancel_order(db, order_id: str, user_id: str) -> Doc:
    order = get_order(db, order_id)
    if order["user_id"] != user_id:
        raise PermissionDeniedError("You can only cancel your own orders")
    now = now_utc()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "processing"},
        {"$set": {"status": "cancelled", "cancelled_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransitionError(get_order(db, order_id)["status"], "cancelled")
    release_stock(db, updated["items"])
    logger.info("Order %s cancelled by user %s", order_id, user_id)
    return updated


# ---------------------- Refunds ----------------------

def request_refund(db, order_id: str, user_id: str, lines: List[Doc],
                   now: Optional[datetime] = None) -> Doc:
    order = get_order(db, order_id)
    if order["user_id"] != user_id:
        raise PermissionDeniedError("You can only request refunds for your own orders")
    if order["status"] != "delivered":
        raise RefundNotAllowedError("order has not been delivered")
    now = now or now_utc()
    if now - as_utc(order["created_at"]) > REFUND_WINDOW:
        raise RefundNotAllowedError("the 30-day refund window has passed")
    if not lines:
        raise ValidationFailedError("Refund must include at least one item")

    purchased: Dict[str, Doc] = {}
    for item in order["items"]:
        entry = purchased.setdefault(item["product_id"], {**item, "quantity": 0})
        entry["quantity"] += item["quantity"]

    # quantities already claimed by refunds that were not rejected
    claimed: Dict[str, int] = {}
    earlier_refunds = db["refund"].find(
        {"order_id": str(order["_id"]), "status": {"$in": list(OPEN_REFUND_STATUSES)}})
    for earlier in earlier_refunds:
        for line in earlier["items"]:
            claimed[line["product_id"]] = claimed.get(line["product_id"], 0) + line["quantity"]

    requested: Dict[str, int] = {}
    refund_items: List[Doc] = []
    total = 0.0
    for line in lines:
        pid = line["product_id"]
        item = purchased.get(pid)
        if item is None:
            raise InvalidRefundLineError(pid, "product is not part of this order")
        quantity = int(line["quantity"])
        requested[pid] = requested.get(pid, 0) + quantity
        remaining = item["quantity"] - claimed.get(pid, 0)
        if quantity < 1 or requested[pid] > remaining:
            raise InvalidRefundLineError(pid, f"quantity must be between 1 and {remaining}")
        refund_items.append({
            "product_id": pid,
            "quantity": quantity,
            "price_at_purchase": item["price_at_purchase"],
            "reason": line.get("reason") or "",
        })
        total += item["price_at_purchase"] * quantity

    refund = {
        "order_id": str(order["_id"]),
        "user_id": user_id,
        "items": refund_items,
        "total_refund_amount": round(total, 2),
        "status": "pending",
        "approved_at": None,
        "decided_at": None,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    refund["_id"] = db["refund"].insert_one(refund).inserted_id
    logger.info("Refund %s requested for order %s (%.2f)", refund["_id"], order_id, refund["total_refund_amount"])
    return refund


def _transition_refund(db, refund_id: str, from_status: str, changes: Doc) -> Doc:
    oid = to_oid(refund_id)
    updated = db["refund"].find_one_and_update(
        {"_id": oid, "status": from_status},
        {"$set": {**changes, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        existing = db["refund"].find_one({"_id": oid})
        if existing is None:
            raise RefundNotFoundError(refund_id)
        raise RefundAlreadyProcessedError(refund_id, existing["status"])
    return updated


def approve_refund(db, refund_id: str) -> Doc:
    now = now_utc()
    refund = _transition_refund(db, refund_id, "pending",
                                {"status": "approved", "approved_at": now, "decided_at": now})
    release_stock(db, refund["items"])
    logger.info("Refund %s approved", refund_id)
    return refund


def reject_refund(db, refund_id: str) -> Doc:
    refund = _transition_refund(db, refund_id, "pending", {"status": "rejected", "decided_at": now_utc()})
    logger.info("Refund %s rejected", refund_id)
    return refund


def complete_refund(db, refund_id: str) -> Doc:
    """Mark an approved refund as paid out."""
    return _transition_refund(db, refund_id, "approved", {"status": "completed", "completed_at": now_utc()})
